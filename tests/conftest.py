"""
Pytest Configuration and Fixtures
Provides readings, devices, providers and a fake Dropbox HTTP session
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import requests
import yaml

from energy_balance.calculator import EnergyCalculator
from energy_balance.dropbox_client import (
    ACCOUNT_URL,
    CREATE_FOLDER_URL,
    DOWNLOAD_URL,
    LIST_FOLDER_URL,
    REVOKE_URL,
    TOKEN_URL,
    UPLOAD_URL,
    DropboxClient,
)
from energy_balance.models import StoredTokens
from energy_balance.storage import JsonFileStore, TokenStore

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_reading():
    """Factory for backup-style reading dicts relative to NOW"""
    counter = {"n": 0}

    def _make(value, hours_ago=0.0, meter_id="m-electricity", type="electricity", device_id="d-electricity", days_ago=0.0):
        counter["n"] += 1
        timestamp = NOW - timedelta(hours=hours_ago, days=days_ago)
        return {
            "id": f"r{counter['n']}",
            "deviceId": device_id,
            "meterId": meter_id,
            "meterName": meter_id.replace("m-", "").title(),
            "reading": value,
            "timestamp": timestamp.isoformat(),
            "type": type,
            "unit": "kWh",
        }

    return _make


@pytest.fixture
def calculator():
    return EnergyCalculator(co2_factor=0.4, default_price_per_kwh=0.30, basic_fee_period_days=30)


@pytest.fixture
def devices():
    return [
        {"id": "d-electricity", "name": "Main meter", "type": "meter", "status": "online"},
        {"id": "d-solar", "name": "Balcony PV", "type": "solar-pv", "status": "online"},
        {"id": "d-feed-in", "name": "Feed-in meter", "type": "meter", "status": "online", "calculationType": "difference"},
        {"id": "d-gas", "name": "Gas meter", "type": "meter", "status": "online"},
        {"id": "d-water", "name": "Water meter", "type": "meter", "status": "online"},
    ]


@pytest.fixture
def electricity_provider():
    return {
        "id": "p-electricity",
        "name": "Stadtwerke",
        "type": "electricity",
        "pricePerUnit": 0.40,
        "basicFee": 12.0,
        "validFrom": "2020-01-01T00:00:00Z",
    }


@pytest.fixture
def state_store(tmp_path):
    return JsonFileStore(tmp_path / "state.json")


@pytest.fixture
def token_store(state_store):
    return TokenStore(state_store)


@pytest.fixture
def test_config(tmp_path):
    """Configuration dict as produced by ConfigLoader"""
    return {
        "calculation": {"co2_factor": 0.4, "default_price_per_kwh": 0.30, "basic_fee_period_days": 30},
        "sustainability_goals": {"monthlyCo2Goal": 10, "energySaverGoal": 5, "solarPioneerGoal": 100, "sustainabilityChampionGoal": 50},
        "dropbox": {
            "client_id": "test-app-key",
            "redirect_uri": "http://localhost:53682/auth",
            "backup_folder": "/EcoFlow_Backups",
            "sync_filename": "ecoflow_synced_backup.json",
            "timeout": 5,
            "auth_timeout": 5,
        },
        "storage": {"state_file": str(tmp_path / "state.json")},
        "reminders": {"frequency": "monthly", "reminder_days": 3},
        "logging": {"level": "DEBUG", "format": "text"},
    }


@pytest.fixture
def test_config_file(tmp_path, test_config):
    config_file = tmp_path / "config.yaml"
    with config_file.open("w") as f:
        yaml.dump(test_config, f)
    return config_file


def make_response(status_code: int, payload=None, content: Optional[bytes] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.encoding = "utf-8"
    if content is not None:
        response._content = content
    else:
        response._content = json.dumps(payload if payload is not None else {}).encode("utf-8")
    return response


class FakeDropboxSession:
    """
    In-memory stand-in for the Dropbox HTTP API

    Records every call; tokens in ``valid_tokens`` are accepted, any other
    bearer token gets a 401.
    """

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.folders = set()
        self.valid_tokens = {"access-1"}
        self.refresh_tokens = {"refresh-1"}
        self.issued = 1
        self.calls: List[dict] = []
        self.fail_with: Optional[Exception] = None
        self.reject_refresh_tokens_after_issue = False
        self.status_override: Dict[str, int] = {}
        self.error_payloads: Dict[str, dict] = {}
        self.extra_entries: List[dict] = []

    def _authorized(self, headers) -> bool:
        token = (headers or {}).get("Authorization", "").replace("Bearer ", "")
        return token in self.valid_tokens

    def _issue(self) -> dict:
        self.issued += 1
        access = f"access-{self.issued}"
        if not self.reject_refresh_tokens_after_issue:
            self.valid_tokens.add(access)
        return {"access_token": access, "refresh_token": "refresh-1", "expires_in": 14400, "token_type": "bearer"}

    def calls_to(self, url: str) -> List[dict]:
        return [c for c in self.calls if c["url"] == url]

    def post(self, url, headers=None, data=None, json=None, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {}), "data": data, "json": json})
        if self.fail_with is not None:
            raise self.fail_with
        if url in self.status_override:
            payload = self.error_payloads.get(url, {"error_summary": "internal_error/"})
            return make_response(self.status_override[url], payload)

        if url == TOKEN_URL:
            if data.get("grant_type") == "authorization_code":
                if data.get("code") != "good-code" or not data.get("code_verifier"):
                    return make_response(400, {"error": "invalid_grant"})
                return make_response(200, self._issue())
            if data.get("grant_type") == "refresh_token":
                if data.get("refresh_token") not in self.refresh_tokens:
                    return make_response(400, {"error": "invalid_grant"})
                return make_response(200, self._issue())
            return make_response(400, {"error": "unsupported_grant_type"})

        if not self._authorized(headers):
            return make_response(401, {"error_summary": "expired_access_token/"})

        if url == ACCOUNT_URL:
            return make_response(200, {"account_id": "dbid:test"})
        if url == REVOKE_URL:
            return make_response(200, None, content=b"null")
        if url == UPLOAD_URL:
            arg = _json_arg(headers)
            self.files[arg["path"]] = data
            return make_response(200, {"name": arg["path"].rsplit("/", 1)[-1], "path_display": arg["path"]})
        if url == DOWNLOAD_URL:
            path = _json_arg(headers)["path"]
            if path not in self.files:
                return make_response(409, {
                    "error_summary": "path/not_found/..",
                    "error": {".tag": "path", "path": {".tag": "not_found"}},
                })
            return make_response(200, content=self.files[path])
        if url == LIST_FOLDER_URL:
            folder = json["path"]
            if folder not in self.folders and not any(p.startswith(folder + "/") for p in self.files):
                return make_response(409, {
                    "error_summary": "path/not_found/..",
                    "error": {".tag": "path", "path": {".tag": "not_found"}},
                })
            entries = [
                {".tag": "file", "name": p.rsplit("/", 1)[-1], "server_modified": f"2024-06-{10 + i:02d}T08:00:00Z", "size": len(b)}
                for i, (p, b) in enumerate(sorted(self.files.items()))
                if p.startswith(folder + "/")
            ]
            entries.append({".tag": "folder", "name": "archive"})
            entries.extend(self.extra_entries)
            return make_response(200, {"entries": entries, "has_more": False, "cursor": "c1"})
        if url == CREATE_FOLDER_URL:
            self.folders.add(json["path"])
            return make_response(200, {"metadata": {"name": json["path"].strip("/")}})
        return make_response(404, {"error_summary": "unknown endpoint"})


def _json_arg(headers) -> dict:
    return json.loads(headers["Dropbox-API-Arg"])


@pytest.fixture
def dropbox_session():
    return FakeDropboxSession()


@pytest.fixture
def authorized_store(token_store):
    """Token store already holding a valid access token"""
    token_store.save(StoredTokens(access_token="access-1", refresh_token="refresh-1", expires_at=None))
    return token_store


@pytest.fixture
def dropbox_client(dropbox_session, authorized_store):
    return DropboxClient(
        client_id="test-app-key",
        redirect_uri="http://localhost:53682/auth",
        token_store=authorized_store,
        prompt=lambda url, redirect, timeout: None,
        session=dropbox_session,
        clock=lambda: NOW.timestamp(),
    )
