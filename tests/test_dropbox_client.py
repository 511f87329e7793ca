"""
Tests for the Dropbox backup client
"""
import json
import logging
import socket
import threading
from datetime import datetime, timezone
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from energy_balance.dropbox_client import (
    DOWNLOAD_URL,
    LIST_FOLDER_URL,
    REVOKE_URL,
    TOKEN_URL,
    UPLOAD_URL,
    DownloadStatus,
    DropboxClient,
    LocalRedirectPrompt,
    SyncState,
    build_authorize_url,
    code_challenge,
    generate_code_verifier,
)
from energy_balance.models import StoredTokens

SYNC_PATH = "/EcoFlow_Backups/ecoflow_synced_backup.json"


class RecordingPrompt:
    """Authorization step that answers with a fixed redirect URL"""

    def __init__(self, redirect=None, error=None):
        self.redirect = redirect
        self.error = error
        self.calls = []

    def __call__(self, auth_url, redirect_uri, timeout):
        self.calls.append((auth_url, redirect_uri, timeout))
        if self.error is not None:
            raise self.error
        return self.redirect


@pytest.fixture
def make_client(dropbox_session, token_store, now):
    def _make(prompt=None, client_id="test-app-key"):
        return DropboxClient(
            client_id=client_id,
            redirect_uri="http://localhost:53682/auth",
            token_store=token_store,
            prompt=prompt or RecordingPrompt(),
            session=dropbox_session,
            clock=lambda: now.timestamp(),
        )

    return _make


class TestPkce:

    def test_code_challenge_rfc7636_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_verifier_length_and_charset(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 64
        assert set(verifier) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~")
        assert generate_code_verifier() != verifier

    @pytest.mark.parametrize("length", [42, 129])
    def test_verifier_length_limits(self, length):
        with pytest.raises(ValueError):
            generate_code_verifier(length)

    def test_authorize_url(self):
        url = build_authorize_url("key", "http://localhost:53682/auth", "challenge")
        params = parse_qs(urlparse(url).query)

        assert url.startswith("https://www.dropbox.com/oauth2/authorize?")
        assert params["client_id"] == ["key"]
        assert params["response_type"] == ["code"]
        assert params["code_challenge"] == ["challenge"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["token_access_type"] == ["offline"]


class TestAuthentication:

    def test_stored_tokens_skip_interaction(self, dropbox_client, dropbox_session):
        assert dropbox_client.authenticate() is True
        assert dropbox_client.state == SyncState.AUTHENTICATED
        assert dropbox_client.access_token == "access-1"
        assert dropbox_session.calls == []

    def test_interactive_flow(self, make_client, dropbox_session, token_store, now):
        prompt = RecordingPrompt("http://localhost:53682/auth?code=good-code")
        client = make_client(prompt)

        assert client.authenticate() is True

        auth_url, redirect_uri, timeout = prompt.calls[0]
        assert redirect_uri == "http://localhost:53682/auth"
        assert timeout == 300
        exchange = dropbox_session.calls_to(TOKEN_URL)[0]["data"]
        assert exchange["grant_type"] == "authorization_code"
        # The verifier sent with the code matches the challenge in the authorize URL
        challenge = parse_qs(urlparse(auth_url).query)["code_challenge"][0]
        assert code_challenge(exchange["code_verifier"]) == challenge

        stored = token_store.load()
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-1"
        assert stored.expires_at == int(now.timestamp() * 1000) + 14400 * 1000
        assert client.state == SyncState.AUTHENTICATED

    def test_expired_tokens_trigger_interaction(self, make_client, token_store):
        token_store.save(StoredTokens(access_token="old", refresh_token="refresh-1", expires_at=1000))
        prompt = RecordingPrompt("http://localhost:53682/auth?code=good-code")
        client = make_client(prompt)

        assert client.authenticate() is True
        assert len(prompt.calls) == 1

    def test_cancelled_prompt(self, make_client, dropbox_session, token_store):
        client = make_client(RecordingPrompt(None))

        assert client.authenticate() is False
        assert client.state == SyncState.UNAUTHENTICATED
        assert dropbox_session.calls == []
        assert token_store.load() is None

    def test_redirect_without_code(self, make_client, dropbox_session):
        client = make_client(RecordingPrompt("http://localhost:53682/auth?error=access_denied"))

        assert client.authenticate() is False
        assert client.state == SyncState.UNAUTHENTICATED
        assert dropbox_session.calls == []

    def test_prompt_error(self, make_client):
        client = make_client(RecordingPrompt(error=OSError("port in use")))

        assert client.authenticate() is False
        assert client.state == SyncState.UNAUTHENTICATED

    def test_rejected_code(self, make_client, token_store):
        client = make_client(RecordingPrompt("http://localhost:53682/auth?code=bad-code"))

        assert client.authenticate() is False
        assert token_store.load() is None

    def test_missing_client_id(self, make_client):
        prompt = RecordingPrompt("http://localhost:53682/auth?code=good-code")
        client = make_client(prompt, client_id=None)

        assert client.authenticate() is False
        assert prompt.calls == []

    def test_token_exchange_network_error(self, make_client, dropbox_session):
        dropbox_session.fail_with = requests.exceptions.ConnectionError("offline")
        client = make_client(RecordingPrompt("http://localhost:53682/auth?code=good-code"))

        assert client.authenticate() is False
        assert client.state == SyncState.UNAUTHENTICATED


class TestTokenRefresh:

    def test_401_refreshes_once_and_retries(self, dropbox_client, dropbox_session, authorized_store):
        dropbox_client.authenticate()
        dropbox_session.valid_tokens.discard("access-1")

        assert dropbox_client.upload_backup({"a": 1}, "backup.json") is True

        assert len(dropbox_session.calls_to(TOKEN_URL)) == 1
        uploads = dropbox_session.calls_to(UPLOAD_URL)
        assert len(uploads) == 2
        assert uploads[1]["headers"]["Authorization"] == "Bearer access-2"
        assert authorized_store.load().access_token == "access-2"
        assert dropbox_client.state == SyncState.AUTHENTICATED

    def test_second_401_fails(self, dropbox_client, dropbox_session):
        dropbox_client.authenticate()
        dropbox_session.valid_tokens.clear()
        dropbox_session.reject_refresh_tokens_after_issue = True

        assert dropbox_client.upload_backup({"a": 1}, "backup.json") is False

        assert len(dropbox_session.calls_to(TOKEN_URL)) == 1
        assert len(dropbox_session.calls_to(UPLOAD_URL)) == 2
        assert dropbox_client.state == SyncState.TOKEN_EXPIRED

    def test_refresh_without_refresh_token(self, make_client, token_store, dropbox_session):
        token_store.save(StoredTokens(access_token="access-1"))
        client = make_client()
        client.authenticate()

        assert client.refresh_access_token() is False
        assert dropbox_session.calls == []

    def test_failed_refresh_keeps_tokens(self, dropbox_client, dropbox_session):
        dropbox_client.authenticate()
        dropbox_session.refresh_tokens.clear()

        assert dropbox_client.refresh_access_token() is False
        assert dropbox_client.access_token == "access-1"
        assert dropbox_client.refresh_token == "refresh-1"
        assert dropbox_client.state == SyncState.UNAUTHENTICATED


class TestFiles:

    def test_upload_download_round_trip(self, dropbox_client, dropbox_session):
        backup = {"meterReadings": [{"id": "r1", "reading": 12.5}], "language": "de"}

        assert dropbox_client.upload_backup(backup, "backup-1.json") is True
        content = dropbox_client.download_backup("backup-1.json")

        assert json.loads(content) == backup
        api_arg = json.loads(dropbox_session.calls_to(UPLOAD_URL)[0]["headers"]["Dropbox-API-Arg"])
        assert api_arg == {"path": "/EcoFlow_Backups/backup-1.json", "mode": "overwrite", "autorename": False, "mute": True}

    def test_upload_string_is_sent_unchanged(self, dropbox_client, dropbox_session):
        dropbox_client.upload_backup('{"x": 1}', "raw.json")
        assert dropbox_session.files["/EcoFlow_Backups/raw.json"] == b'{"x": 1}'

    def test_upload_network_error(self, dropbox_client, dropbox_session):
        dropbox_client.authenticate()
        dropbox_session.fail_with = requests.exceptions.Timeout("slow")
        assert dropbox_client.upload_backup({"a": 1}, "backup.json") is False

    def test_upload_logs_context(self, dropbox_client, caplog):
        with caplog.at_level(logging.INFO, logger="energy_balance.dropbox_client"):
            dropbox_client.upload_backup({"a": 1}, "backup.json")

        record = next(r for r in caplog.records if r.getMessage() == "Backup uploaded")
        assert record.backup_file == "backup.json"

    def test_download_missing_file(self, dropbox_client):
        assert dropbox_client.fetch_backup("missing.json").status == DownloadStatus.NOT_FOUND
        assert dropbox_client.download_backup("missing.json") is None

    def test_download_server_error(self, dropbox_client, dropbox_session):
        dropbox_session.status_override[DOWNLOAD_URL] = 500
        result = dropbox_client.fetch_backup("backup.json")
        assert result.status == DownloadStatus.FAILED
        assert result.content is None

    def test_download_binary_content_fails(self, dropbox_client, dropbox_session):
        dropbox_session.files["/EcoFlow_Backups/b.json"] = b"\xff\xfe\x00garbage"

        assert dropbox_client.fetch_backup("b.json").status == DownloadStatus.FAILED
        assert dropbox_client.download_backup("b.json") is None

    def test_download_error_with_plain_string_detail(self, dropbox_client, dropbox_session):
        dropbox_session.status_override[DOWNLOAD_URL] = 502
        dropbox_session.error_payloads[DOWNLOAD_URL] = {"error_summary": "bad_gateway", "error": "Bad gateway"}

        result = dropbox_client.fetch_backup("backup.json")

        assert result.status == DownloadStatus.FAILED
        assert dropbox_client.download_backup("backup.json") is None

    def test_list_backups_error_with_plain_string_detail(self, dropbox_client, dropbox_session):
        dropbox_session.status_override[LIST_FOLDER_URL] = 502
        dropbox_session.error_payloads[LIST_FOLDER_URL] = {"error": "Bad gateway"}

        assert dropbox_client.list_backups() == []
        assert dropbox_session.folders == set()

    def test_list_backups_skips_entries_without_name(self, dropbox_client, dropbox_session):
        dropbox_session.files["/EcoFlow_Backups/a.json"] = b"{}"
        dropbox_session.extra_entries.append({".tag": "file", "size": 10})

        assert [b["name"] for b in dropbox_client.list_backups()] == ["a.json"]

    def test_list_backups_creates_missing_folder(self, dropbox_client, dropbox_session):
        assert dropbox_client.list_backups() == []
        assert "/EcoFlow_Backups" in dropbox_session.folders

    def test_list_backups_newest_first(self, dropbox_client, dropbox_session):
        dropbox_session.files["/EcoFlow_Backups/a.json"] = b"{}"
        dropbox_session.files["/EcoFlow_Backups/b.json"] = b"{}"
        dropbox_session.files["/EcoFlow_Backups/notes.txt"] = b"hello"

        backups = dropbox_client.list_backups()

        assert [b["name"] for b in backups] == ["b.json", "a.json"]
        assert backups[0]["size"] == 2

    def test_latest_backup_metadata(self, dropbox_client, dropbox_session):
        dropbox_session.files["/EcoFlow_Backups/a.json"] = b"{}"
        dropbox_session.files["/EcoFlow_Backups/b.json"] = b"{}"

        latest = dropbox_client.get_latest_backup_metadata()

        assert latest["name"] == "b.json"
        assert latest["timestamp"] == datetime(2024, 6, 11, 8, tzinfo=timezone.utc)

    def test_latest_backup_metadata_without_backups(self, dropbox_client):
        assert dropbox_client.get_latest_backup_metadata() is None

    def test_not_authenticated_skips_requests(self, make_client, dropbox_session):
        client = make_client(RecordingPrompt(None))

        assert client.upload_backup({"a": 1}, "backup.json") is False
        assert client.download_backup("backup.json") is None
        assert client.list_backups() == []
        assert dropbox_session.calls == []


class TestLogout:

    def test_logout_revokes_and_clears(self, dropbox_client, dropbox_session, authorized_store):
        dropbox_client.authenticate()

        dropbox_client.logout()

        assert len(dropbox_session.calls_to(REVOKE_URL)) == 1
        assert dropbox_client.access_token is None
        assert dropbox_client.refresh_token is None
        assert dropbox_client.state == SyncState.UNAUTHENTICATED
        assert authorized_store.load() is None

    def test_logout_clears_even_when_offline(self, dropbox_client, dropbox_session, authorized_store):
        dropbox_client.authenticate()
        dropbox_session.fail_with = requests.exceptions.ConnectionError("offline")

        dropbox_client.logout()

        assert authorized_store.load() is None
        assert dropbox_client.state == SyncState.UNAUTHENTICATED


class TestSync:

    def test_initial_upload(self, dropbox_client, dropbox_session):
        local = {"meterReadings": [], "language": "de", "timestamp": "2024-06-15T12:00:00+00:00"}

        result = dropbox_client.sync_with_dropbox(local)

        assert result.success is True
        assert result.merged is False
        assert result.message == "Initial backup uploaded to Dropbox."
        assert json.loads(dropbox_session.files[SYNC_PATH]) == local

    def test_remote_wins(self, dropbox_client, dropbox_session, caplog):
        remote = {"meterReadings": [{"id": "remote"}], "language": "en"}
        dropbox_session.files[SYNC_PATH] = json.dumps(remote).encode("utf-8")
        local = {"meterReadings": [{"id": "local"}], "language": "de"}

        with caplog.at_level(logging.WARNING):
            result = dropbox_client.sync_with_dropbox(local)

        assert result.success is True
        assert result.merged is True
        assert result.data == remote
        assert result.discarded_local is True
        assert result.message == "Remote data has been downloaded."
        assert "local changes are replaced" in caplog.text
        assert dropbox_session.calls_to(UPLOAD_URL) == []

    def test_identical_data_ignores_timestamp(self, dropbox_client, dropbox_session):
        remote = {"meterReadings": [], "timestamp": "2024-06-01T00:00:00+00:00"}
        dropbox_session.files[SYNC_PATH] = json.dumps(remote).encode("utf-8")

        result = dropbox_client.sync_with_dropbox({"meterReadings": [], "timestamp": "2024-06-15T00:00:00+00:00"})

        assert result.merged is True
        assert result.discarded_local is False

    def test_failed_download_does_not_upload(self, dropbox_client, dropbox_session):
        dropbox_session.status_override[DOWNLOAD_URL] = 500

        result = dropbox_client.sync_with_dropbox({"meterReadings": []})

        assert result.success is False
        assert result.merged is False
        assert dropbox_session.calls_to(UPLOAD_URL) == []

    def test_invalid_remote_json(self, dropbox_client, dropbox_session):
        dropbox_session.files[SYNC_PATH] = b"{broken"

        result = dropbox_client.sync_with_dropbox({})

        assert result.success is False
        assert result.message == "Remote backup is not valid JSON."

    def test_undecodable_remote_is_not_overwritten(self, dropbox_client, dropbox_session):
        dropbox_session.files[SYNC_PATH] = b"\xff\xfe"

        result = dropbox_client.sync_with_dropbox({"a": 1})

        assert result.success is False
        assert result.message == "Could not download the remote backup."
        assert dropbox_session.calls_to(UPLOAD_URL) == []
        assert dropbox_session.files[SYNC_PATH] == b"\xff\xfe"

    def test_gateway_error_aborts_sync(self, dropbox_client, dropbox_session):
        dropbox_session.status_override[DOWNLOAD_URL] = 502
        dropbox_session.error_payloads[DOWNLOAD_URL] = {"error_summary": "bad_gateway", "error": "Bad gateway"}

        result = dropbox_client.sync_with_dropbox({"a": 1})

        assert result.success is False
        assert dropbox_session.calls_to(UPLOAD_URL) == []

    def test_invalid_token_refreshed_before_sync(self, dropbox_client, dropbox_session):
        dropbox_client.authenticate()
        dropbox_session.valid_tokens.clear()

        result = dropbox_client.sync_with_dropbox({"meterReadings": []})

        assert result.success is True
        assert len(dropbox_session.calls_to(TOKEN_URL)) == 1

    def test_invalid_token_without_refresh(self, dropbox_client, dropbox_session):
        dropbox_client.authenticate()
        dropbox_session.valid_tokens.clear()
        dropbox_session.refresh_tokens.clear()

        result = dropbox_client.sync_with_dropbox({"meterReadings": []})

        assert result.success is False
        assert result.message == "Dropbox token is invalid and could not be refreshed."

    def test_authentication_failure(self, make_client):
        result = make_client(RecordingPrompt(None)).sync_with_dropbox({})
        assert result.success is False
        assert result.message == "Authentication failed"

    def test_force_upload_overwrites_remote(self, dropbox_client, dropbox_session):
        dropbox_session.files[SYNC_PATH] = b'{"old": true}'

        assert dropbox_client.force_upload({"new": True}) is True
        assert json.loads(dropbox_session.files[SYNC_PATH]) == {"new": True}


class TestConfiguration:

    def test_from_config(self, test_config, token_store, dropbox_session):
        test_config["dropbox"]["backup_folder"] = "Custom/"
        client = DropboxClient.from_config(test_config, token_store, session=dropbox_session)

        assert client.client_id == "test-app-key"
        assert client.backup_folder == "/Custom"
        assert client.auth_timeout == 5
        assert client.session is dropbox_session


def _free_port():
    with socket.socket() as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


class TestLocalRedirectPrompt:

    def test_captures_redirect(self):
        redirect_uri = f"http://localhost:{_free_port()}/auth"

        def fake_browser(url):
            thread = threading.Thread(
                target=requests.get, args=(redirect_uri + "?code=abc",), kwargs={"timeout": 5}, daemon=True
            )
            thread.start()
            return True

        with patch("energy_balance.dropbox_client.webbrowser.open", side_effect=fake_browser) as mock_open:
            result = LocalRedirectPrompt()("https://example.invalid/authorize", redirect_uri, timeout=5)

        mock_open.assert_called_once_with("https://example.invalid/authorize")
        assert parse_qs(urlparse(result).query)["code"] == ["abc"]

    def test_timeout_returns_none(self):
        redirect_uri = f"http://localhost:{_free_port()}/auth"

        result = LocalRedirectPrompt(open_browser=False)("https://example.invalid/authorize", redirect_uri, timeout=0)

        assert result is None
