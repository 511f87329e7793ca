"""
Backup Snapshot
Builds the JSON snapshot that is synced to Dropbox and parses it back
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .models import (
    Device,
    EnergyProvider,
    MeterReading,
    SustainabilityGoals,
    parse_devices,
    parse_providers,
    parse_readings,
)

logger = logging.getLogger(__name__)

WIDGET_KEYS = ("dashboardWidgets", "analyticsWidgets", "quickAccessWidgets")


class RestoredBackup(BaseModel):
    """Typed view of a downloaded snapshot; missing parts stay None"""

    user_profile: Optional[Dict[str, Any]] = None
    energy_providers: Optional[List[EnergyProvider]] = None
    devices: Optional[List[Device]] = None
    meter_readings: Optional[List[MeterReading]] = None
    sustainability_goals: Optional[SustainabilityGoals] = None
    language: Optional[str] = None
    pv_system_enabled: Optional[bool] = None
    widgets: Dict[str, List[Any]] = Field(default_factory=dict)
    timestamp: Optional[str] = None


def _dump(items) -> List[Any]:
    return [item.to_json_dict() if hasattr(item, "to_json_dict") else item for item in (items or [])]


def build_backup(
    meter_readings=None,
    devices=None,
    energy_providers=None,
    sustainability_goals=None,
    user_profile: Optional[Dict[str, Any]] = None,
    language: str = "de",
    pv_system_enabled: bool = False,
    widgets: Optional[Dict[str, List[Any]]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Assemble the backup snapshot as a JSON-ready dict

    Models are dumped with their camelCase keys; dicts are passed through.
    """
    goals = sustainability_goals
    if isinstance(goals, SustainabilityGoals):
        goals = goals.to_json_dict()

    snapshot = {
        "userProfile": user_profile,
        "energyProviders": _dump(energy_providers),
        "devices": _dump(devices),
        "meterReadings": _dump(meter_readings),
        "language": language,
        "pvSystemEnabled": pv_system_enabled,
        "sustainabilityGoals": goals,
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }
    for key in WIDGET_KEYS:
        snapshot[key] = list((widgets or {}).get(key, []))
    return snapshot


def _list_or_none(data: Dict[str, Any], key: str) -> Optional[List[Any]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        logger.warning(f"Backup field {key} is not a list ({type(value).__name__}), ignoring it")
        return None
    return value


def restore_backup(backup: Union[str, Dict[str, Any]]) -> RestoredBackup:
    """
    Parse a snapshot into typed collections

    Collections that are not lists are ignored, broken entries inside a
    collection are skipped.

    Raises:
        ValueError: If the backup is not a JSON object
    """
    data = json.loads(backup) if isinstance(backup, str) else backup
    if not isinstance(data, dict):
        raise ValueError("Backup must be a JSON object")

    providers = _list_or_none(data, "energyProviders")
    devices = _list_or_none(data, "devices")
    readings = _list_or_none(data, "meterReadings")

    goals = None
    if data.get("sustainabilityGoals"):
        try:
            goals = SustainabilityGoals.model_validate(data["sustainabilityGoals"])
        except ValidationError as e:
            logger.warning(f"Ignoring invalid sustainability goals in backup: {e.error_count()} error(s)")

    widgets = {}
    for key in WIDGET_KEYS:
        value = _list_or_none(data, key)
        if value is not None:
            widgets[key] = value

    profile = data.get("userProfile")
    language = data.get("language")
    pv_enabled = data.get("pvSystemEnabled")
    return RestoredBackup(
        user_profile=profile if isinstance(profile, dict) else None,
        energy_providers=parse_providers(providers) if providers is not None else None,
        devices=parse_devices(devices) if devices is not None else None,
        meter_readings=parse_readings(readings) if readings is not None else None,
        sustainability_goals=goals,
        language=language if isinstance(language, str) else None,
        pv_system_enabled=pv_enabled if isinstance(pv_enabled, bool) else None,
        widgets=widgets,
        timestamp=str(data["timestamp"]) if data.get("timestamp") else None,
    )
