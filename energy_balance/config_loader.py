"""
Configuration Loader
Loads configuration from a YAML file and environment variables
"""
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "calculation": {
        "co2_factor": 0.4,
        "default_price_per_kwh": 0.30,
        "basic_fee_period_days": 30,
    },
    "sustainability_goals": {
        "monthlyCo2Goal": 150,
        "energySaverGoal": 100,
        "solarPioneerGoal": 1000,
        "sustainabilityChampionGoal": 1000,
    },
    "dropbox": {
        "client_id": None,
        "redirect_uri": "http://localhost:53682/auth",
        "backup_folder": "/EcoFlow_Backups",
        "sync_filename": "ecoflow_synced_backup.json",
        "timeout": 30,
        "auth_timeout": 300,
    },
    "storage": {
        "state_file": "~/.energy_balance/state.json",
    },
    "reminders": {
        "frequency": "monthly",
        "reminder_days": 3,
    },
    "logging": {
        "level": "INFO",
        "format": "text",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """Loads configuration from YAML and applies environment overrides"""

    def __init__(self, config_path: Optional[str] = "config/config.yaml", env_file: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else None
        load_dotenv(env_file)
        self.config = self._load_config()
        self._apply_environment()
        self._validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load the YAML file on top of the built-in defaults"""
        if self.config_path is None:
            logger.info("No configuration file given, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        logger.info(f"Loading configuration from {self.config_path}")
        with self.config_path.open() as f:
            file_config = yaml.safe_load(f) or {}

        if not isinstance(file_config, dict):
            raise ValueError(f"Configuration file must contain a mapping: {self.config_path}")

        return _deep_merge(DEFAULT_CONFIG, file_config)

    def _apply_environment(self):
        """Environment variables take precedence over the YAML file"""
        dropbox = self.config["dropbox"]
        if os.environ.get("DROPBOX_CLIENT_ID"):
            dropbox["client_id"] = os.environ["DROPBOX_CLIENT_ID"]
        if os.environ.get("DROPBOX_REDIRECT_URI"):
            dropbox["redirect_uri"] = os.environ["DROPBOX_REDIRECT_URI"]
        if os.environ.get("ENERGY_BALANCE_STATE_FILE"):
            self.config["storage"]["state_file"] = os.environ["ENERGY_BALANCE_STATE_FILE"]
        if os.environ.get("ENERGY_BALANCE_LOG_LEVEL"):
            self.config["logging"]["level"] = os.environ["ENERGY_BALANCE_LOG_LEVEL"]

    def _validate(self):
        calculation = self.config["calculation"]
        for key in ("co2_factor", "default_price_per_kwh", "basic_fee_period_days"):
            value = calculation.get(key)
            if not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"calculation.{key} must be a non-negative number, got {value!r}")
        if calculation["basic_fee_period_days"] == 0:
            raise ValueError("calculation.basic_fee_period_days must be greater than zero")

        # Dropbox is optional; without a client id only the statistics work
        if not self.config["dropbox"].get("client_id"):
            logger.warning("DROPBOX_CLIENT_ID not set - Dropbox sync will be disabled")

    def get_full_config(self) -> Dict[str, Any]:
        return copy.deepcopy(self.config)

    def get_section(self, name: str) -> Dict[str, Any]:
        return dict(self.config.get(name, {}))
