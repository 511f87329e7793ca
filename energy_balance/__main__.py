"""
Command line entry point

    python -m energy_balance --config config/config.yaml stats backup.json
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .app import EnergyApp
from .config_loader import ConfigLoader
from .logging_config import setup_logging
from .models import Period

logger = logging.getLogger(__name__)


def _read_backup(path: str) -> dict:
    with Path(path).open(encoding="utf-8") as f:
        return json.load(f)


def _jsonable(data):
    if hasattr(data, "model_dump"):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, dict):
        return {key: _jsonable(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_jsonable(item) for item in data]
    return data


def _print_json(data) -> None:
    print(json.dumps(_jsonable(data), indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="energy_balance", description="Energy statistics and Dropbox backup sync")
    parser.add_argument("--config", default="config/config.yaml", help="Path to the YAML configuration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats = subparsers.add_parser("stats", help="Show statistics for a local backup file")
    stats.add_argument("backup")

    costs = subparsers.add_parser("costs", help="Show detailed costs for one period")
    costs.add_argument("backup")
    costs.add_argument("--period", choices=[p.value for p in Period], default=Period.MONTHLY.value)

    sync = subparsers.add_parser("sync", help="Sync a local backup file with Dropbox")
    sync.add_argument("backup")
    sync.add_argument("--force-upload", action="store_true", help="Overwrite the remote file with local data")

    subparsers.add_parser("login", help="Authorize Dropbox access")
    subparsers.add_parser("logout", help="Revoke and forget Dropbox tokens")
    subparsers.add_parser("list-backups", help="List backups stored in Dropbox")

    reminders = subparsers.add_parser("reminders", help="Schedule meter reading reminders")
    reminders.add_argument("backup")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = ConfigLoader(args.config).get_full_config()
    setup_logging(config)
    app = EnergyApp.from_config(config)

    if args.command == "stats":
        _print_json(app.dashboard(_read_backup(args.backup)))
        return 0

    if args.command == "costs":
        restored = _read_backup(args.backup)
        _print_json(app.calculator.calculate_detailed_costs(
            restored.get("meterReadings", []), restored.get("energyProviders", []),
            args.period, restored.get("devices", []),
        ))
        return 0

    if args.command == "sync":
        local_data = _read_backup(args.backup)
        if args.force_upload:
            return 0 if app.dropbox.force_upload(local_data) else 1
        result = app.sync(local_data)
        if result.success and result.merged:
            with Path(args.backup).open("w", encoding="utf-8") as f:
                json.dump(result.data, f, indent=2)
        print(result.message)
        return 0 if result.success else 1

    if args.command == "login":
        return 0 if app.dropbox.authenticate() else 1

    if args.command == "logout":
        app.dropbox.logout()
        return 0

    if args.command == "list-backups":
        _print_json(app.dropbox.list_backups())
        return 0

    if args.command == "reminders":
        _print_json(app.schedule_reminders(_read_backup(args.backup)))
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
