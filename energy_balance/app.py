"""
Energy Balance Application
Composition root wiring calculator, token storage, Dropbox client and reminders
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .backup import RestoredBackup, restore_backup
from .calculator import EnergyCalculator
from .dropbox_client import DropboxClient, SyncResult
from .models import Period, SustainabilityGoals
from .reminders import NotificationSettings, ReminderScheduler
from .storage import JsonFileStore, TokenStore

logger = logging.getLogger(__name__)


class EnergyApp:
    """
    Holds the explicitly constructed services of one app instance.

    Nothing here is a module-level singleton; tests build their own
    instance with fake collaborators.
    """

    def __init__(
        self,
        calculator: EnergyCalculator,
        dropbox: DropboxClient,
        reminders: ReminderScheduler,
        default_goals: Optional[SustainabilityGoals] = None,
        reminder_settings: Optional[NotificationSettings] = None,
        reminder_frequency: str = "monthly",
    ):
        self.calculator = calculator
        self.dropbox = dropbox
        self.reminders = reminders
        self.default_goals = default_goals or SustainabilityGoals()
        self.reminder_settings = reminder_settings or NotificationSettings()
        self.reminder_frequency = reminder_frequency

    @classmethod
    def from_config(cls, config: Dict[str, Any], **dropbox_kwargs) -> "EnergyApp":
        store = JsonFileStore(config.get("storage", {}).get("state_file", "~/.energy_balance/state.json"))
        reminder_config = config.get("reminders", {})
        return cls(
            calculator=EnergyCalculator.from_config(config),
            dropbox=DropboxClient.from_config(config, TokenStore(store), **dropbox_kwargs),
            reminders=ReminderScheduler(store),
            default_goals=SustainabilityGoals.model_validate(config.get("sustainability_goals", {})),
            reminder_settings=NotificationSettings(reminder_days=reminder_config.get("reminder_days", 3)),
            reminder_frequency=reminder_config.get("frequency", "monthly"),
        )

    def dashboard(self, backup, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Everything the dashboard screens show, computed from one snapshot"""
        restored = backup if isinstance(backup, RestoredBackup) else restore_backup(backup)
        readings = restored.meter_readings or []
        devices = restored.devices or []
        providers = restored.energy_providers or []
        goals = restored.sustainability_goals or self.default_goals

        stats = self.calculator.calculate_all_stats(readings, devices, providers, now=now)
        costs = {
            period.value: self.calculator.calculate_detailed_costs(readings, providers, period, devices, now=now)
            for period in Period
        }
        return {
            "current": self.calculator.calculate_current_energy_data(readings, now=now),
            "stats": stats,
            "costs": costs,
            "sustainability": self.calculator.calculate_sustainability_stats(stats.monthly, goals),
        }

    def sync(self, local_data: Dict[str, Any]) -> SyncResult:
        result = self.dropbox.sync_with_dropbox(local_data)
        if result.success and result.merged:
            logger.info("Local state replaced by the remote backup")
        return result

    def schedule_reminders(self, backup) -> list:
        restored = backup if isinstance(backup, RestoredBackup) else restore_backup(backup)
        return self.reminders.schedule_all(
            restored.meter_readings or [], self.reminder_settings, self.reminder_frequency
        )
