"""
Energy balance core: statistics from meter readings and Dropbox backup sync
"""
from .calculator import EnergyCalculator
from .dropbox_client import DropboxClient, SyncResult, SyncState
from .reminders import ReminderScheduler
from .storage import JsonFileStore, TokenStore

__all__ = [
    "EnergyCalculator",
    "DropboxClient",
    "SyncResult",
    "SyncState",
    "ReminderScheduler",
    "JsonFileStore",
    "TokenStore",
]
