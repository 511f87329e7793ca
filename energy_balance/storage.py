"""
Local State Storage
Small JSON key/value file for tokens and scheduled reminders
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import StoredTokens

logger = logging.getLogger(__name__)

TOKENS_KEY = "dropbox_tokens"
REMINDERS_KEY = "scheduledReminders"


class JsonFileStore:
    """
    Key/value store persisted as one JSON document

    Every write replaces the file atomically, so an interrupted process
    leaves either the old or the new state behind.
    """

    def __init__(self, path):
        self.path = Path(path).expanduser()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading state file {self.path}: {e}")
            return {}
        if not isinstance(state, dict):
            logger.error(f"State file {self.path} does not contain an object, ignoring it")
            return {}
        return state

    def _save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        state = self._load()
        state[key] = value
        self._save(state)

    def remove(self, key: str) -> None:
        state = self._load()
        if key in state:
            del state[key]
            self._save(state)


class TokenStore:
    """Persisted Dropbox tokens, validated on every load"""

    def __init__(self, store: JsonFileStore, key: str = TOKENS_KEY):
        self.store = store
        self.key = key

    def load(self) -> Optional[StoredTokens]:
        """
        Return the stored tokens, or None

        Anything that does not match the token schema is treated as absent
        and removed from the store.
        """
        raw = self.store.get(self.key)
        if raw is None:
            return None
        try:
            return StoredTokens.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Stored Dropbox tokens are corrupt, clearing them: {e.error_count()} error(s)")
            self.store.remove(self.key)
            return None

    def save(self, tokens: StoredTokens) -> None:
        self.store.set(self.key, tokens.to_json_dict())

    def clear(self) -> None:
        self.store.remove(self.key)
