"""
Key-value settings store backed by a YAML file.

Holds the auto-triage on/off flag. Missing or empty files read as an
empty store.
"""

import logging
from pathlib import Path
from typing import Any

import yaml


logger = logging.getLogger(__name__)


AUTO_TRIAGE_KEY = "autoTriageEnabled"


class SettingsError(Exception):
    """Error reading or writing the settings file."""
    pass


class SettingsStore:
    """Small persistent key-value store."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def _load(self) -> dict:
        if not self._path.exists():
            return {}

        try:
            data = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise SettingsError(f"Invalid YAML in {self._path}: {e}") from e
        except OSError as e:
            raise SettingsError(f"Cannot read {self._path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise SettingsError(f"Settings file {self._path} must contain a mapping")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(yaml.safe_dump(data, sort_keys=True), encoding="utf-8")
        except OSError as e:
            raise SettingsError(f"Cannot write {self._path}: {e}") from e
        logger.debug(f"Setting {key}={value!r} saved to {self._path}")

    def is_auto_triage_enabled(self) -> bool:
        """Auto-triage is on unless explicitly switched off."""
        return self.get(AUTO_TRIAGE_KEY) is not False

    def set_auto_triage_enabled(self, enabled: bool) -> None:
        self.set(AUTO_TRIAGE_KEY, bool(enabled))
        logger.info(f"Auto-triage {'enabled' if enabled else 'disabled'}")
