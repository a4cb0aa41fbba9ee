from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable

import yaml

from booked.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)


def _merged(current: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    result = dict(current)
    for key, value in updates.items():
        existing = result.get(key)
        result[key] = _merged(existing, value) if isinstance(value, dict) and isinstance(existing, dict) else value
    return result


class ConfigManager:
    """YAML-backed application config.

    Writes go to a sibling temp file that is renamed over the config. A config
    bind-mounted as a single file refuses the rename with EBUSY and is
    rewritten in place instead.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def _write(self, data: dict[str, Any]) -> None:
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        try:
            tmp_path.replace(self.config_path)
        except OSError as exc:
            if exc.errno != errno.EBUSY:
                raise
            logger.debug("Config %s cannot be replaced, rewriting in place", self.config_path)
            self.config_path.write_text(text, encoding="utf-8")
            tmp_path.unlink(missing_ok=True)

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read())

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self._write(config.to_dict())

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` into the stored config section by section."""
        with self._lock:
            config = AppConfig.from_dict(_merged(self.load().to_dict(), payload))
            self._write(config.to_dict())
            return config

    def save_selection(self, calendar_ids: Iterable[str]) -> list[str]:
        return self.update({"sync": {"selected_calendar_ids": list(calendar_ids)}}).sync.selected_calendar_ids

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        if data["caldav"]["password"]:
            data["caldav"]["password"] = "***"
        return data
