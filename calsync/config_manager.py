from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calsync.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

SECRET_FIELDS = (
    ("caldav", "password"),
    ("gateway", "session_token"),
    ("cache", "secret"),
)
MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


def _write_atomic(path: Path, text: str) -> None:
    staging = path.with_name(path.name + ".tmp")
    staging.write_text(text, encoding="utf-8")
    try:
        staging.replace(path)
    except OSError as exc:
        # Bind-mounted single files in containers cannot be swapped in place.
        if exc.errno != errno.EBUSY:
            raise
        logger.info("Config file %s is busy, rewriting it in place", path)
        path.write_text(text, encoding="utf-8")
        staging.unlink(missing_ok=True)


class ConfigManager:
    """YAML-backed settings, re-read on every ``load`` so edits on disk apply live."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            if not self.config_path.exists():
                logger.warning("Config file %s disappeared, restoring defaults", self.config_path)
                self.save(default_app_config())
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
            return AppConfig.from_dict(raw if isinstance(raw, dict) else {})

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_atomic(self.config_path, _render(config))

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(_deep_merge(self.load().to_dict(), payload))
            self.save(config)
            return config

    def record_last_sync(self, value: str) -> None:
        self.update({"caldav": {"last_sync_at": value}})

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config

    def sanitize_update(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Drop masked or blank secrets so a round-tripped masked config keeps stored values."""
        current = self.load().to_dict()
        sanitized = copy.deepcopy(payload)
        for section, key in SECRET_FIELDS:
            block = sanitized.get(section)
            if not isinstance(block, dict) or key not in block:
                continue
            text = str(block.get(key) or "").strip()
            if text in {"", MASK}:
                if current.get(section, {}).get(key):
                    block.pop(key, None)
                else:
                    block[key] = ""
            if not block:
                sanitized.pop(section, None)
        return sanitized
