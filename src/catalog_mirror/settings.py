"""catalog_mirror.settings

Ingestion settings with defaults, optionally overridden from a YAML file.

Example file:

    low_disk_space_threshold_bytes: 209715200
    import_checkpoint_interval: 1000
    sync_checkpoint_interval: 100
    progress_min_interval_seconds: 0.1
    request_timeout_seconds: 30
    sync_batch_size: 1000
    disk_space_path: /var/lib/postgresql/data
    sync_urls:
      non_fiction: https://mirror.example.org/json.php
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from catalog_mirror.table_schemas import Family

LOW_DISK_SPACE_THRESHOLD_BYTES = 200 * 1024 * 1024
IMPORT_CHECKPOINT_INTERVAL = 1000
SYNC_CHECKPOINT_INTERVAL = 100
USER_AGENT = "catalog-mirror/0.1"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when a settings file has unknown keys or invalid values."""


# ---------------------------------------------------------------------------
# IngestSettings
# ---------------------------------------------------------------------------

@dataclass
class IngestSettings:
    low_disk_space_threshold_bytes: int = LOW_DISK_SPACE_THRESHOLD_BYTES
    import_checkpoint_interval: int = IMPORT_CHECKPOINT_INTERVAL
    sync_checkpoint_interval: int = SYNC_CHECKPOINT_INTERVAL
    progress_min_interval_seconds: float = 0.1
    request_timeout_seconds: float = 30.0
    sync_batch_size: int = 1000
    user_agent: str = USER_AGENT
    disk_space_path: str | None = None
    sync_urls: dict[Family, str] = field(default_factory=dict)


_INT_KEYS = {
    "low_disk_space_threshold_bytes",
    "import_checkpoint_interval",
    "sync_checkpoint_interval",
    "sync_batch_size",
}
_FLOAT_KEYS = {"progress_min_interval_seconds", "request_timeout_seconds"}
_STR_KEYS = {"user_agent", "disk_space_path"}


def load_settings(yaml_path: Path | None) -> IngestSettings:
    """Return defaults, overridden by yaml_path when given.

    Raises:
        SettingsValidationError: If any key is unknown or a value is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return IngestSettings()
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8")) or {}
    return settings_from_dict(data)


def settings_from_dict(data: dict[str, Any]) -> IngestSettings:
    if not isinstance(data, dict):
        raise SettingsValidationError("settings file must contain a mapping")
    known = {f.name for f in fields(IngestSettings)}
    unknown = set(data) - known
    if unknown:
        raise SettingsValidationError(f"unknown settings keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key in _INT_KEYS:
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise SettingsValidationError(f"{key} must be a non-negative integer, got {value!r}")
            kwargs[key] = value
        elif key in _FLOAT_KEYS:
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                raise SettingsValidationError(f"{key} must be a non-negative number, got {value!r}")
            kwargs[key] = float(value)
        elif key in _STR_KEYS:
            if value is not None and not isinstance(value, str):
                raise SettingsValidationError(f"{key} must be a string, got {value!r}")
            kwargs[key] = value
        elif key == "sync_urls":
            kwargs[key] = _parse_sync_urls(value)

    for key in ("import_checkpoint_interval", "sync_checkpoint_interval", "sync_batch_size"):
        if kwargs.get(key) == 0:
            raise SettingsValidationError(f"{key} must be greater than zero")
    return IngestSettings(**kwargs)


def _parse_sync_urls(value: Any) -> dict[Family, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SettingsValidationError("sync_urls must be a mapping of family to URL")
    urls: dict[Family, str] = {}
    for name, url in value.items():
        try:
            family = Family(name)
        except ValueError as exc:
            raise SettingsValidationError(f"sync_urls: unknown family {name!r}") from exc
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise SettingsValidationError(f"sync_urls.{name} must be an http(s) URL")
        urls[family] = url
    return urls
