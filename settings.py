from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from services.retry import PRESETS

_QUEUE_PATH_ENV = "FIELDLOG_QUEUE_PATH"
_REMOTE_PATH_ENV = "FIELDLOG_REMOTE_PATH"
_AUDIT_PATH_ENV = "FIELDLOG_AUDIT_PATH"
_REMOTE_URL_ENV = "FIELDLOG_REMOTE_URL"
_RETRY_PRESET_ENV = "FIELDLOG_RETRY_PRESET"
_SYNC_CONCURRENCY_ENV = "FIELDLOG_SYNC_CONCURRENCY"
_SYNC_INTERVAL_ENV = "FIELDLOG_SYNC_INTERVAL"
_MAX_CLOCK_SKEW_ENV = "FIELDLOG_MAX_CLOCK_SKEW"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_RETRY_PRESETS = frozenset(PRESETS)


@dataclass(frozen=True)
class Settings:
    queue_path: Optional[str]
    remote_path: Optional[str]
    audit_path: Optional[str]
    remote_url: Optional[str]
    retry_preset: str
    sync_concurrency: int
    sync_interval: float
    max_clock_skew: float
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_interval(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def _read_retry_preset(default: str) -> str:
    candidate = _read_str_env(_RETRY_PRESET_ENV, default).lower()
    return candidate if candidate in _RETRY_PRESETS else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        queue_path=_read_optional_env(_QUEUE_PATH_ENV, "./tmp/pending_queue.json"),
        remote_path=_read_optional_env(_REMOTE_PATH_ENV, "./tmp/remote_store.json"),
        audit_path=_read_optional_env(_AUDIT_PATH_ENV, "./tmp/audit_log.json"),
        remote_url=_read_optional_env(_REMOTE_URL_ENV, None),
        retry_preset=_read_retry_preset("network"),
        sync_concurrency=_read_positive_int(_SYNC_CONCURRENCY_ENV, 4),
        sync_interval=_read_interval(_SYNC_INTERVAL_ENV, 0.0),
        max_clock_skew=_read_interval(_MAX_CLOCK_SKEW_ENV, 300.0),
        log_level=_read_log_level("INFO"),
    )
