"""Canonical identity helpers for hourly readings.

A reading is addressed by ``(project_id, date_id, hour)``. ``date_id`` is an
eight digit ``YYYYMMDD`` string and the hour travels as a zero padded two digit
string. The remote store path is::

    projects/{project_id}/logs/{date_id}/entries/{hour2}

All formatting of these identities goes through this module.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, NamedTuple

from models.errors import FormatError, RangeError

_PROJECTS = "projects"
_LOGS = "logs"
_ENTRIES = "entries"


class ReadingKey(NamedTuple):
    project_id: str
    date_id: str
    hour: int


def hour_to_two_digit(hour: int) -> str:
    if isinstance(hour, bool) or not isinstance(hour, int):
        raise RangeError(f"Hour must be an integer between 0 and 23, got: {hour!r}")
    if hour < 0 or hour > 23:
        raise RangeError(f"Hour must be between 0 and 23, got: {hour}")
    return f"{hour:02d}"


def two_digit_to_hour(value: str) -> int:
    if not is_valid_hour(value):
        raise FormatError(f'Invalid hour format. Expected "00" to "23", got: {value!r}')
    return int(value)


def is_valid_hour(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 2:
        return False
    if not (value.isascii() and value.isdigit()):
        return False
    return 0 <= int(value) <= 23


def date_to_id(value: date) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        raise FormatError(f"Expected a date, got: {value!r}")
    return f"{value.year:04d}{value.month:02d}{value.day:02d}"


def id_to_date(value: str) -> date:
    if not isinstance(value, str) or len(value) != 8 or not (value.isascii() and value.isdigit()):
        raise FormatError(f"Invalid date id. Expected YYYYMMDD, got: {value!r}")
    try:
        return date(int(value[0:4]), int(value[4:6]), int(value[6:8]))
    except ValueError as exc:
        raise FormatError(f"Date id {value!r} is not a calendar date") from exc


def is_valid_date_id(value: Any) -> bool:
    try:
        id_to_date(value)
    except FormatError:
        return False
    return True


def all_hour_ids() -> list[str]:
    return [hour_to_two_digit(hour) for hour in range(24)]


def _check_project_id(project_id: str) -> str:
    if not isinstance(project_id, str) or not project_id.strip():
        raise FormatError("Project id must be a non-empty string")
    if "/" in project_id:
        raise FormatError(f"Project id must not contain '/', got: {project_id!r}")
    return project_id


def canonical_key(project_id: str, date_id: str, hour: int) -> str:
    """Return the local queue key ``{project_id}_{date_id}_{hour2}``."""
    _check_project_id(project_id)
    id_to_date(date_id)
    return f"{project_id}_{date_id}_{hour_to_two_digit(hour)}"


def log_path(project_id: str, date_id: str) -> str:
    _check_project_id(project_id)
    id_to_date(date_id)
    return f"{_PROJECTS}/{project_id}/{_LOGS}/{date_id}"


def entry_path(project_id: str, date_id: str, hour: int) -> str:
    return f"{log_path(project_id, date_id)}/{_ENTRIES}/{hour_to_two_digit(hour)}"


def parse_entry_path(path: str) -> ReadingKey:
    parts = path.strip("/").split("/")
    if len(parts) != 6 or parts[0] != _PROJECTS or parts[2] != _LOGS or parts[4] != _ENTRIES:
        raise FormatError(f"Not an entry path: {path!r}")
    project_id = _check_project_id(parts[1])
    id_to_date(parts[3])
    return ReadingKey(project_id=project_id, date_id=parts[3], hour=two_digit_to_hour(parts[5]))
