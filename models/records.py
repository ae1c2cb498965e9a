"""Domain models shared across services."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from models.keys import canonical_key, entry_path, id_to_date

FieldValue = Union[bool, int, float, str, None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Reading(BaseModel):
    """One hourly measurement set for one piece of equipment."""

    project_id: str = Field(..., min_length=1)
    date_id: str
    hour: int = Field(..., ge=0, le=23)
    values: Dict[str, FieldValue] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)
    last_modified_by: str = ""
    last_modified_at: datetime = Field(default_factory=utcnow)
    field_modified_at: Dict[str, datetime] = Field(
        default_factory=dict,
        description="Per-field edit timestamps; fields without one use last_modified_at.",
    )

    @field_validator("date_id")
    @classmethod
    def _check_date_id(cls, value: str) -> str:
        id_to_date(value)
        return value

    @field_validator("last_modified_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("field_modified_at")
    @classmethod
    def _normalize_field_timestamps(cls, value: Dict[str, datetime]) -> Dict[str, datetime]:
        return {name: _as_utc(stamp) for name, stamp in value.items()}

    @property
    def key(self) -> str:
        return canonical_key(self.project_id, self.date_id, self.hour)

    @property
    def path(self) -> str:
        return entry_path(self.project_id, self.date_id, self.hour)

    def modified_at(self, field: str) -> datetime:
        return self.field_modified_at.get(field, self.last_modified_at)


class PendingStatus(str, Enum):
    """Queue-side lifecycle of a reading awaiting remote confirmation."""

    pending = "pending"
    merged = "merged"
    conflicted = "conflicted"


class AuditRecord(BaseModel):
    """A value that lost a field-level conflict, kept for audit and undo."""

    field: str
    losing_value: FieldValue = None
    losing_side: str
    losing_actor: str = ""
    losing_modified_at: datetime
    winning_value: FieldValue = None
    winning_side: str
    remote_version: int
    recorded_at: datetime = Field(default_factory=utcnow)


class PendingEntry(BaseModel):
    """A locally queued reading plus the metadata needed to deliver it."""

    reading: Reading
    queued_at: datetime = Field(default_factory=utcnow)
    base_version: int = Field(
        default=0,
        ge=0,
        description="Remote version the local edit was based on.",
    )
    edited_fields: List[str] = Field(default_factory=list)
    base_values: Optional[Dict[str, FieldValue]] = Field(
        default=None,
        description="Snapshot of the record the local edit started from, when known.",
    )
    status: PendingStatus = PendingStatus.pending
    attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    history: List[AuditRecord] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.reading.key

    @classmethod
    def from_reading(
        cls,
        reading: Reading,
        *,
        base_version: Optional[int] = None,
        edited_fields: Optional[Iterable[str]] = None,
        queued_at: Optional[datetime] = None,
        base_values: Optional[Dict[str, FieldValue]] = None,
    ) -> "PendingEntry":
        if base_version is None:
            base_version = max(reading.version - 1, 0)
        fields = list(reading.values) if edited_fields is None else list(edited_fields)
        return cls(
            reading=reading.model_copy(deep=True),
            queued_at=queued_at or utcnow(),
            base_version=base_version,
            edited_fields=sorted(set(fields)),
            base_values=dict(base_values) if base_values is not None else None,
        )
