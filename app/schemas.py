"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from models.equipment import EquipmentContext
from models.records import AuditRecord, FieldValue, PendingStatus


class ReadingSubmission(BaseModel):
    """Payload a field crew posts for one hour of one log."""

    log_type: str = Field(..., description="Form template to validate against, e.g. 'thermal'.")
    date_id: str = Field(..., description="Log date as YYYYMMDD.")
    hour: int = Field(..., ge=0, le=23)
    values: Dict[str, FieldValue] = Field(default_factory=dict)
    modified_by: str = ""
    version: int = Field(default=1, ge=0)
    base_version: Optional[int] = Field(
        default=None, ge=0, description="Remote version the edit started from."
    )
    edited_fields: Optional[List[str]] = None
    equipment: Optional[EquipmentContext] = None


class SubmissionResponse(BaseModel):
    key: str
    queued: bool
    is_valid: bool
    errors: Dict[str, str] = Field(default_factory=dict)
    warnings: Dict[str, str] = Field(default_factory=dict)


class PendingEntrySummary(BaseModel):
    key: str
    project_id: str
    date_id: str
    hour: int
    version: int
    base_version: int
    status: PendingStatus
    attempts: int
    queued_at: datetime
    last_error: Optional[str] = None
    values: Dict[str, FieldValue] = Field(default_factory=dict)
    history: List[AuditRecord] = Field(default_factory=list)


class SyncOutcomeSummary(BaseModel):
    key: str
    status: str
    attempts: int
    version: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    conflicted_fields: List[str] = Field(default_factory=list)
    audit: List[AuditRecord] = Field(
        default_factory=list,
        description="Values that lost a field conflict, retained for audit and undo.",
    )


class SyncReport(BaseModel):
    """Result of one sync pass."""

    delivered: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0, description="Entries still queued after the pass.")
    outcomes: List[SyncOutcomeSummary] = Field(default_factory=list)
