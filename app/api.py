"""HTTP route definitions for the service."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.schemas import (
    PendingEntrySummary,
    ReadingSubmission,
    SubmissionResponse,
    SyncOutcomeSummary,
    SyncReport,
)
from models.errors import StorageError, ValidationError
from models.forms import FormTemplate
from models.records import AuditRecord, PendingEntry, Reading
from services.logbook import LogbookService, build_default_logbook
from services.synchronizer import SyncStatus
from services.templates import available_log_types, get_template

router = APIRouter()


def get_logbook() -> LogbookService:
    return build_default_logbook()


def _summarize(entry: PendingEntry) -> PendingEntrySummary:
    reading = entry.reading
    return PendingEntrySummary(
        key=entry.key,
        project_id=reading.project_id,
        date_id=reading.date_id,
        hour=reading.hour,
        version=reading.version,
        base_version=entry.base_version,
        status=entry.status,
        attempts=entry.attempts,
        queued_at=entry.queued_at,
        last_error=entry.last_error,
        values=dict(reading.values),
        history=list(entry.history),
    )


@router.post(
    "/projects/{project_id}/readings",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
    summary="Validate an hourly reading and queue it for sync.",
)
async def submit_reading(
    project_id: str,
    payload: ReadingSubmission,
    logbook: LogbookService = Depends(get_logbook),
) -> SubmissionResponse:
    try:
        reading = Reading(
            project_id=project_id,
            date_id=payload.date_id,
            hour=payload.hour,
            values=payload.values,
            version=payload.version,
            last_modified_by=payload.modified_by,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    try:
        result = await asyncio.to_thread(
            logbook.submit,
            reading,
            get_template(payload.log_type),
            payload.equipment,
            edited_fields=payload.edited_fields,
            base_version=payload.base_version,
        )
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc

    response = SubmissionResponse(
        key=result.key,
        queued=result.queued,
        is_valid=result.validation.is_valid,
        errors=result.validation.errors,
        warnings=result.validation.warnings,
    )
    try:
        result.raise_for_status()
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=response.model_dump(),
        ) from exc
    return response


@router.get(
    "/pending",
    response_model=list[PendingEntrySummary],
    summary="List readings awaiting remote confirmation.",
)
async def list_pending(
    project_id: Optional[str] = Query(default=None),
    logbook: LogbookService = Depends(get_logbook),
) -> list[PendingEntrySummary]:
    entries = await asyncio.to_thread(logbook.pending, project_id)
    return [_summarize(entry) for entry in entries]


@router.delete(
    "/pending/{key}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Drop a queued reading without syncing it.",
)
async def discard_pending(
    key: str,
    logbook: LogbookService = Depends(get_logbook),
) -> None:
    try:
        removed = await asyncio.to_thread(logbook.discard, key)
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending entry for {key!r}.",
        )


@router.post(
    "/sync",
    response_model=SyncReport,
    summary="Run one sync pass against the remote store.",
)
async def run_sync(
    project_id: Optional[str] = Query(default=None),
    logbook: LogbookService = Depends(get_logbook),
) -> SyncReport:
    outcomes = await logbook.sync(project_id)
    delivered = sum(
        1 for outcome in outcomes if outcome.status in (SyncStatus.confirmed, SyncStatus.merged)
    )
    return SyncReport(
        delivered=delivered,
        failed=sum(1 for outcome in outcomes if not outcome.ok),
        remaining=len(logbook.queue),
        outcomes=[
            SyncOutcomeSummary(
                key=outcome.key,
                status=outcome.status.value,
                attempts=outcome.attempts,
                version=outcome.version,
                error=outcome.error,
                error_kind=outcome.error_kind,
                conflicted_fields=list(outcome.conflicted_fields),
                audit=list(outcome.audit),
            )
            for outcome in outcomes
        ],
    )


@router.get(
    "/sync/stats",
    summary="Cumulative retry and conflict statistics.",
)
async def sync_stats(logbook: LogbookService = Depends(get_logbook)) -> Dict[str, Any]:
    synchronizer = logbook.synchronizer
    return {
        "pending_count": len(logbook.queue),
        "syncing": synchronizer.is_syncing,
        "paused": synchronizer.is_paused,
        "online": synchronizer.is_online,
        "audit_records": len(synchronizer.audit_log),
        "policy": synchronizer.policy.to_dict(),
        "retry": synchronizer.executor.stats.to_dict(),
        "conflicts": synchronizer.resolver.stats.to_dict(),
    }


@router.post(
    "/sync/pause",
    summary="Stop starting sync passes until resumed.",
)
async def pause_sync(logbook: LogbookService = Depends(get_logbook)) -> Dict[str, bool]:
    logbook.synchronizer.pause()
    return {"paused": True}


@router.post(
    "/sync/resume",
    summary="Allow sync passes again and start one in the background.",
)
async def resume_sync(logbook: LogbookService = Depends(get_logbook)) -> Dict[str, bool]:
    started = logbook.synchronizer.resume()
    return {"paused": False, "started": started is not None}


@router.get(
    "/audit/{key}",
    response_model=List[AuditRecord],
    summary="Values that lost a conflict merge for one reading.",
)
async def fetch_audit(
    key: str,
    logbook: LogbookService = Depends(get_logbook),
) -> List[AuditRecord]:
    return await asyncio.to_thread(logbook.audit, key)


@router.get(
    "/templates/{log_type}",
    response_model=FormTemplate,
    summary="Fetch the form template for a log type.",
)
async def fetch_template(log_type: str) -> FormTemplate:
    if log_type.strip().lower() not in available_log_types():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown log type {log_type!r}; expected one of {available_log_types()}.",
        )
    return get_template(log_type)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
