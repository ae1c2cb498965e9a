"""Intake of hourly readings: validate, then queue for delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

from datastore.pending_queue import PendingQueue, build_default_queue
from models.equipment import EquipmentContext
from models.errors import ValidationError
from models.forms import FormTemplate
from models.records import AuditRecord, PendingEntry, Reading
from services.synchronizer import RemoteSynchronizer, SyncOutcome, build_default_synchronizer
from services.validation import ValidationEngine, ValidationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionResult:
    key: str
    validation: ValidationResult
    queued: bool
    entry: Optional[PendingEntry] = None

    def raise_for_status(self) -> None:
        """Raise :class:`ValidationError` when the reading was rejected."""
        if not self.queued:
            raise ValidationError(self.validation.errors)


class LogbookService:
    """Front door for field crews recording readings while offline."""

    def __init__(
        self,
        queue: PendingQueue,
        synchronizer: RemoteSynchronizer,
        engine: Optional[ValidationEngine] = None,
    ) -> None:
        self.queue = queue
        self.synchronizer = synchronizer
        self.engine = engine or ValidationEngine()

    def submit(
        self,
        reading: Reading,
        template: FormTemplate,
        context: Optional[EquipmentContext] = None,
        edited_fields: Optional[Iterable[str]] = None,
        base_version: Optional[int] = None,
    ) -> SubmissionResult:
        """Validate ``reading`` and queue it when no blocking error was found.

        A reading for a key that is already queued replaces the queued value
        but keeps the original basis, so the remote store still sees one edit
        made against the version the crew started from.
        """
        key = reading.key
        validation = self.engine.validate_form(template, reading.values, context)
        if not validation.is_valid:
            logger.info(
                "Reading rejected by validation",
                extra={"canonical_key": key, "status": f"{validation.error_count} errors"},
            )
            return SubmissionResult(key=key, validation=validation, queued=False)

        entry = PendingEntry.from_reading(
            reading, base_version=base_version, edited_fields=edited_fields
        )
        previous = self.queue.get(key)
        if previous is not None:
            entry.base_version = previous.base_version
            entry.base_values = previous.base_values
            entry.edited_fields = sorted(set(previous.edited_fields) | set(entry.edited_fields))
            entry.history = previous.history
        if entry.reading.version <= entry.base_version:
            entry.reading.version = entry.base_version + 1

        self.queue.put(key, entry)
        logger.info(
            "Queued reading for sync",
            extra={
                "canonical_key": key,
                "version": entry.reading.version,
                "pending_count": len(self.queue),
            },
        )
        return SubmissionResult(key=key, validation=validation, queued=True, entry=entry)

    def pending(self, project_id: Optional[str] = None) -> list[PendingEntry]:
        entries = self.queue.get_all()
        if project_id is None:
            return entries
        return [entry for entry in entries if entry.reading.project_id == project_id]

    def audit(self, key: str) -> list[AuditRecord]:
        """Losing values retained for ``key``, delivered or still queued."""
        retained = self.synchronizer.audit_log.history(key)
        queued = self.queue.get(key)
        if queued is not None:
            for record in queued.history:
                if record not in retained:
                    retained.append(record)
        return retained

    def discard(self, key: str) -> bool:
        removed = self.queue.delete(key)
        if removed:
            logger.info("Discarded queued reading", extra={"canonical_key": key})
        return removed

    async def sync(self, project_id: Optional[str] = None) -> list[SyncOutcome]:
        return await self.synchronizer.sync_all(project_id)


@lru_cache
def build_default_logbook() -> LogbookService:
    synchronizer = build_default_synchronizer()
    return LogbookService(queue=build_default_queue(), synchronizer=synchronizer)
