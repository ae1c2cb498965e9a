"""Deterministic resolution of concurrent writes to the same reading."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from models.errors import ConflictResolutionError
from models.records import AuditRecord, FieldValue, PendingEntry, PendingStatus, Reading, utcnow

logger = logging.getLogger(__name__)


class Side(str, Enum):
    local = "local"
    remote = "remote"


class ResolutionStrategy(str, Enum):
    field_merge = "field_merge"
    local_wins = "local_wins"
    manual_review = "manual_review"


@dataclass(frozen=True)
class ResolvedValue:
    reading: Reading
    strategy: ResolutionStrategy
    remote_version: int
    conflicted_fields: Tuple[str, ...] = ()
    audit: Tuple[AuditRecord, ...] = ()

    @property
    def merged(self) -> bool:
        return self.strategy is ResolutionStrategy.field_merge

    @property
    def flagged(self) -> bool:
        """True when at least one field was edited on both sides."""
        return bool(self.conflicted_fields)

    @property
    def needs_review(self) -> bool:
        return self.strategy is ResolutionStrategy.manual_review


class ConflictStats:

    def __init__(self) -> None:
        self.total_conflicts = 0
        self.field_merges = 0
        self.local_wins = 0
        self.timestamp_violations = 0
        self.conflicted_fields = 0
        self.retained_values = 0
        self.unresolved = 0
        self.last_conflict_at: Optional[datetime] = None

    def record(self, resolved: ResolvedValue) -> None:
        self.total_conflicts += 1
        self.last_conflict_at = utcnow()
        if resolved.merged:
            self.field_merges += 1
        elif resolved.needs_review:
            self.timestamp_violations += 1
        else:
            self.local_wins += 1
        self.conflicted_fields += len(resolved.conflicted_fields)
        self.retained_values += len(resolved.audit)

    def record_unresolved(self) -> None:
        self.total_conflicts += 1
        self.unresolved += 1
        self.last_conflict_at = utcnow()

    @property
    def resolution_rate(self) -> float:
        if not self.total_conflicts:
            return 0.0
        return (self.total_conflicts - self.unresolved) / self.total_conflicts * 100

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_conflicts": self.total_conflicts,
            "field_merges": self.field_merges,
            "local_wins": self.local_wins,
            "timestamp_violations": self.timestamp_violations,
            "conflicted_fields": self.conflicted_fields,
            "retained_values": self.retained_values,
            "unresolved": self.unresolved,
            "resolution_rate": self.resolution_rate,
            "last_conflict_at": self.last_conflict_at.isoformat() if self.last_conflict_at else None,
        }


def resolved_version(local_version: int, remote_version: int) -> int:
    """Version of the record produced by resolving two concurrent writes.

    Symmetric in its arguments, so the result does not depend on which write
    reached the remote store first. Two writes claiming the same version
    resolve one past it.
    """
    if local_version == remote_version:
        return remote_version + 1
    return max(local_version, remote_version)


class ConflictResolver:
    """Field-level merge of a queued local edit onto a newer remote record.

    The remote record is the base; only fields the local entry edited are
    re-applied. A field changed on both sides goes to the side with the later
    per-field timestamp. Ties go to the greater actor id, then to the local
    side. Every losing value is returned as an :class:`AuditRecord`.

    Timestamps are only trusted up to ``max_clock_skew`` past the resolver's
    clock. A contested field stamped later than that is not merged; the
    result is tagged ``manual_review`` and carries the local reading as is.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        max_clock_skew: timedelta = timedelta(minutes=5),
    ) -> None:
        self._clock = clock
        self.max_clock_skew = max_clock_skew
        self.stats = ConflictStats()

    def resolve(self, local: PendingEntry, remote: Reading) -> ResolvedValue:
        try:
            resolved = self._resolve(local, remote)
        except ConflictResolutionError:
            self.stats.record_unresolved()
            raise
        self.stats.record(resolved)
        logger.info(
            "Resolved write conflict",
            extra={
                "canonical_key": local.key,
                "status": resolved.strategy.value,
                "version": resolved.reading.version,
            },
        )
        return resolved

    def apply(self, entry: PendingEntry, resolved: ResolvedValue) -> PendingEntry:
        """Return ``entry`` rebased onto the remote version with the resolved value."""
        updated = entry.model_copy(deep=True)
        updated.reading = resolved.reading.model_copy(deep=True)
        updated.base_version = resolved.remote_version
        updated.history = [*entry.history, *resolved.audit]
        if resolved.merged:
            updated.status = PendingStatus.merged
        return updated

    def _resolve(self, local: PendingEntry, remote: Reading) -> ResolvedValue:
        reading = local.reading
        if (reading.project_id, reading.date_id, reading.hour) != (
            remote.project_id,
            remote.date_id,
            remote.hour,
        ):
            raise ConflictResolutionError(
                f"Cannot resolve {reading.key!r} against remote record {remote.key!r}"
            )

        version = resolved_version(reading.version, remote.version)

        if remote.version <= local.base_version:
            kept = reading.model_copy(deep=True)
            kept.version = version
            return ResolvedValue(
                reading=kept,
                strategy=ResolutionStrategy.local_wins,
                remote_version=remote.version,
            )

        values: Dict[str, FieldValue] = dict(remote.values)
        field_times: Dict[str, datetime] = {
            name: remote.modified_at(name) for name in remote.values
        }
        conflicted: List[str] = []
        audit: List[AuditRecord] = []
        skewed: List[str] = []
        recorded_at = self._clock()
        latest_trusted = recorded_at + self.max_clock_skew

        for name in sorted(set(local.edited_fields)):
            local_value = reading.values.get(name)
            local_at = reading.modified_at(name)

            if not self._edited_remotely(local, remote, name, local_value):
                values[name] = local_value
                field_times[name] = local_at
                continue

            remote_value = remote.values.get(name)
            remote_at = remote.modified_at(name)
            conflicted.append(name)
            if local_at > latest_trusted or remote_at > latest_trusted:
                skewed.append(name)
                continue
            if self._local_wins(local_at, remote_at, reading.last_modified_by, remote.last_modified_by):
                values[name] = local_value
                field_times[name] = local_at
                audit.append(
                    AuditRecord(
                        field=name,
                        losing_value=remote_value,
                        losing_side=Side.remote.value,
                        losing_actor=remote.last_modified_by,
                        losing_modified_at=remote_at,
                        winning_value=local_value,
                        winning_side=Side.local.value,
                        remote_version=remote.version,
                        recorded_at=recorded_at,
                    )
                )
            else:
                audit.append(
                    AuditRecord(
                        field=name,
                        losing_value=local_value,
                        losing_side=Side.local.value,
                        losing_actor=reading.last_modified_by,
                        losing_modified_at=local_at,
                        winning_value=remote_value,
                        winning_side=Side.remote.value,
                        remote_version=remote.version,
                        recorded_at=recorded_at,
                    )
                )

        if skewed:
            logger.warning(
                "Field timestamp is beyond the allowed clock skew; holding for review",
                extra={"canonical_key": reading.key, "field": skewed},
            )
            return ResolvedValue(
                reading=reading.model_copy(deep=True),
                strategy=ResolutionStrategy.manual_review,
                remote_version=remote.version,
                conflicted_fields=tuple(skewed),
            )

        merged = Reading(
            project_id=remote.project_id,
            date_id=remote.date_id,
            hour=remote.hour,
            values=values,
            version=version,
            last_modified_by=reading.last_modified_by,
            last_modified_at=max(reading.last_modified_at, remote.last_modified_at),
            field_modified_at=field_times,
        )
        return ResolvedValue(
            reading=merged,
            strategy=ResolutionStrategy.field_merge,
            remote_version=remote.version,
            conflicted_fields=tuple(conflicted),
            audit=tuple(audit),
        )

    @staticmethod
    def _edited_remotely(
        local: PendingEntry, remote: Reading, name: str, local_value: FieldValue
    ) -> bool:
        if name not in remote.values:
            return False
        remote_value = remote.values[name]
        if remote_value == local_value:
            return False
        if local.base_values is not None:
            return remote_value != local.base_values.get(name)
        return True

    @staticmethod
    def _local_wins(
        local_at: datetime, remote_at: datetime, local_actor: str, remote_actor: str
    ) -> bool:
        if local_at != remote_at:
            return local_at > remote_at
        if local_actor != remote_actor:
            return local_actor > remote_actor
        return True
