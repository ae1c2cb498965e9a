"""Delivery of queued readings to the remote store."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from functools import lru_cache
from typing import Optional, Tuple

from datastore.audit_log import AuditLog, build_default_audit_log
from datastore.pending_queue import PendingQueue, build_default_queue
from datastore.remote import RemoteStore
from models.errors import ConflictError, ConflictResolutionError
from models.records import AuditRecord, PendingEntry, PendingStatus, Reading
from services.conflicts import ConflictResolver
from services.retry import Exhausted, RetryExecutor, RetryPolicy, Success, error_kind, get_policy
from settings import get_settings

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    confirmed = "confirmed"
    merged = "merged"
    skipped = "skipped"
    failed = "failed"


@dataclass(frozen=True)
class SyncOutcome:
    key: str
    status: SyncStatus
    attempts: int = 0
    version: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    exhausted: bool = False
    conflicted_fields: Tuple[str, ...] = ()
    audit: Tuple[AuditRecord, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is not SyncStatus.failed


class RemoteSynchronizer:
    """Drains the pending queue into the remote store.

    An entry leaves the queue only after the remote store confirms the write.
    Distinct keys are delivered concurrently up to ``concurrency``; deliveries
    of the same key are serialized. Values that lost a conflict merge are
    written to ``audit_log`` before their entry leaves the queue.
    """

    def __init__(
        self,
        queue: PendingQueue,
        remote: RemoteStore,
        executor: Optional[RetryExecutor] = None,
        resolver: Optional[ConflictResolver] = None,
        policy: Optional[RetryPolicy] = None,
        concurrency: int = 4,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.remote = remote
        self.executor = executor or RetryExecutor()
        self.resolver = resolver or ConflictResolver()
        self.policy = policy or self.executor.policy
        self.concurrency = concurrency
        self.audit_log = audit_log or AuditLog(name="audit_log")
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pass_lock = asyncio.Lock()
        self._paused = False
        self._online = True
        self._scheduled: Optional[asyncio.Task] = None

    @property
    def is_syncing(self) -> bool:
        return self._pass_lock.locked()

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_online(self) -> bool:
        return self._online

    def pause(self) -> None:
        """Stop starting new passes; a pass already running finishes."""
        self._paused = True
        logger.info("Sync paused")

    def resume(self) -> Optional[asyncio.Task]:
        """Allow passes again and start one when connectivity is up."""
        self._paused = False
        logger.info("Sync resumed")
        if not self._online:
            return None
        return self._schedule_pass("resume")

    def on_connectivity_change(self, online: bool) -> Optional[asyncio.Task]:
        """Connectivity listener: drain the queue when the remote comes back.

        Losing connectivity cancels a pass this listener started; entries it
        had not confirmed stay queued.
        """
        was_online = self._online
        self._online = online
        if not online:
            logger.info("Connectivity lost")
            if self._scheduled is not None and not self._scheduled.done():
                self._scheduled.cancel()
            return None
        if was_online or self._paused:
            return None
        logger.info("Connectivity restored")
        return self._schedule_pass("reconnect")

    def _schedule_pass(self, reason: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.info("No event loop running; sync waits for the next pass", extra={"status": reason})
            return None
        if self._scheduled is not None and not self._scheduled.done():
            return self._scheduled
        self._scheduled = loop.create_task(self.sync_all())
        self._scheduled.add_done_callback(self._report_scheduled)
        return self._scheduled

    @staticmethod
    def _report_scheduled(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Scheduled sync pass failed", exc_info=error)

    async def sync_all(self, project_id: Optional[str] = None) -> list[SyncOutcome]:
        """Attempt delivery of every queued entry, optionally for one project.

        Entries are processed independently; one failure never stops the others.
        """
        if self._paused:
            logger.info("Sync paused, skipping pass")
            return []
        if not self._online:
            logger.info("No connectivity, skipping pass")
            return []
        if self._pass_lock.locked():
            logger.info("Sync pass already in progress, skipping")
            return []

        async with self._pass_lock:
            queued = await asyncio.to_thread(self.queue.get_all)
            entries = [
                entry
                for entry in queued
                if project_id is None or entry.reading.project_id == project_id
            ]
            if not entries:
                return []

            logger.info("Starting sync pass", extra={"pending_count": len(entries)})
            semaphore = asyncio.Semaphore(self.concurrency)

            async def deliver(entry: PendingEntry) -> SyncOutcome:
                async with semaphore:
                    try:
                        return await self.sync_one(entry)
                    except Exception as exc:
                        logger.exception(
                            "Unexpected error while syncing entry",
                            extra={"canonical_key": entry.key},
                        )
                        return SyncOutcome(
                            key=entry.key,
                            status=SyncStatus.failed,
                            error=str(exc),
                            error_kind=error_kind(exc),
                        )

            outcomes = list(await asyncio.gather(*(deliver(entry) for entry in entries)))

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(
            "Sync pass finished",
            extra={"pending_count": failed, "status": f"{len(outcomes) - failed}/{len(outcomes)} delivered"},
        )
        return outcomes

    async def sync_one(self, entry: PendingEntry) -> SyncOutcome:
        """Deliver whatever is queued under ``entry.key``.

        The queue is re-read once the key's lock is held, so a caller holding a
        stale snapshot never re-sends a value another delivery already
        confirmed, and a newer local write is sent in place of the one it
        replaced.
        """
        lock = self._key_locks.get(entry.key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[entry.key] = lock
        async with lock:
            current = await asyncio.to_thread(self.queue.get, entry.key)
            if current is None:
                logger.info("Nothing queued for entry; skipping", extra={"canonical_key": entry.key})
                return SyncOutcome(key=entry.key, status=SyncStatus.skipped)
            return await self._deliver(current)

    async def _deliver(self, entry: PendingEntry) -> SyncOutcome:
        result = await self._write(entry)
        if isinstance(result, Success):
            await self._confirm(entry, result.value)
            return SyncOutcome(
                key=entry.key,
                status=SyncStatus.confirmed,
                attempts=result.attempts,
                version=result.value.version,
                audit=tuple(entry.history),
            )

        if isinstance(result.error, ConflictError):
            return await self._resolve_and_resubmit(entry, result.error, result.attempts)

        return await self._fail(
            entry,
            result.error,
            result.attempts,
            exhausted=isinstance(result, Exhausted),
        )

    async def _resolve_and_resubmit(
        self, entry: PendingEntry, conflict: ConflictError, attempts: int
    ) -> SyncOutcome:
        remote = conflict.remote
        if remote is None:
            fetched = await self.executor.run(
                lambda: self.remote.get(entry.reading.path),
                policy=self.policy,
                on_retry=self._observer(entry.key),
            )
            attempts += fetched.attempts
            if not isinstance(fetched, Success):
                return await self._fail(entry, fetched.error, attempts, exhausted=isinstance(fetched, Exhausted))
            remote = fetched.value
            if remote is None:
                return await self._fail(
                    entry,
                    conflict,
                    attempts,
                    status=PendingStatus.conflicted,
                )

        try:
            resolved = self.resolver.resolve(entry, remote)
        except ConflictResolutionError as exc:
            logger.critical(
                "Conflict resolver could not produce a deterministic result",
                extra={"canonical_key": entry.key, "version": remote.version},
            )
            return await self._fail(entry, exc, attempts, status=PendingStatus.conflicted)

        if resolved.needs_review:
            held = ConflictError(
                "Field timestamps beyond the allowed clock skew: "
                + ", ".join(resolved.conflicted_fields),
                remote=remote,
                kind="timestamp_violation",
            )
            return await self._fail(
                entry,
                held,
                attempts,
                status=PendingStatus.conflicted,
                conflicted_fields=resolved.conflicted_fields,
            )

        rebased = self.resolver.apply(entry, resolved)
        if not await asyncio.to_thread(self.queue.update, entry.key, rebased):
            logger.info(
                "Newer local write queued during conflict resolution; deferring",
                extra={"canonical_key": entry.key},
            )
            return SyncOutcome(
                key=entry.key,
                status=SyncStatus.failed,
                attempts=attempts,
                error="Superseded by a newer local write",
                error_kind="superseded",
                conflicted_fields=resolved.conflicted_fields,
            )

        retry = await self._write(rebased)
        attempts += retry.attempts
        if isinstance(retry, Success):
            await self._confirm(rebased, retry.value)
            return SyncOutcome(
                key=entry.key,
                status=SyncStatus.merged if resolved.merged else SyncStatus.confirmed,
                attempts=attempts,
                version=retry.value.version,
                conflicted_fields=resolved.conflicted_fields,
                audit=tuple(rebased.history),
            )

        return await self._fail(
            rebased,
            retry.error,
            attempts,
            exhausted=isinstance(retry, Exhausted),
            status=PendingStatus.conflicted if isinstance(retry.error, ConflictError) else None,
            conflicted_fields=resolved.conflicted_fields,
        )

    async def _write(self, entry: PendingEntry):
        reading = entry.reading
        return await self.executor.run(
            lambda: self.remote.write(reading.path, reading, entry.base_version),
            policy=self.policy,
            on_retry=self._observer(entry.key),
        )

    async def _confirm(self, entry: PendingEntry, stored: Reading) -> None:
        if entry.history:
            await asyncio.to_thread(self.audit_log.record, entry.key, entry.history)
        removed = await asyncio.to_thread(self.queue.delete, entry.key, entry.queued_at)
        if removed:
            logger.info(
                "Remote store confirmed entry",
                extra={"canonical_key": entry.key, "version": stored.version, "status": "confirmed"},
            )
        else:
            logger.info(
                "Remote store confirmed entry; a newer local write stays queued",
                extra={"canonical_key": entry.key, "version": stored.version},
            )

    async def _fail(
        self,
        entry: PendingEntry,
        error: BaseException,
        attempts: int,
        *,
        exhausted: bool = False,
        status: Optional[PendingStatus] = None,
        conflicted_fields: Tuple[str, ...] = (),
    ) -> SyncOutcome:
        kind = error_kind(error)
        updated = entry.model_copy(deep=True)
        updated.attempts = entry.attempts + attempts
        updated.last_error = str(error)
        if status is not None:
            updated.status = status
        await asyncio.to_thread(self.queue.update, entry.key, updated)
        logger.warning(
            "Entry left queued after failed sync",
            extra={"canonical_key": entry.key, "error_kind": kind, "attempt": attempts},
        )
        return SyncOutcome(
            key=entry.key,
            status=SyncStatus.failed,
            attempts=attempts,
            error=str(error),
            error_kind=kind,
            exhausted=exhausted,
            conflicted_fields=conflicted_fields,
        )

    @staticmethod
    def _observer(key: str):
        def on_retry(attempt: int, error: BaseException) -> None:
            logger.info(
                "Retrying remote write",
                extra={"canonical_key": key, "attempt": attempt + 1, "error_kind": error_kind(error)},
            )

        return on_retry


def build_remote_store() -> RemoteStore:
    settings = get_settings()
    if settings.remote_url:
        from datastore.http_remote import HttpRemoteStore

        return HttpRemoteStore(settings.remote_url)
    from datastore.mock_remote import build_default_remote

    return build_default_remote()


@lru_cache
def build_default_synchronizer() -> RemoteSynchronizer:
    """Factory that wires the synchronizer with the configured stores."""
    settings = get_settings()
    policy = get_policy(settings.retry_preset)
    return RemoteSynchronizer(
        queue=build_default_queue(),
        remote=build_remote_store(),
        executor=RetryExecutor(policy=policy),
        resolver=ConflictResolver(max_clock_skew=timedelta(seconds=settings.max_clock_skew)),
        policy=policy,
        concurrency=settings.sync_concurrency,
        audit_log=build_default_audit_log(),
    )
