from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from datastore.audit_log import AuditLog
from datastore.mock_remote import MockRemoteStore
from datastore.pending_queue import PendingQueue
from models.errors import ConflictError, ConflictResolutionError, PermanentSyncError
from models.keys import entry_path
from models.records import PendingEntry, PendingStatus, Reading
from services.conflicts import ConflictResolver
from services.retry import RetryExecutor, RetryPolicy
from services.synchronizer import RemoteSynchronizer, SyncStatus

_T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
_POLICY = RetryPolicy(max_retries=2, base_delay=1.0, max_delay=10.0, jitter_factor=0.0)


async def _no_sleep(delay: float) -> None:
    return None


def _reading(hour: int = 9, version: int = 1, actor: str = "crew-b", **values) -> Reading:
    return Reading(
        project_id="plant-7",
        date_id="20240301",
        hour=hour,
        values=values or {"inletReading": 400},
        version=version,
        last_modified_by=actor,
        last_modified_at=_T0,
    )


def _queue_with(*entries: PendingEntry) -> PendingQueue:
    queue = PendingQueue(name="test")
    for entry in entries:
        queue.put(entry.key, entry)
    return queue


def _synchronizer(queue, remote, resolver=None, concurrency: int = 4) -> RemoteSynchronizer:
    return RemoteSynchronizer(
        queue=queue,
        remote=remote,
        executor=RetryExecutor(policy=_POLICY, sleep=_no_sleep),
        resolver=resolver,
        concurrency=concurrency,
    )


class RejectingRemote(MockRemoteStore):
    """Rejects writes to one path permanently."""

    def __init__(self, rejected_path: str) -> None:
        super().__init__(name="rejecting")
        self.rejected_path = rejected_path

    async def write(self, path, reading, expected_version):
        if path == self.rejected_path:
            raise PermanentSyncError("403 Forbidden", kind="forbidden")
        return await super().write(path, reading, expected_version)


class BareConflictRemote(MockRemoteStore):
    """Reports conflicts without the current record, like a terse server."""

    async def write(self, path, reading, expected_version):
        try:
            return await super().write(path, reading, expected_version)
        except ConflictError as exc:
            raise ConflictError(str(exc)) from exc


class AlwaysConflictingRemote:
    def __init__(self, current: Reading) -> None:
        self.current = current
        self.writes = 0

    async def get(self, path):
        return self.current

    async def write(self, path, reading, expected_version):
        self.writes += 1
        raise ConflictError("moved on", remote=self.current)


class BlockingRemote(MockRemoteStore):
    def __init__(self) -> None:
        super().__init__(name="blocking")
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def write(self, path, reading, expected_version):
        self.started.set()
        await self.release.wait()
        return await super().write(path, reading, expected_version)


def test_permanent_failure_does_not_stop_other_entries() -> None:
    entries = [
        PendingEntry.from_reading(_reading(hour=hour), queued_at=_T0 + timedelta(seconds=hour))
        for hour in range(1, 6)
    ]
    queue = _queue_with(*entries)
    remote = RejectingRemote(entry_path("plant-7", "20240301", 3))

    outcomes = asyncio.run(_synchronizer(queue, remote).sync_all())

    assert len(outcomes) == 5
    by_key = {outcome.key: outcome for outcome in outcomes}
    failed = by_key["plant-7_20240301_03"]
    assert failed.status is SyncStatus.failed
    assert failed.error_kind == "forbidden"
    assert failed.attempts == 1
    assert sum(1 for outcome in outcomes if outcome.status is SyncStatus.confirmed) == 4

    remaining = queue.get_all()
    assert [entry.key for entry in remaining] == ["plant-7_20240301_03"]
    assert remaining[0].attempts == 1
    assert "Forbidden" in remaining[0].last_error
    assert len(remote.scan()) == 4


def test_conflict_is_merged_and_resubmitted() -> None:
    remote = MockRemoteStore(name="remote")
    remote.seed(_reading(version=2, actor="crew-a", inletReading=410, totalizer=77))
    local = PendingEntry.from_reading(
        _reading(version=3, inletReading=420), base_version=1, edited_fields=["inletReading"]
    )
    queue = _queue_with(local)
    synchronizer = _synchronizer(queue, remote)

    outcome = asyncio.run(synchronizer.sync_one(queue.get(local.key)))

    assert outcome.status is SyncStatus.merged
    assert outcome.version == 3
    assert outcome.attempts == 2
    assert len(queue) == 0
    stored = remote.scan()[0]
    assert stored.version == 3
    assert stored.values == {"inletReading": 420, "totalizer": 77}
    assert synchronizer.resolver.stats.field_merges == 1


def test_conflict_without_payload_fetches_remote() -> None:
    remote = BareConflictRemote(name="remote")
    remote.seed(_reading(version=2, actor="crew-a", totalizer=77))
    local = PendingEntry.from_reading(
        _reading(version=2, inletReading=420), base_version=1, edited_fields=["inletReading"]
    )
    queue = _queue_with(local)

    outcomes = asyncio.run(_synchronizer(queue, remote).sync_all())

    assert [outcome.status for outcome in outcomes] == [SyncStatus.merged]
    assert remote.scan()[0].values == {"totalizer": 77, "inletReading": 420}
    assert remote.scan()[0].version == 3


def test_second_conflict_leaves_entry_flagged() -> None:
    remote = AlwaysConflictingRemote(_reading(version=5, actor="crew-a", inletReading=1))
    local = PendingEntry.from_reading(_reading(version=2, inletReading=2), base_version=1)
    queue = _queue_with(local)

    outcome = asyncio.run(_synchronizer(queue, remote).sync_one(local))

    assert outcome.status is SyncStatus.failed
    assert outcome.error_kind == "conflict"
    assert remote.writes == 2
    queued = queue.get(local.key)
    assert queued.status is PendingStatus.conflicted
    assert queued.base_version == 5
    assert queued.reading.version == 5
    assert queued.history


def test_unreachable_remote_exhausts_retries_and_keeps_entries() -> None:
    remote = MockRemoteStore(name="remote")
    remote.set_online(False)
    entries = [PendingEntry.from_reading(_reading(hour=hour)) for hour in (1, 2)]
    queue = _queue_with(*entries)

    outcomes = asyncio.run(_synchronizer(queue, remote).sync_all())

    assert all(outcome.status is SyncStatus.failed for outcome in outcomes)
    assert all(outcome.exhausted and outcome.attempts == 3 for outcome in outcomes)
    assert all(outcome.error_kind == "network" for outcome in outcomes)
    assert len(queue) == 2
    assert all(entry.attempts == 3 for entry in queue.get_all())

    remote.set_online(True)
    retry = asyncio.run(_synchronizer(queue, remote).sync_all())
    assert all(outcome.status is SyncStatus.confirmed for outcome in retry)
    assert len(queue) == 0


def test_resolver_defect_is_logged_critical(caplog) -> None:
    class BrokenResolver(ConflictResolver):
        def resolve(self, local, remote):
            raise ConflictResolutionError("no deterministic winner")

    remote = MockRemoteStore(name="remote")
    remote.seed(_reading(version=4, actor="crew-a"))
    local = PendingEntry.from_reading(_reading(version=2), base_version=1)
    queue = _queue_with(local)

    with caplog.at_level(logging.CRITICAL, logger="services.synchronizer"):
        outcome = asyncio.run(_synchronizer(queue, remote, resolver=BrokenResolver()).sync_one(local))

    assert outcome.status is SyncStatus.failed
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)
    assert queue.get(local.key).status is PendingStatus.conflicted


def test_project_filter_limits_the_pass() -> None:
    other = PendingEntry.from_reading(
        Reading(project_id="plant-9", date_id="20240301", hour=1, values={"a": 1}, version=1)
    )
    mine = PendingEntry.from_reading(_reading(hour=1))
    queue = _queue_with(other, mine)

    outcomes = asyncio.run(_synchronizer(queue, MockRemoteStore(name="r")).sync_all("plant-7"))

    assert [outcome.key for outcome in outcomes] == [mine.key]
    assert [entry.key for entry in queue.get_all()] == [other.key]


def test_overlapping_pass_is_skipped_and_cancellation_keeps_queue() -> None:
    remote = BlockingRemote()
    queue = _queue_with(PendingEntry.from_reading(_reading(hour=1)))
    synchronizer = _synchronizer(queue, remote)

    async def scenario():
        first = asyncio.create_task(synchronizer.sync_all())
        await remote.started.wait()
        assert synchronizer.is_syncing is True
        second = await synchronizer.sync_all()
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        return second

    assert asyncio.run(scenario()) == []
    assert len(queue) == 1
    assert queue.get_all()[0].attempts == 0
    assert remote.write_count == 0
    assert synchronizer.is_syncing is False




def test_newer_local_write_survives_confirmation() -> None:
    remote = BlockingRemote()
    first = PendingEntry.from_reading(_reading(hour=1, inletReading=1), queued_at=_T0)
    queue = _queue_with(first)
    newer = PendingEntry.from_reading(
        _reading(hour=1, inletReading=2), queued_at=_T0 + timedelta(minutes=1)
    )
    synchronizer = _synchronizer(queue, remote)

    async def scenario():
        delivery = asyncio.create_task(synchronizer.sync_one(first))
        await remote.started.wait()
        queue.put(newer.key, newer)
        remote.release.set()
        return await delivery

    outcome = asyncio.run(scenario())

    assert outcome.status is SyncStatus.confirmed
    assert queue.get(first.key) == newer
    assert remote.scan()[0].values == {"inletReading": 1}


def test_stale_snapshot_delivers_the_queued_value() -> None:
    remote = MockRemoteStore(name="remote")
    first = PendingEntry.from_reading(_reading(hour=1, inletReading=1), queued_at=_T0)
    queue = _queue_with(first)
    newer = PendingEntry.from_reading(
        _reading(hour=1, inletReading=2), queued_at=_T0 + timedelta(minutes=1)
    )
    queue.put(newer.key, newer)

    outcome = asyncio.run(_synchronizer(queue, remote).sync_one(first))

    assert outcome.status is SyncStatus.confirmed
    assert len(queue) == 0
    assert remote.scan()[0].values == {"inletReading": 2}


def test_same_key_deliveries_are_serialized() -> None:
    remote = MockRemoteStore(name="remote")
    entry = PendingEntry.from_reading(_reading(hour=2))
    queue = _queue_with(entry)
    synchronizer = _synchronizer(queue, remote)

    async def scenario():
        return await asyncio.gather(synchronizer.sync_one(entry), synchronizer.sync_one(entry))

    statuses = [outcome.status for outcome in asyncio.run(scenario())]

    assert remote.write_count == 1
    assert statuses.count(SyncStatus.confirmed) == 1
    assert statuses.count(SyncStatus.skipped) == 1
    assert synchronizer.executor.stats.conflicts == 0
    assert len(queue) == 0


def test_merged_sync_keeps_losing_value_in_audit_log(tmp_path) -> None:
    remote = MockRemoteStore(name="remote")
    remote.seed(
        Reading(
            project_id="plant-7",
            date_id="20240301",
            hour=9,
            values={"inletReading": 410},
            version=2,
            last_modified_by="crew-a",
            last_modified_at=_T0 + timedelta(minutes=30),
        )
    )
    local = PendingEntry.from_reading(
        _reading(version=3, inletReading=420), base_version=1, edited_fields=["inletReading"]
    )
    queue = _queue_with(local)
    audit_path = tmp_path / "audit.json"
    synchronizer = RemoteSynchronizer(
        queue=queue,
        remote=remote,
        executor=RetryExecutor(policy=_POLICY, sleep=_no_sleep),
        audit_log=AuditLog(name="audit", persistence_path=audit_path),
    )

    outcome = asyncio.run(synchronizer.sync_one(local))

    assert outcome.status is SyncStatus.merged
    assert outcome.version == 3
    assert outcome.conflicted_fields == ("inletReading",)
    assert len(queue) == 0
    assert remote.scan()[0].values == {"inletReading": 410}
    assert [(record.losing_value, record.losing_side) for record in outcome.audit] == [(420, "local")]

    [record] = AuditLog(name="audit", persistence_path=audit_path).history(local.key)
    assert record.losing_value == 420
    assert record.losing_actor == "crew-b"
    assert record.winning_value == 410


def test_earlier_version_reconciled_onto_later_one_keeps_its_version() -> None:
    remote = MockRemoteStore(name="remote")
    remote.seed(_reading(version=3, actor="crew-b", inletReading=420))
    local = PendingEntry.from_reading(
        _reading(version=2, actor="crew-a", totalizer=5), base_version=1, edited_fields=["totalizer"]
    )
    queue = _queue_with(local)

    outcome = asyncio.run(_synchronizer(queue, remote).sync_one(local))

    assert outcome.status is SyncStatus.merged
    assert outcome.version == 3
    stored = remote.scan()[0]
    assert stored.version == 3
    assert stored.values == {"inletReading": 420, "totalizer": 5}


def test_future_stamped_edit_is_held_without_writing() -> None:
    remote = MockRemoteStore(name="remote")
    remote.seed(_reading(version=2, actor="crew-a", inletReading=410))
    ahead = Reading(
        project_id="plant-7",
        date_id="20240301",
        hour=9,
        values={"inletReading": 420},
        version=3,
        last_modified_by="crew-b",
        last_modified_at=_T0 + timedelta(hours=1),
    )
    local = PendingEntry.from_reading(ahead, base_version=1, edited_fields=["inletReading"])
    queue = _queue_with(local)
    resolver = ConflictResolver(clock=lambda: _T0)

    outcome = asyncio.run(_synchronizer(queue, remote, resolver=resolver).sync_one(local))

    assert outcome.status is SyncStatus.failed
    assert outcome.error_kind == "timestamp_violation"
    assert outcome.conflicted_fields == ("inletReading",)
    queued = queue.get(local.key)
    assert queued.status is PendingStatus.conflicted
    assert queued.base_version == 1
    assert queued.reading.values == {"inletReading": 420}
    stored = remote.scan()[0]
    assert (stored.version, stored.values) == (2, {"inletReading": 410})


def test_paused_synchronizer_skips_passes_until_resumed() -> None:
    queue = _queue_with(PendingEntry.from_reading(_reading(hour=4)))
    synchronizer = _synchronizer(queue, MockRemoteStore(name="remote"))
    synchronizer.pause()

    async def scenario():
        skipped = await synchronizer.sync_all()
        resumed = synchronizer.resume()
        return skipped, await resumed

    skipped, outcomes = asyncio.run(scenario())

    assert skipped == []
    assert [outcome.status for outcome in outcomes] == [SyncStatus.confirmed]
    assert synchronizer.is_paused is False
    assert len(queue) == 0


def test_connectivity_restore_triggers_a_pass() -> None:
    remote = MockRemoteStore(name="remote")
    queue = _queue_with(PendingEntry.from_reading(_reading(hour=5)))
    synchronizer = _synchronizer(queue, remote)
    passes = []
    remote.add_listener(lambda online: passes.append(synchronizer.on_connectivity_change(online)))

    async def scenario():
        remote.set_online(False)
        while_offline = await synchronizer.sync_all()
        remote.set_online(True)
        return while_offline, await passes[-1]

    while_offline, outcomes = asyncio.run(scenario())

    assert passes[0] is None
    assert while_offline == []
    assert [outcome.status for outcome in outcomes] == [SyncStatus.confirmed]
    assert synchronizer.is_online is True
    assert len(queue) == 0


def test_reconnect_while_paused_waits_for_resume() -> None:
    queue = _queue_with(PendingEntry.from_reading(_reading(hour=6)))
    synchronizer = _synchronizer(queue, MockRemoteStore(name="remote"))
    synchronizer.pause()

    synchronizer.on_connectivity_change(False)

    assert synchronizer.on_connectivity_change(True) is None
    assert len(queue) == 1


class ThreadRecordingQueue(PendingQueue):
    def __init__(self) -> None:
        super().__init__(name="threads")
        self.mutating_threads: list[int] = []

    def update(self, key, entry):
        self.mutating_threads.append(threading.get_ident())
        return super().update(key, entry)

    def delete(self, key, queued_at=None):
        self.mutating_threads.append(threading.get_ident())
        return super().delete(key, queued_at)


def test_queue_mutations_run_off_the_event_loop_thread() -> None:
    queue = ThreadRecordingQueue()
    for hour in (1, 2):
        entry = PendingEntry.from_reading(_reading(hour=hour))
        queue.put(entry.key, entry)
    remote = RejectingRemote(entry_path("plant-7", "20240301", 2))

    asyncio.run(_synchronizer(queue, remote).sync_all())

    assert len(queue.mutating_threads) == 2
    assert threading.get_ident() not in queue.mutating_threads
