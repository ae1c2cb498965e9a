"""Unit tests for the local durable queue."""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from datastore.pending_queue import PendingQueue
from models.errors import StorageError
from models.records import PendingEntry, PendingStatus, Reading

_T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _entry(hour: int = 9, value: float = 12.5, offset: int = 0) -> PendingEntry:
    reading = Reading(
        project_id="plant-7",
        date_id="20240301",
        hour=hour,
        values={"inletReading": value},
        version=1,
        last_modified_by="crew-a",
        last_modified_at=_T0,
    )
    return PendingEntry.from_reading(reading, queued_at=_T0 + timedelta(seconds=offset))


def test_put_and_get_returns_deep_copy() -> None:
    queue = PendingQueue(name="test")
    entry = _entry()

    queue.put(entry.key, entry)
    fetched = queue.get(entry.key)

    assert fetched == entry
    assert fetched is not entry
    fetched.reading.values["inletReading"] = 99
    assert queue.get(entry.key).reading.values["inletReading"] == 12.5


def test_put_overwrites_same_key() -> None:
    queue = PendingQueue(name="test")
    first = _entry(value=1.0)
    second = _entry(value=2.0, offset=5)

    queue.put(first.key, first)
    queue.put(second.key, second)

    assert len(queue) == 1
    assert queue.get(first.key).reading.values["inletReading"] == 2.0


def test_get_all_is_oldest_first() -> None:
    queue = PendingQueue(name="test")
    late = _entry(hour=10, offset=30)
    early = _entry(hour=11, offset=0)
    queue.put(late.key, late)
    queue.put(early.key, early)

    assert [item.key for item in queue.get_all()] == [early.key, late.key]
    assert queue.has_any() is True

    queue.clear()
    assert queue.get_all() == []
    assert queue.has_any() is False


def test_entries_survive_restart(tmp_path) -> None:
    path = tmp_path / "queue" / "pending.json"
    queue = PendingQueue(name="test", persistence_path=path)
    entry = _entry()
    queue.put(entry.key, entry)

    payload = json.loads(path.read_text())
    assert entry.key in payload
    assert payload[entry.key]["reading"]["hour"] == 9

    reloaded = PendingQueue(name="test", persistence_path=path)
    assert reloaded.get(entry.key) == entry


def test_corrupt_file_raises_storage_error(tmp_path) -> None:
    path = tmp_path / "pending.json"
    path.write_text("{not json")

    with pytest.raises(StorageError):
        PendingQueue(name="test", persistence_path=path)


def test_failed_write_leaves_previous_state(tmp_path, monkeypatch) -> None:
    path = tmp_path / "pending.json"
    queue = PendingQueue(name="test", persistence_path=path)
    kept = _entry(hour=1)
    queue.put(kept.key, kept)
    before = path.read_text()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    doomed = _entry(hour=2)
    with pytest.raises(StorageError):
        queue.put(doomed.key, doomed)

    assert queue.get(doomed.key) is None
    assert queue.get(kept.key) == kept
    assert path.read_text() == before
    assert [item.name for item in tmp_path.iterdir()] == ["pending.json"]


def test_guarded_delete_and_update_skip_newer_writes() -> None:
    queue = PendingQueue(name="test")
    original = _entry(offset=0)
    newer = _entry(value=50.0, offset=10)
    queue.put(original.key, original)
    queue.put(newer.key, newer)

    stale = original.model_copy(deep=True)
    stale.status = PendingStatus.merged
    assert queue.update(original.key, stale) is False
    assert queue.delete(original.key, queued_at=original.queued_at) is False
    assert queue.get(original.key) == newer

    assert queue.delete(original.key, queued_at=newer.queued_at) is True
    assert queue.delete(original.key) is False
