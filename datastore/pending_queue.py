from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from pydantic import ValidationError as SchemaError

from datastore.files import write_json_atomic
from models.errors import StorageError
from models.records import PendingEntry
from settings import get_settings

logger = logging.getLogger(__name__)


class PendingQueue:
    """Readings that have not yet been confirmed by the remote store.

    One entry per canonical key; a new ``put`` replaces whatever was queued
    before. When ``persistence_path`` is set every mutation is flushed to disk
    through a temporary file and an atomic rename before the call returns.
    """

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._items: Dict[str, PendingEntry] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            try:
                persistence_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(f"Cannot create queue directory for {persistence_path}") from exc
            self._load_from_disk()

    def put(self, key: str, entry: PendingEntry) -> None:
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = entry.model_copy(deep=True)
            try:
                self._persist()
            except StorageError:
                self._restore(key, previous)
                raise
        logger.debug("Queued pending entry", extra={"canonical_key": key})

    def get(self, key: str) -> Optional[PendingEntry]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            return item.model_copy(deep=True)

    def get_all(self) -> list[PendingEntry]:
        """Return deep copies of every queued entry, oldest first."""

        with self._lock:
            items = sorted(self._items.values(), key=lambda item: item.queued_at)
            return [item.model_copy(deep=True) for item in items]

    def update(self, key: str, entry: PendingEntry) -> bool:
        """Replace ``key`` only if it still holds the entry queued at ``entry.queued_at``.

        Returns False when a newer local write has taken the slot in the
        meantime; that write is left untouched.
        """
        with self._lock:
            previous = self._items.get(key)
            if previous is None or previous.queued_at != entry.queued_at:
                return False
            self._items[key] = entry.model_copy(deep=True)
            try:
                self._persist()
            except StorageError:
                self._restore(key, previous)
                raise
            return True

    def delete(self, key: str, queued_at: Optional[datetime] = None) -> bool:
        """Remove ``key``; with ``queued_at`` only if the stored entry matches it."""
        with self._lock:
            previous = self._items.get(key)
            if previous is None:
                return False
            if queued_at is not None and previous.queued_at != queued_at:
                return False
            del self._items[key]
            try:
                self._persist()
            except StorageError:
                self._restore(key, previous)
                raise
            return True

    def clear(self) -> None:
        with self._lock:
            snapshot = dict(self._items)
            self._items.clear()
            try:
                self._persist()
            except StorageError:
                self._items.update(snapshot)
                raise

    def has_any(self) -> bool:
        with self._lock:
            return bool(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _restore(self, key: str, previous: Optional[PendingEntry]) -> None:
        if previous is None:
            self._items.pop(key, None)
        else:
            self._items[key] = previous

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            key: item.model_dump(mode="json") for key, item in self._items.items()
        }
        try:
            write_json_atomic(self.persistence_path, payload)
        except OSError as exc:
            raise StorageError(
                f"Failed to write pending queue {self.name!r} to {self.persistence_path}"
            ) from exc

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text(encoding="utf-8") or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(
                f"Failed to read pending queue {self.name!r} from {self.persistence_path}"
            ) from exc

        if not isinstance(data, dict):
            raise StorageError(f"Pending queue file {self.persistence_path} is not a JSON object")

        try:
            for key, payload in data.items():
                self._items[key] = PendingEntry.model_validate(payload)
        except SchemaError as exc:
            raise StorageError(
                f"Pending queue file {self.persistence_path} holds an invalid entry"
            ) from exc

        if self._items:
            logger.info(
                "Restored pending entries from disk",
                extra={"pending_count": len(self._items)},
            )


@lru_cache
def build_default_queue(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> PendingQueue:
    settings = get_settings()
    queue_path = settings.queue_path if path is None else path
    persistence = Path(queue_path) if queue_path else None
    return PendingQueue(name=name or "pending_entries", persistence_path=persistence)
