from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional

from models.errors import ConflictError, PermanentSyncError, StorageError, TransientSyncError
from models.keys import parse_entry_path
from models.records import Reading
from settings import get_settings

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], object]


class MockRemoteStore:
    """In-process stand-in for the shared remote store.

    Records are keyed by entry path and guarded by optimistic versioning.
    ``set_online(False)`` makes every call fail with a transient network error,
    which is how connectivity loss is simulated. Listeners registered with
    ``add_listener`` are told about every change of state.
    """

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._records: Dict[str, Reading] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        self._online = True
        self._listeners: List[ConnectivityListener] = []
        self.write_count = 0
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Remote store connectivity changed", extra={"status": "online" if online else "offline"})
        for listener in list(self._listeners):
            listener(online)

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def get(self, path: str) -> Optional[Reading]:
        self._check_online()
        with self._lock:
            record = self._records.get(path)
            if record is None:
                return None
            return record.model_copy(deep=True)

    async def write(self, path: str, reading: Reading, expected_version: int) -> Reading:
        self._check_online()
        key = parse_entry_path(path)
        if (key.project_id, key.date_id, key.hour) != (reading.project_id, reading.date_id, reading.hour):
            raise PermanentSyncError(
                f"Malformed write: reading {reading.key!r} does not belong at {path!r}",
                kind="malformed",
            )

        with self._lock:
            current = self._records.get(path)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                raise ConflictError(
                    f"Version conflict at {path}: expected {expected_version}, found {current_version}",
                    remote=current.model_copy(deep=True) if current is not None else None,
                    expected_version=expected_version,
                )
            # A resolved conflict may be written back at the version it replaces.
            minimum = max(current_version, 1)
            if reading.version < minimum:
                raise PermanentSyncError(
                    f"Invalid version {reading.version} for {path}; must be at least {minimum}",
                    kind="invalid_version",
                )
            stored = reading.model_copy(deep=True)
            self._records[path] = stored
            self.write_count += 1
            self._persist()
            return stored.model_copy(deep=True)

    def scan(self) -> list[Reading]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def seed(self, reading: Reading) -> None:
        """Store a record directly, bypassing version checks."""
        with self._lock:
            self._records[reading.path] = reading.model_copy(deep=True)
            self._persist()

    def _check_online(self) -> None:
        if not self._online:
            raise TransientSyncError("Network unreachable: remote store is offline", kind="network")

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            path: record.model_dump(mode="json") for path, record in self._records.items()
        }
        try:
            self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))
        except OSError as exc:
            raise StorageError(f"Failed to persist remote store {self.name!r}") from exc

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for path, payload in data.items():
            self._records[path] = Reading.model_validate(payload)


@lru_cache
def build_default_remote(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> MockRemoteStore:
    settings = get_settings()
    remote_path = settings.remote_path if path is None else path
    persistence = Path(remote_path) if remote_path else None
    return MockRemoteStore(name=name or "remote", persistence_path=persistence)
