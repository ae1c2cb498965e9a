from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError

from datastore.files import write_json_atomic
from models.errors import StorageError
from models.records import AuditRecord
from settings import get_settings

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only record of values that lost a conflict merge.

    Entries leave the pending queue once the remote store confirms them; the
    losing values they carried are kept here, per canonical key, so they can
    still be inspected or restored afterwards.
    """

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._records: Dict[str, List[AuditRecord]] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            try:
                persistence_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(f"Cannot create audit log directory for {persistence_path}") from exc
            self._load_from_disk()

    def record(self, key: str, records: Iterable[AuditRecord]) -> int:
        """Append ``records`` under ``key``, skipping ones already logged.

        Returns how many records were added.
        """
        with self._lock:
            existing = self._records.get(key, [])
            added = [record for record in records if record not in existing]
            if not added:
                return 0
            self._records[key] = [*existing, *(record.model_copy(deep=True) for record in added)]
            try:
                self._persist()
            except StorageError:
                if existing:
                    self._records[key] = existing
                else:
                    self._records.pop(key, None)
                raise
        logger.info(
            "Retained losing values for audit",
            extra={"canonical_key": key, "field": [record.field for record in added]},
        )
        return len(added)

    def history(self, key: str) -> list[AuditRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.get(key, [])]

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(records) for records in self._records.values())

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            key: [record.model_dump(mode="json") for record in records]
            for key, records in self._records.items()
        }
        try:
            write_json_atomic(self.persistence_path, payload)
        except OSError as exc:
            raise StorageError(
                f"Failed to write audit log {self.name!r} to {self.persistence_path}"
            ) from exc

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            data = json.loads(self.persistence_path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(
                f"Failed to read audit log {self.name!r} from {self.persistence_path}"
            ) from exc

        if not isinstance(data, dict):
            raise StorageError(f"Audit log file {self.persistence_path} is not a JSON object")

        try:
            for key, payloads in data.items():
                self._records[key] = [AuditRecord.model_validate(payload) for payload in payloads]
        except (SchemaError, TypeError) as exc:
            raise StorageError(
                f"Audit log file {self.persistence_path} holds an invalid record"
            ) from exc


@lru_cache
def build_default_audit_log(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> AuditLog:
    settings = get_settings()
    audit_path = settings.audit_path if path is None else path
    persistence = Path(audit_path) if audit_path else None
    return AuditLog(name=name or "audit_log", persistence_path=persistence)
