"""Contract the synchronizer relies on when talking to the shared remote store."""

from __future__ import annotations

from typing import Optional, Protocol

from models.records import Reading


class RemoteStore(Protocol):
    """Versioned document store addressed by canonical entry paths.

    ``write`` must succeed only when the stored record's version equals
    ``expected_version`` (0 for a missing record). Otherwise it raises
    :class:`models.errors.ConflictError` carrying the current remote record.
    Connectivity problems raise ``TransientSyncError``; rejected requests raise
    ``PermanentSyncError``.
    """

    async def get(self, path: str) -> Optional[Reading]:
        ...

    async def write(self, path: str, reading: Reading, expected_version: int) -> Reading:
        ...
