"""Error taxonomy shared by the queue, validation and sync layers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from models.records import Reading


class RangeError(ValueError):
    """A numeric identity component is outside its allowed range."""


class FormatError(ValueError):
    """An identity string does not match its canonical format."""


class StorageError(RuntimeError):
    """The local durable queue could not read or write its backing store."""


class ValidationError(ValueError):
    """A reading failed blocking validation and must not be queued."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        summary = ", ".join(f"{key}: {message}" for key, message in sorted(self.errors.items()))
        super().__init__(f"Reading failed validation ({summary})")


class SyncError(Exception):
    """Base class for failures raised while talking to the remote store.

    ``retryable`` is decided where the error is raised; the retry executor
    trusts it before falling back to message heuristics.
    """

    retryable: bool = False
    kind: str = "sync_error"

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class TransientSyncError(SyncError):
    retryable = True
    kind = "transient"


class PermanentSyncError(SyncError):
    retryable = False
    kind = "permanent"


class ConflictError(SyncError):
    """The remote record moved past the version the local write was based on."""

    retryable = False
    kind = "conflict"

    def __init__(
        self,
        message: str,
        *,
        remote: Optional["Reading"] = None,
        expected_version: Optional[int] = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message, kind=kind)
        self.remote = remote
        self.expected_version = expected_version


class ConflictResolutionError(RuntimeError):
    """The resolver could not produce a deterministic result for a conflict."""
