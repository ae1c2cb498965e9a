from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from models.errors import ConflictError, PermanentSyncError, SyncError, TransientSyncError
from models.records import Reading

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}
_STATUS_KINDS = {
    400: "malformed",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    408: "timeout",
    409: "conflict",
    422: "invalid",
    429: "rate_limited",
    500: "internal",
    502: "bad_gateway",
    503: "unavailable",
    504: "gateway_timeout",
}


class HttpRemoteStore:
    """Remote store client speaking JSON over HTTP.

    ``GET /{path}`` returns the stored reading (404 when absent) and
    ``PUT /{path}`` with ``{"reading": ..., "expected_version": n}`` writes it,
    answering 409 with ``{"remote": ...}`` when the version moved on.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str) -> Optional[Reading]:
        response = await self._send("GET", path)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, path)
        return Reading.model_validate(response.json())

    async def write(self, path: str, reading: Reading, expected_version: int) -> Reading:
        body = {
            "reading": reading.model_dump(mode="json"),
            "expected_version": expected_version,
        }
        response = await self._send("PUT", path, json=body)
        if response.status_code == 409:
            raise ConflictError(
                f"Version conflict at {path}: expected {expected_version}",
                remote=self._remote_from_conflict(response),
                expected_version=expected_version,
            )
        self._raise_for_status(response, path)
        return Reading.model_validate(response.json())

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, f"/{path.lstrip('/')}", **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientSyncError(f"Request timeout for {path}: {exc}", kind="timeout") from exc
        except httpx.TransportError as exc:
            raise TransientSyncError(f"Network error for {path}: {exc}", kind="network") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, path: str) -> None:
        if response.is_success:
            return
        status = response.status_code
        kind = _STATUS_KINDS.get(status, "http_error")
        detail = _detail(response)
        message = f"Remote store rejected {path} with status {status}: {detail}"
        error: SyncError
        if status in _TRANSIENT_STATUS or status >= 500:
            error = TransientSyncError(message, kind=kind)
        else:
            error = PermanentSyncError(message, kind=kind)
        logger.debug("Remote store error", extra={"status": status, "error_kind": kind})
        raise error

    @staticmethod
    def _remote_from_conflict(response: httpx.Response) -> Optional[Reading]:
        try:
            payload: Dict[str, Any] = response.json()
        except ValueError:
            return None
        remote = payload.get("remote") if isinstance(payload, dict) else None
        if remote is None:
            return None
        return Reading.model_validate(remote)


def _detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or "no detail provided."
    if isinstance(data, dict) and data.get("detail"):
        return str(data["detail"])
    return "no detail provided."
