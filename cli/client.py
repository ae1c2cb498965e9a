from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the fieldlog sync service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def submit_reading(self, project_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(f"/projects/{project_id}/readings", json=payload)
            if response.status_code == 422:
                # Validation rejections carry the full field report.
                detail = response.json().get("detail")
                if isinstance(detail, dict):
                    return detail
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def list_pending(self, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"project_id": project_id} if project_id else None
        try:
            response = self._client.get("/pending", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def discard(self, key: str) -> None:
        try:
            response = self._client.delete(f"/pending/{key}")
            if response.status_code == 404:
                raise typer.BadParameter(f"No pending entry for {key}.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)

    def sync(self, project_id: Optional[str] = None) -> Dict[str, Any]:
        params = {"project_id": project_id} if project_id else None
        try:
            response = self._client.post("/sync", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def stats(self) -> Dict[str, Any]:
        try:
            response = self._client.get("/sync/stats")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def audit(self, key: str) -> List[Dict[str, Any]]:
        try:
            response = self._client.get(f"/audit/{key}")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def set_paused(self, paused: bool) -> Dict[str, Any]:
        path = "/sync/pause" if paused else "/sync/resume"
        try:
            response = self._client.post(path)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except ValueError:
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    def _handle_transport_error(self, exc: httpx.TransportError) -> None:
        typer.secho(
            f"Could not reach {self._config.base_url}: {exc}",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)
