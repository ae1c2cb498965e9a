from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _echo_mapping(title: str, items: Dict[str, Any], empty: str) -> None:
    typer.echo()
    echo_heading(title)
    if not items:
        typer.echo(empty)
        return
    for name, message in items.items():
        typer.echo(f"  - {name}: {message}")


def render_submission(payload: Dict[str, Any]) -> None:
    echo_heading("Submission")
    echo_key_values(
        [
            ("key", payload.get("key")),
            ("queued", payload.get("queued")),
            ("is_valid", payload.get("is_valid")),
        ]
    )
    _echo_mapping("Errors", payload.get("errors") or {}, "No errors recorded.")
    _echo_mapping("Warnings", payload.get("warnings") or {}, "No warnings.")


def render_pending(entries: List[Dict[str, Any]]) -> None:
    echo_heading(f"Pending entries ({len(entries)})")
    if not entries:
        typer.echo("Queue is empty.")
        return
    for entry in entries:
        line = (
            f"  - {entry.get('key')} v{entry.get('version')} "
            f"[{entry.get('status')}] attempts={entry.get('attempts')}"
        )
        if entry.get("last_error"):
            line += f" last_error={entry['last_error']}"
        typer.echo(line)


def render_sync_report(payload: Dict[str, Any]) -> None:
    echo_heading("Sync Result")
    echo_key_values(
        [
            ("delivered", payload.get("delivered")),
            ("failed", payload.get("failed")),
            ("remaining", payload.get("remaining")),
        ]
    )
    outcomes = payload.get("outcomes") or []
    if not outcomes:
        return
    typer.echo()
    echo_heading("Outcomes")
    for outcome in outcomes:
        line = f"  - {outcome.get('key')}: {outcome.get('status')} (attempts={outcome.get('attempts')})"
        if outcome.get("error"):
            line += f" {outcome.get('error_kind')}: {outcome['error']}"
        typer.echo(line)
        for record in outcome.get("audit") or []:
            typer.echo(
                f"      retained {record.get('field')}={record.get('losing_value')!r} "
                f"({record.get('losing_side')})"
            )


def render_stats(payload: Dict[str, Any]) -> None:
    echo_heading("Sync Statistics")
    echo_key_values(
        [
            ("pending_count", payload.get("pending_count")),
            ("syncing", payload.get("syncing")),
            ("paused", payload.get("paused")),
            ("online", payload.get("online")),
            ("audit_records", payload.get("audit_records")),
        ]
    )
    for section in ("policy", "retry", "conflicts"):
        values = payload.get(section) or {}
        typer.echo()
        echo_heading(section.capitalize())
        echo_key_values(sorted(values.items()))


def render_audit(key: str, records: List[Dict[str, Any]]) -> None:
    echo_heading(f"Audit History for {key}")
    if not records:
        typer.echo("  (no losing values retained)")
        return
    for record in records:
        typer.echo(
            f"  - {record.get('field')}: kept {record.get('winning_value')!r} "
            f"({record.get('winning_side')}), lost {record.get('losing_value')!r} "
            f"from {record.get('losing_actor') or record.get('losing_side')} "
            f"at {record.get('losing_modified_at')}"
        )
