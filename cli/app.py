from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import (
    render_audit,
    render_pending,
    render_stats,
    render_submission,
    render_sync_report,
)


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for recording and syncing hourly field readings.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to FIELDLOG_API_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for each request.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("submit")
def submit_command(
    ctx: typer.Context,
    project_id: str = typer.Argument(..., help="Project the reading belongs to."),
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="JSON file with the reading."
    ),
) -> None:
    """Validate a reading and queue it for sync."""
    state = _get_state(ctx)
    try:
        payload = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{file} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise typer.BadParameter(f"{file} must contain a JSON object.")

    result = state.client.submit_reading(project_id, payload)
    render_submission(result)
    if not result.get("queued"):
        typer.secho("Reading rejected; nothing was queued.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho(f"Queued {result.get('key')}", fg=typer.colors.GREEN)


@app.command("pending")
def pending_command(
    ctx: typer.Context,
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project."),
) -> None:
    """List readings awaiting remote confirmation."""
    state = _get_state(ctx)
    render_pending(state.client.list_pending(project_id))


@app.command("discard")
def discard_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Canonical key, e.g. plant-7_20240301_09."),
) -> None:
    """Drop a queued reading without syncing it."""
    state = _get_state(ctx)
    state.client.discard(key)
    typer.secho(f"Discarded {key}", fg=typer.colors.YELLOW)


@app.command("sync")
def sync_command(
    ctx: typer.Context,
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project."),
) -> None:
    """Run one sync pass now."""
    state = _get_state(ctx)
    report = state.client.sync(project_id)
    render_sync_report(report)
    if report.get("failed"):
        raise typer.Exit(code=1)


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Show retry and conflict statistics."""
    state = _get_state(ctx)
    render_stats(state.client.stats())


@app.command("audit")
def audit_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Canonical key, e.g. plant-7_20240301_09."),
) -> None:
    """Show values that lost a conflict merge for one reading."""
    state = _get_state(ctx)
    render_audit(key, state.client.audit(key))


@app.command("pause")
def pause_command(ctx: typer.Context) -> None:
    """Stop the service from starting sync passes."""
    state = _get_state(ctx)
    state.client.set_paused(True)
    typer.secho("Sync paused", fg=typer.colors.YELLOW)


@app.command("resume")
def resume_command(ctx: typer.Context) -> None:
    """Let the service start sync passes again."""
    state = _get_state(ctx)
    result = state.client.set_paused(False)
    message = "Sync resumed" if result.get("started") else "Sync resumed; waiting for connectivity"
    typer.secho(message, fg=typer.colors.GREEN)
