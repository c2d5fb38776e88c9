"""
CLI utility helpers — service wiring, error mapping and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from rollgate.core.errors import EXIT_DEPLOYMENT_FAILED, RollgateError
from rollgate.deploy.results import DeploymentOutcome, SlotStatus
from rollgate.deploy.service import DeploymentService

console = Console()
err_console = Console(stderr=True)

_SLOT_STYLES = {
    SlotStatus.REPLACED: "green",
    SlotStatus.STARTED: "green",
    SlotStatus.SKIPPED: "dim",
    SlotStatus.REMOVED: "yellow",
    SlotStatus.FAILED: "bold red",
}


# ── Service helper ───────────────────────────────────────────────────────


def get_service() -> DeploymentService:
    """Build a ``DeploymentService`` from the process settings."""
    return DeploymentService.from_settings()


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print a ``RollgateError`` and exit with its exit code."""
    try:
        yield
    except RollgateError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        raise typer.Exit(code=exc.exit_code) from exc


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def print_json(data: Any) -> None:
    payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
    typer.echo(json.dumps(payload, indent=2, default=str))


def print_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)


def print_outcome(outcome: DeploymentOutcome) -> None:
    """Slot table plus a one-line verdict."""
    table = Table(title=f"{outcome.kind} {outcome.app} → {outcome.artifact or '?'}", pad_edge=False)
    table.add_column("slot", justify="right")
    table.add_column("port", justify="right")
    table.add_column("status")
    table.add_column("previous")
    table.add_column("detail", overflow="fold")
    for slot in outcome.slots:
        style = _SLOT_STYLES.get(slot.status, "")
        table.add_row(
            str(slot.slot),
            str(slot.port),
            f"[{style}]{slot.status.value}[/{style}]" if style else slot.status.value,
            slot.previous_artifact or "",
            slot.detail or "",
        )
    if outcome.slots:
        console.print(table)

    if outcome.migration is not None:
        console.print(f"  migrations: {outcome.migration.state.value}")
    if outcome.sync is not None:
        console.print(f"  upstream:   {outcome.sync.status.value}")

    duration = f"{outcome.duration_seconds:.1f}s"
    if outcome.succeeded:
        console.print(f"[green]✓ {outcome.kind} succeeded[/] ({duration}, run {outcome.run_id})")
    else:
        status = outcome.status.value if outcome.status else "failed"
        err_console.print(f"[red]✗ {outcome.kind} {status}[/]: {outcome.error} (run {outcome.run_id})")


def finish_outcome(outcome: DeploymentOutcome, *, as_json: bool = False) -> None:
    """Render an outcome and exit non-zero unless it succeeded."""
    if as_json:
        print_json(outcome)
    else:
        print_outcome(outcome)
    if not outcome.succeeded:
        raise typer.Exit(code=EXIT_DEPLOYMENT_FAILED)
