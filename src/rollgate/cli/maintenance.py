"""
CLI: ``rollgate maintenance`` — retention jobs and backup restore.

Usage::

    rollgate maintenance prune-artifacts shop --keep 10
    rollgate maintenance prune-backups shop --days 14
    rollgate maintenance backups shop
    rollgate maintenance restore-backup shop shop_production_20250301_101500.sql.gz
    rollgate maintenance retention
"""

from __future__ import annotations

import typer

from rollgate.cli.utils import (
    console,
    err_console,
    get_service,
    handle_errors,
    print_json,
    print_table,
)
from rollgate.core.errors import EXIT_DEPLOYMENT_FAILED

app = typer.Typer(no_args_is_help=True)


@app.command("prune-artifacts")
def prune_artifacts_cmd(
    name: str = typer.Argument(..., help="Application name."),
    keep: int | None = typer.Option(None, "--keep", "-k", min=2, help="Artifacts to keep."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Delete artifacts beyond the newest K (never the current one)."""
    with handle_errors():
        result = get_service().prune_artifacts(name, keep)
    if json_out:
        print_json(result)
        return
    console.print(f"[green]✓[/] {len(result.deleted)} artifact(s) deleted, {result.kept} kept")
    for tag in result.deleted:
        console.print(f"  - {tag}")


@app.command("prune-backups")
def prune_backups_cmd(
    name: str = typer.Argument(..., help="Application name."),
    days: int | None = typer.Option(None, "--days", "-d", min=1, help="Retention period in days."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Delete database backups older than the retention period."""
    with handle_errors():
        result = get_service().prune_backups(name, days)
    if json_out:
        print_json(result)
        return
    console.print(
        f"[green]✓[/] {len(result.deleted)} backup(s) older than {result.cutoff} deleted, "
        f"{result.kept} kept"
    )


@app.command("backups")
def list_backups(
    name: str = typer.Argument(..., help="Application name."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List database backups, newest first."""
    with handle_errors():
        records = get_service().backups(name)
    if json_out:
        print_json(records)
        return
    print_table(
        [
            {
                "file": r.path.name,
                "database": r.database,
                "created": r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                "bytes": r.size_bytes,
            }
            for r in records
        ],
        title=f"Backups of {name}",
    )


@app.command("restore-backup")
def restore_backup(
    name: str = typer.Argument(..., help="Application name."),
    backup: str | None = typer.Argument(None, help="Backup file name; newest if omitted."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Restore the application's database from a backup."""
    if not yes:
        typer.confirm(f"Overwrite the database of {name} from {backup or 'the newest backup'}?", abort=True)
    with handle_errors():
        record = get_service().restore_backup(name, backup)
    console.print(f"[green]✓[/] restored {record.database} from {record.path.name}")


@app.command("retention")
def retention(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Prune artifacts and backups of every defined application."""
    with handle_errors():
        report = get_service().retention()
    if json_out:
        print_json(report)
    else:
        print_table(
            [
                {"app": r.app, "kind": r.kind, "deleted": len(r.deleted), "kept": r.kept}
                for r in report.results
            ],
            title="Retention",
        )
        for app_name, error in report.errors.items():
            err_console.print(f"[red]✗[/] {app_name}: {error}")
    if not report.success:
        raise typer.Exit(code=EXIT_DEPLOYMENT_FAILED)
