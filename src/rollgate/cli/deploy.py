"""
CLI: deployment commands — ``rollgate deploy | restart | scale | stop |
rollback | status | logs | artifacts | history | apps``.

Usage::

    rollgate deploy shop                 # build, migrate, roll out at the declared scale
    rollgate deploy shop 4               # ... at scale 4
    rollgate deploy shop --artifact 20250301_101500   # reuse an existing artifact
    rollgate restart shop                # re-roll the current artifact
    rollgate scale shop 3
    rollgate rollback shop               # previous artifact (-1)
    rollgate rollback shop -- -2         # two back
    rollgate status shop --json
    rollgate logs shop 2 --tail 100

Exit codes: 0 success, 2 rejected before any change (bad input, missing
config, lock held), 3 the deployment aborted or failed.
"""

from __future__ import annotations

import typer

from rollgate.cli.utils import (
    console,
    finish_outcome,
    get_service,
    handle_errors,
    print_json,
    print_table,
)

# ── Mutating commands ────────────────────────────────────────────────────


def deploy(
    app: str = typer.Argument(..., help="Application name (apps/<name>.yaml)."),
    scale: int | None = typer.Argument(None, help="Web instances to run. Defaults to the declared scale."),
    artifact: str | None = typer.Option(
        None, "--artifact", "-a", help="Deploy an existing artifact tag instead of building."
    ),
    pull: bool = typer.Option(True, "--pull/--no-pull", help="Refresh the source checkout before building."),
    json_out: bool = typer.Option(False, "--json", help="Output the outcome as JSON."),
) -> None:
    """Build a new artifact, run pending migrations and roll it out slot by slot."""
    with handle_errors():
        outcome = get_service().deploy(app, scale, artifact=artifact, refresh_source=pull)
    finish_outcome(outcome, as_json=json_out)


def restart(
    app: str = typer.Argument(..., help="Application name."),
    json_out: bool = typer.Option(False, "--json", help="Output the outcome as JSON."),
) -> None:
    """Re-roll the current artifact at the live scale."""
    with handle_errors():
        outcome = get_service().restart(app)
    finish_outcome(outcome, as_json=json_out)


def scale(
    app: str = typer.Argument(..., help="Application name."),
    count: int = typer.Argument(..., help="New number of web instances."),
    json_out: bool = typer.Option(False, "--json", help="Output the outcome as JSON."),
) -> None:
    """Change the number of web instances, keeping the current artifact."""
    with handle_errors():
        outcome = get_service().scale(app, count)
    finish_outcome(outcome, as_json=json_out)


def rollback(
    app: str = typer.Argument(..., help="Application name."),
    selector: str = typer.Argument("-1", help="Offset (-1, -2, ...) or artifact tag."),
    json_out: bool = typer.Option(False, "--json", help="Output the outcome as JSON."),
) -> None:
    """Roll back to a previous artifact."""
    with handle_errors():
        outcome = get_service().rollback(app, selector)
    finish_outcome(outcome, as_json=json_out)


def stop(
    app: str = typer.Argument(..., help="Application name."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Stop and remove every instance of the application."""
    if not yes:
        typer.confirm(f"Stop every instance of {app}?", abort=True)
    with handle_errors():
        removed = get_service().stop(app)
    if removed:
        console.print(f"[bold red]▼ stopped[/] {', '.join(removed)}")
    else:
        console.print("[dim]Nothing running.[/dim]")


# ── Read-only commands ───────────────────────────────────────────────────


def status(
    app: str = typer.Argument(..., help="Application name."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show live instances, the current artifact and the upstream config."""
    with handle_errors():
        info = get_service().status(app)

    if json_out:
        payload = info.model_dump(mode="json")
        payload["web_ports"] = info.web_ports
        payload["consistent"] = info.consistent
        print_json(payload)
        return

    console.print(f"[bold]{info.app}[/bold]  current artifact: {info.current_artifact or '-'}")
    print_table(
        [
            {
                "name": i.name,
                "role": i.role.value,
                "slot": i.slot,
                "port": i.port,
                "artifact": i.artifact,
                "state": i.state,
            }
            for i in info.instances
        ],
        title="Instances",
    )
    ports = ", ".join(str(p) for p in info.upstream_ports) or "-"
    marker = "[green]in sync[/]" if info.consistent else "[yellow]out of sync[/]"
    console.print(f"  upstream: {ports}  ({marker})")


def logs(
    app: str = typer.Argument(..., help="Application name."),
    instance: str | None = typer.Argument(
        None, help="Web slot number, role suffix (worker_1, scheduler) or full name."
    ),
    tail: int | None = typer.Option(None, "--tail", "-n", help="Lines from the end."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new output."),
) -> None:
    """Print container logs of one instance (default: web slot 1)."""
    with handle_errors():
        output = get_service().logs(app, instance, tail=tail, follow=follow)
    if output:
        typer.echo(output, nl=not output.endswith("\n"))


def artifacts(
    app: str = typer.Argument(..., help="Application name."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List retained artifacts, newest first, with their rollback offsets."""
    with handle_errors():
        items = get_service().artifacts(app)
    if json_out:
        print_json(items)
        return
    print_table(
        [
            {
                "offset": f"-{n}" if n else "0",
                "tag": a.tag,
                "current": "✓" if a.current else "",
                "created": a.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                "size": a.size,
            }
            for n, a in enumerate(items)
        ],
        title=f"Artifacts of {app}",
    )


def history(
    app: str | None = typer.Argument(None, help="Application name; all applications if omitted."),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of records."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show recorded deployments, newest first."""
    with handle_errors():
        records = get_service().deployments(app, limit=limit)
    if json_out:
        print_json(records)
        return
    print_table(
        [
            {
                "run_id": r.run_id,
                "app": r.app,
                "kind": r.kind,
                "artifact": r.artifact,
                "scale": r.target_scale,
                "status": r.status.value,
                "started": r.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                "error": r.error,
            }
            for r in records
        ],
        title="Deployments",
    )


def apps() -> None:
    """List application definitions."""
    with handle_errors():
        names = get_service().applications()
    if not names:
        console.print("[dim]No applications defined.[/dim]")
        return
    for name in names:
        typer.echo(name)
