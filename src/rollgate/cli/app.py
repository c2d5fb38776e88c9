"""
Root Typer application for the rollgate CLI.

Deployment commands live at the top level (``rollgate deploy shop``);
retention jobs are grouped under ``rollgate maintenance``.
"""

from __future__ import annotations

import typer
from typer import Typer

from rollgate.cli import deploy as deploy_cmds
from rollgate.cli.maintenance import app as maintenance_app
from rollgate.core.logging import configure_logging
from rollgate.core.settings import get_settings

app = Typer(
    name="rollgate",
    help="rollgate — zero-downtime rolling deployments behind nginx.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("rollgate")
        except PackageNotFoundError:
            from rollgate import __version__ as v
        typer.echo(f"rollgate {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="DEBUG, INFO, WARNING or ERROR (default: ROLLGATE_LOG_LEVEL)."
    ),
    json_logs: bool | None = typer.Option(
        None, "--json-logs/--console-logs", help="Log format (default: JSON unless stderr is a terminal)."
    ),
) -> None:
    """rollgate CLI — deploy, scale, roll back and inspect applications."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=json_logs if json_logs is not None else settings.json_logs,
    )


# ── Command registration ─────────────────────────────────────────────────

app.command("deploy")(deploy_cmds.deploy)
app.command("restart")(deploy_cmds.restart)
app.command("scale")(deploy_cmds.scale)
app.command("rollback")(deploy_cmds.rollback)
app.command("stop")(deploy_cmds.stop)
app.command("status")(deploy_cmds.status)
app.command("logs")(deploy_cmds.logs)
app.command("artifacts")(deploy_cmds.artifacts)
app.command("history")(deploy_cmds.history)
app.command("apps")(deploy_cmds.apps)

app.add_typer(maintenance_app, name="maintenance", help="Retention jobs and backup restore.")
