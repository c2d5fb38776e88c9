"""
CLI layer for rollgate.

A Typer application whose commands delegate to
:class:`rollgate.deploy.service.DeploymentService`. This package handles
only terminal transport: argument parsing, coloured output, tables and
exit codes.

Entry point::

    rollgate --help
"""

from rollgate.cli.app import app

__all__ = ["app"]
