"""Migration safety gate.

Runs once per deployment, strictly before any instance is replaced, so a
half-migrated schema is never exposed to only part of the fleet::

    NOOP ──(no pending)──────────────────────────────► DONE
      │
      └─(pending)─► PENDING ─(dump ok)─► BACKED_UP ─(apply ok)─► APPLIED

The candidate artifact is started as a disposable, portless instance
(``<app>_migration_check``) that only runs the profile's status and apply
commands. It receives no traffic and is removed whatever the outcome.

Failure policy:
    - Status unreadable -> ``MigrationError``
    - Dump failed or no database to dump -> ``BackupError``; nothing applied
    - Apply failed or timed out -> ``MigrationError``
    Each aborts the deployment before the rolling engine starts.

Tags:
    migrations, schema, backup, gate, state-machine
"""

from __future__ import annotations

from typing import Any

from rollgate.core.errors import BackupError, ContainerRuntimeError, MigrationError
from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application
from rollgate.deploy.container import InstanceSpec
from rollgate.deploy.profiles import get_profile
from rollgate.deploy.results import MigrationResult, MigrationState, Role

logger = get_logger(__name__)


class MigrationGate:
    """Detect, back up and apply pending schema changes for a candidate artifact.

    Parameters
    ----------
    runtime
        Container runtime providing ``start_disposable``, ``exec_once`` and ``remove``.
    database
        Backup collaborator providing ``dump(app) -> BackupRecord``.
    timeout
        Seconds allowed for the apply step.
    """

    def __init__(self, runtime: Any, database: Any, timeout: float = 1800.0) -> None:
        self._runtime = runtime
        self._database = database
        self._timeout = timeout

    def ensure_schema_current(self, app: Application, artifact: str) -> MigrationResult:
        profile = get_profile(app.profile)
        result = MigrationResult(artifact=artifact)

        if not profile.needs_migrations(app):
            result.state = MigrationState.DONE
            return result

        spec = InstanceSpec(
            name=app.migration_name,
            app=app.name,
            image=app.image(artifact),
            artifact=artifact,
            role=Role.MIGRATION,
            env=dict(app.env),
            env_file=str(app.env_file) if app.env_file else None,
            network=app.network,
        )

        try:
            try:
                self._runtime.start_disposable(spec)
            except ContainerRuntimeError as exc:
                raise MigrationError(
                    f"Cannot start migration check instance for {artifact}: {exc.message}",
                    context={"app": app.name},
                    cause=exc,
                ) from exc

            code, output = self._exec(app, profile.migration_status_command(), profile.workdir)
            result.pending = profile.has_pending_migrations(code, output)
            if not result.pending:
                result.state = MigrationState.DONE
                logger.info("migrations.none_pending", app=app.name, artifact=artifact)
                return result

            result.state = MigrationState.PENDING
            logger.warning("migrations.pending", app=app.name, artifact=artifact)

            if app.database is None or not app.database.enabled:
                raise BackupError(
                    f"{app.name!r} has pending migrations but no database to back up",
                    context={"app": app.name},
                )
            result.backup = self._database.dump(app)
            result.state = MigrationState.BACKED_UP

            code, output = self._exec(app, profile.migration_apply_command(), profile.workdir)
            result.output = output
            if code != 0:
                raise MigrationError(
                    f"Migrations failed for {artifact} (exit {code}): {output.strip()[-500:]}",
                    context={"app": app.name, "backup": str(result.backup.path)},
                )
            result.state = MigrationState.APPLIED
            logger.info(
                "migrations.applied",
                app=app.name,
                artifact=artifact,
                backup=str(result.backup.path),
            )
            return result
        finally:
            self._discard(spec.name)

    def _exec(self, app: Application, command: list[str], workdir: str | None) -> tuple[int, str]:
        try:
            return self._runtime.exec_once(
                app.migration_name, command, workdir=workdir, timeout=self._timeout
            )
        except ContainerRuntimeError as exc:
            raise MigrationError(
                f"{' '.join(command)} did not complete: {exc.message}",
                context={"app": app.name},
                cause=exc,
            ) from exc

    def _discard(self, name: str) -> None:
        try:
            self._runtime.remove(name)
        except ContainerRuntimeError as exc:
            logger.error("migrations.cleanup_failed", container=name, error=exc.message)


__all__ = ["MigrationGate"]
