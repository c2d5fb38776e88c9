"""Deployment service: the operations behind every CLI command.

``DeploymentService`` is the composition root. It wires the artifact
store, migration gate, rolling engine, upstream synchronizer, version
manager, locks, history and notifier together, and implements
``deploy``, ``restart``, ``scale``, ``rollback``, ``stop``, ``status``
and ``logs``.

Flow of ``deploy(app, scale)``::

    load definition ─► validate scale           (PreconditionError, exit 2)
      └─ acquire application lock              (LockContentionError, exit 2)
           ├─ engine preflight (scale, staging leftovers, proxy template)
           ├─ refresh source + build artifact
           ├─ migration safety gate             (MigrationError / BackupError)
           ├─ promote artifact to current
           ├─ rolling engine (web slots, then upstream sync on resize)
           ├─ replace worker/scheduler instances (on success)
           ├─ prune artifacts beyond retention   (on success)
           └─ append DeploymentRecord + notify  (every terminal outcome)

Error policy:
    - ``PreconditionError`` raised before anything changed propagates
      unrecorded. Once the migration gate has started, it is recorded as a
      ``failed`` outcome like any other error.
    - Any other ``RollgateError`` after the lock is taken becomes a
      ``failed`` outcome that is recorded and notified like any other.

Tags:
    service, orchestration, deploy, rollback, composition-root
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from rollgate.core.errors import (
    ContainerRuntimeError,
    NoSuchArtifactError,
    PreconditionError,
    RollgateError,
)
from rollgate.core.logging import LogContext, get_logger
from rollgate.core.settings import RollgateSettings, get_settings
from rollgate.deploy.config import Application, list_applications, load_application
from rollgate.deploy.jobs import (
    PurgeResult,
    RetentionReport,
    prune_artifacts,
    prune_backups,
    run_retention,
)
from rollgate.deploy.migrations import MigrationGate
from rollgate.deploy.profiles import get_profile
from rollgate.deploy.results import (
    AppStatus,
    ArtifactSummary,
    BackupRecord,
    DeploymentOutcome,
    DeploymentRecord,
    OutcomeStatus,
)
from rollgate.deploy.rolling import RollingEngine
from rollgate.deploy.upstream import UpstreamSynchronizer
from rollgate.deploy.versions import VersionManager

logger = get_logger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class _Attempt:
    """What is known about an invocation if it fails part-way."""

    run_id: str
    kind: str
    target_scale: int
    artifact: str = ""
    mutated: bool = False


class DeploymentService:
    """All deployment operations for the applications defined on this host."""

    def __init__(
        self,
        settings: RollgateSettings,
        runtime: Any,
        store: Any,
        health: Any,
        proxy: Any,
        database: Any,
        locks: Any,
        history: Any,
        notifier: Any,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.store = store
        self.database = database
        self.locks = locks
        self.history = history
        self.notifier = notifier

        self.synchronizer = UpstreamSynchronizer(
            proxy, locks, backup_dir=settings.proxy_backup_dir, lock_wait=settings.proxy_lock_wait
        )
        self.engine = RollingEngine(
            runtime,
            health,
            self.synchronizer,
            staging_port_offset=settings.staging_port_offset,
            health_timeout=settings.health_timeout,
            health_interval=settings.health_interval,
            settle_interval=settings.settle_interval,
            sleep=sleep,
        )
        self.migrations = MigrationGate(runtime, database, timeout=settings.migration_timeout)
        self.versions = VersionManager(store, self.engine)

    @classmethod
    def from_settings(cls, settings: RollgateSettings | None = None) -> DeploymentService:
        """Wire the production collaborators (docker, nginx, PostgreSQL, sqlite)."""
        from rollgate.deploy.artifacts import ArtifactStore
        from rollgate.deploy.container import DockerRuntime
        from rollgate.deploy.database import PostgresDatabase
        from rollgate.deploy.health import HealthGate
        from rollgate.deploy.history import DeploymentHistory
        from rollgate.deploy.locks import LockManager
        from rollgate.deploy.notify import LogNotifier, NotificationHub, WebhookNotifier
        from rollgate.deploy.proxy import NginxProxy
        from rollgate.deploy.state import open_state_db

        settings = settings or get_settings()
        runtime = DockerRuntime(settings.docker_binary)
        conn = open_state_db(settings.state_db)
        hub = NotificationHub([LogNotifier()])
        if settings.notify_webhook_url:
            hub.add(WebhookNotifier(settings.notify_webhook_url))

        return cls(
            settings=settings,
            runtime=runtime,
            store=ArtifactStore(runtime, build_timeout=settings.build_timeout),
            health=HealthGate(),
            proxy=NginxProxy(
                settings.proxy_config_dir,
                validate_command=settings.proxy_validate_command,
                reload_command=settings.proxy_reload_command,
            ),
            database=PostgresDatabase(settings.backup_dir, timeout=settings.backup_timeout),
            locks=LockManager(conn),
            history=DeploymentHistory(conn),
            notifier=hub,
        )

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def load(self, name: str) -> Application:
        return load_application(name, self.settings.apps_dir)

    def applications(self) -> list[str]:
        return list_applications(self.settings.apps_dir)

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def deploy(
        self,
        name: str,
        scale: int | None = None,
        *,
        artifact: str | None = None,
        refresh_source: bool = True,
    ) -> DeploymentOutcome:
        """Build (or reuse) an artifact, migrate, and roll it out at ``scale``."""
        app = self.load(name)
        target = app.check_scale(scale if scale is not None else app.scale)

        def work(attempt: _Attempt) -> DeploymentOutcome:
            self.engine.preflight(app, target)
            tag = artifact
            if tag is None:
                if refresh_source:
                    self.store.refresh_source(app)
                tag = get_profile(app.profile).build_artifact(app, self.store)
            elif not self.store.exists(app, tag):
                raise NoSuchArtifactError(tag, len(self.store.list(app)), app.name)
            attempt.artifact = tag

            attempt.mutated = True
            migration = self.migrations.ensure_schema_current(app, tag)
            self.store.promote(app, tag)
            outcome = self.engine.roll(app, target, tag, run_id=attempt.run_id, kind="deploy")
            outcome.migration = migration
            if outcome.succeeded:
                self._replace_auxiliary(app, tag, outcome)
                self._prune_after_deploy(app)
            return outcome

        return self._guarded(app, "deploy", target, work)

    def restart(self, name: str) -> DeploymentOutcome:
        """Re-roll the current artifact at the live scale."""
        app = self.load(name)
        fleet = self.engine.reconcile(app)
        if fleet.scale == 0:
            raise PreconditionError(
                f"No web instances running for {name!r}. Use 'deploy' instead of 'restart'."
            )
        artifact = self._current_artifact(app)

        def work(attempt: _Attempt) -> DeploymentOutcome:
            attempt.artifact = artifact
            outcome = self.engine.roll(app, fleet.scale, artifact, run_id=attempt.run_id, kind="restart")
            if outcome.succeeded:
                self._replace_auxiliary(app, artifact, outcome)
            return outcome

        return self._guarded(app, "restart", fleet.scale, work)

    def scale(self, name: str, scale: int) -> DeploymentOutcome:
        """Resize to ``scale`` with the current artifact, leaving up-to-date slots alone."""
        app = self.load(name)
        app.check_scale(scale)
        artifact = self._current_artifact(app)

        def work(attempt: _Attempt) -> DeploymentOutcome:
            attempt.artifact = artifact
            return self.engine.roll(
                app, scale, artifact, run_id=attempt.run_id, kind="scale", skip_current=True
            )

        return self._guarded(app, "scale", scale, work)

    def rollback(self, name: str, selector: str = "-1") -> DeploymentOutcome:
        """Roll back to a previous artifact selected by offset or tag."""
        app = self.load(name)

        def work(attempt: _Attempt) -> DeploymentOutcome:
            attempt.artifact = self.versions.resolve(app, selector)
            outcome = self.versions.rollback(app, selector, run_id=attempt.run_id)
            if outcome.succeeded:
                self._replace_auxiliary(app, outcome.artifact, outcome)
            return outcome

        return self._guarded(app, "rollback", self.engine.reconcile(app).scale or app.scale, work)

    def stop(self, name: str) -> list[str]:
        """Stop and remove every instance of the application."""
        app = self.load(name)
        run_id = new_run_id()
        with LogContext(app=app.name, kind="stop", run_id=run_id):
            with self.locks.app_lock(app.name, run_id):
                removed = self.engine.stop_all(app)
        self.notifier.notify("stop.succeeded", {"app": app.name, "instances": removed})
        return removed

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    def status(self, name: str) -> AppStatus:
        app = self.load(name)
        return AppStatus(
            app=app.name,
            current_artifact=self.store.current(app),
            instances=self.runtime.list(app.name),
            upstream_ports=[port for _, port in self.synchronizer.read_back(app)],
        )

    def logs(
        self, name: str, instance: str | None = None, tail: int | None = None, follow: bool = False
    ) -> str:
        """Logs of one instance: a full name, a role suffix (``worker_1``) or a web slot number."""
        app = self.load(name)
        if instance is None:
            container = app.web_name(1)
        elif instance.isdigit():
            container = app.web_name(int(instance))
        elif instance.startswith(f"{app.name}_"):
            container = instance
        else:
            container = f"{app.name}_{instance}"
        return self.runtime.logs(container, tail=tail, follow=follow)

    def artifacts(self, name: str) -> list[ArtifactSummary]:
        return self.versions.list_artifacts(self.load(name))

    def deployments(self, name: str | None = None, limit: int = 20) -> list[DeploymentRecord]:
        return self.history.list(app=name, limit=limit)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_artifacts(self, name: str, keep: int | None = None) -> PurgeResult:
        app = self.load(name)
        return prune_artifacts(app, self.store, keep or self.settings.max_artifacts)

    def prune_backups(self, name: str, retention_days: int | None = None) -> PurgeResult:
        app = self.load(name)
        return prune_backups(app, self.database, retention_days or self.settings.backup_retention_days)

    def retention(self) -> RetentionReport:
        """Run both retention jobs for every defined application."""
        apps = [self.load(name) for name in self.applications()]
        return run_retention(
            apps,
            self.store,
            self.database,
            keep_artifacts=self.settings.max_artifacts,
            retention_days=self.settings.backup_retention_days,
        )

    def backups(self, name: str) -> list[BackupRecord]:
        return self.database.list_backups(self.load(name))

    def restore_backup(self, name: str, backup: str | None = None) -> BackupRecord:
        """Restore a BackupRecord (the newest when ``backup`` is omitted).

        Holds the application lock so no deployment migrates concurrently.
        """
        app = self.load(name)
        records = self.database.list_backups(app)
        if backup is None:
            record = records[0] if records else None
        else:
            record = next((r for r in records if r.path.name == backup), None)
        if record is None:
            raise PreconditionError(
                f"No backup {backup or '(newest)'} for {name!r}: {len(records)} retained"
            )
        run_id = new_run_id()
        with LogContext(app=app.name, kind="restore", run_id=run_id):
            with self.locks.app_lock(app.name, run_id):
                self.database.restore(app, record)
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _current_artifact(self, app: Application) -> str:
        artifact = self.store.current(app)
        if artifact is None:
            fleet = self.engine.reconcile(app)
            artifact = next((i.artifact for i in fleet.web.values() if i.artifact), None)
        if artifact is None:
            raise PreconditionError(f"No current artifact for {app.name!r}. Run 'deploy' first.")
        return artifact

    def _guarded(
        self,
        app: Application,
        kind: str,
        target_scale: int,
        work: Callable[[_Attempt], DeploymentOutcome],
    ) -> DeploymentOutcome:
        attempt = _Attempt(run_id=new_run_id(), kind=kind, target_scale=target_scale)
        with LogContext(app=app.name, kind=kind, run_id=attempt.run_id):
            with self.locks.app_lock(app.name, attempt.run_id):
                logger.info(f"{kind}.started", target_scale=target_scale)
                try:
                    outcome = work(attempt)
                except RollgateError as exc:
                    if isinstance(exc, PreconditionError) and not attempt.mutated:
                        raise
                    logger.error(f"{kind}.error", **exc.to_dict())
                    outcome = DeploymentOutcome(
                        run_id=attempt.run_id,
                        app=app.name,
                        kind=kind,
                        artifact=attempt.artifact,
                        target_scale=target_scale,
                    )
                    outcome.mark_complete(OutcomeStatus.FAILED, error=exc.message)
                self._finish(outcome)
                return outcome

    def _replace_auxiliary(self, app: Application, artifact: str, outcome: DeploymentOutcome) -> None:
        try:
            self.engine.replace_auxiliary(app, artifact)
        except ContainerRuntimeError as exc:
            outcome.mark_complete(
                OutcomeStatus.FAILED, error=f"Web rollout succeeded; auxiliary roles failed: {exc.message}"
            )

    def _prune_after_deploy(self, app: Application) -> None:
        try:
            prune_artifacts(app, self.store, self.settings.max_artifacts)
        except RollgateError as exc:
            logger.warning("retention.skipped", error=exc.message)

    def _finish(self, outcome: DeploymentOutcome) -> None:
        self.history.append(DeploymentRecord.from_outcome(outcome))
        status = outcome.status.value if outcome.status else "failed"
        log = logger.info if outcome.succeeded else logger.error
        log(f"{outcome.kind}.{status}", artifact=outcome.artifact, error=outcome.error)
        self.notifier.notify(
            f"{outcome.kind}.{status}",
            {
                "app": outcome.app,
                "run_id": outcome.run_id,
                "artifact": outcome.artifact,
                "target_scale": outcome.target_scale,
                "status": status,
                "error": outcome.error,
                "duration_seconds": round(outcome.duration_seconds, 1),
                "slots": [f"{s.slot}:{s.status.value}" for s in outcome.slots],
            },
        )


__all__ = ["DeploymentService", "new_run_id"]
