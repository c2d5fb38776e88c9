"""Rolling deployment engine.

Replaces an application's web instances one slot at a time, each
replacement gated by a health check, so that at most one slot is ever
down and a failure at slot *k* never disturbs any other slot.

Per-slot algorithm::

    slot i ─► production port = base_port + i - 1
            ─► start candidate on staging port (port + offset) as <app>_web_<i>_staging
            ─► health gate on staging ──── unhealthy ─► discard candidate,
            │                                          keep old instance,
            │                                          ABORT (later slots untouched)
            ─► discard candidate
            ─► stop + remove old <app>_web_<i>
            ─► start <app>_web_<i> on the production port
            ─► health gate on production ─ unhealthy ─► FAIL (old instance is gone)
            ─► settle pause, next slot

Scale changes:
    - Growing: new slots go through the same sequence, then the upstream
      config is synchronised to the new scale.
    - Shrinking: once every kept slot is replaced, the upstream config is
      synchronised first and surplus slots are removed only if it synced,
      so the proxy never routes to a removed instance.
    - After an abort or failure that already started new slots, the config
      is synchronised to cover them, keeping config and live set equal.
    - A sync that cannot run at all (proxy lock busy, write error) is
      handled as a reverted one.

Key Concepts:
    FleetState: The live instance set, re-derived from the runtime before
        any mutation. Leftover staging instances are stale state from a
        crashed run and are reported as ``PortConflictError``.
    DeploymentOutcome: ``succeeded`` / ``aborted`` (partially updated, fully
        serving) / ``failed`` (an instance was lost; operator attention).

Related Modules:
    - :mod:`rollgate.deploy.health` health gate
    - :mod:`rollgate.deploy.container` runtime
    - :mod:`rollgate.deploy.upstream` config synchronizer

Tags:
    rolling-deployment, zero-downtime, health-gate, slots, engine
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rollgate.core.errors import (
    ContainerRuntimeError,
    PortConflictError,
    PreconditionError,
    RollgateError,
)
from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application
from rollgate.deploy.container import InstanceSpec
from rollgate.deploy.profiles import get_profile
from rollgate.deploy.results import (
    DeploymentOutcome,
    Instance,
    OutcomeStatus,
    Role,
    SlotOutcome,
    SlotStatus,
    SyncResult,
    SyncStatus,
)
from rollgate.deploy.upstream import UPSTREAM_HOST

logger = get_logger(__name__)


@dataclass
class FleetState:
    """Live instances of one application, grouped by role."""

    web: dict[int, Instance] = field(default_factory=dict)
    staging: list[Instance] = field(default_factory=list)
    workers: dict[int, Instance] = field(default_factory=dict)
    scheduler: Instance | None = None

    @property
    def scale(self) -> int:
        """Highest occupied web slot; slots are expected to be contiguous."""
        return max(self.web, default=0)

    @classmethod
    def from_instances(cls, instances: list[Instance]) -> FleetState:
        state = cls()
        for inst in instances:
            if inst.staging:
                state.staging.append(inst)
            elif inst.role == Role.WEB and inst.slot is not None:
                state.web[inst.slot] = inst
            elif inst.role == Role.WORKER and inst.slot is not None:
                state.workers[inst.slot] = inst
            elif inst.role == Role.SCHEDULER:
                state.scheduler = inst
        return state


class RollingEngine:
    """Sequential, health-gated slot replacement.

    Parameters
    ----------
    runtime
        Container runtime (``start``, ``stop``, ``remove``, ``list``, ``exec_once``).
    health
        Health gate with ``await_healthy(address, paths, timeout, interval)``.
    synchronizer
        Upstream config synchronizer with ``sync(app, scale, owner)``.
    staging_port_offset
        Staging port = production port + offset.
    health_timeout, health_interval
        Health gate defaults; ``Application.health_timeout`` overrides the timeout.
    settle_interval
        Pause between slot replacements.
    stop_timeout
        Grace period given to a replaced web instance.
    """

    def __init__(
        self,
        runtime: Any,
        health: Any,
        synchronizer: Any,
        staging_port_offset: int = 10000,
        health_timeout: float = 60.0,
        health_interval: float = 2.0,
        settle_interval: float = 5.0,
        stop_timeout: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runtime = runtime
        self._health = health
        self._sync = synchronizer
        self._offset = staging_port_offset
        self._health_timeout = health_timeout
        self._health_interval = health_interval
        self._settle = settle_interval
        self._stop_timeout = stop_timeout
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, app: Application) -> FleetState:
        """Re-derive the live instance set from the runtime."""
        return FleetState.from_instances(self._runtime.list(app.name))

    def preflight(self, app: Application, target_scale: int) -> FleetState:
        """Reject a roll that cannot complete, before any instance is touched.

        Raises
        ------
        PreconditionError
            Bad scale, overlapping staging offset, or a proxy config that
            cannot be rendered (missing or invalid ``proxy_template``).
        PortConflictError
            Stale staging instances are present.
        """
        app.check_scale(target_scale)
        if self._offset < app.port_range:
            raise PreconditionError(
                f"staging_port_offset {self._offset} overlaps the port range of {app.name!r}"
            )
        self._sync.render(app, target_scale)
        fleet = self.reconcile(app)
        if fleet.staging:
            names = ", ".join(i.name for i in fleet.staging)
            raise PortConflictError(
                f"Stale staging instance(s) from a previous run: {names}. Remove them and retry.",
                context={"app": app.name},
            )
        return fleet

    # ------------------------------------------------------------------
    # Roll
    # ------------------------------------------------------------------

    def roll(
        self,
        app: Application,
        target_scale: int,
        artifact: str,
        *,
        run_id: str,
        kind: str = "deploy",
        skip_current: bool = False,
    ) -> DeploymentOutcome:
        """Replace web slots ``1..target_scale`` with ``artifact`` and resize.

        Parameters
        ----------
        skip_current
            Leave slots already running ``artifact`` alone (used by ``scale``).

        Returns
        -------
        DeploymentOutcome
            Completed outcome; the engine does not raise on slot failures.

        Raises
        ------
        PreconditionError, PortConflictError
            From :meth:`preflight`, before anything is touched.
        """
        fleet = self.preflight(app, target_scale)
        current_scale = fleet.scale
        outcome = DeploymentOutcome(
            run_id=run_id,
            app=app.name,
            kind=kind,
            artifact=artifact,
            previous_scale=current_scale,
            target_scale=target_scale,
        )
        logger.info(
            "roll.started",
            app=app.name,
            artifact=artifact,
            current_scale=current_scale,
            target_scale=target_scale,
        )

        paths = get_profile(app.profile).health_paths(app)
        timeout = app.health_timeout or self._health_timeout
        highest_started = current_scale

        for slot in range(1, target_scale + 1):
            existing = fleet.web.get(slot)
            if skip_current and existing and existing.running and existing.artifact == artifact:
                outcome.slots.append(
                    SlotOutcome(
                        slot=slot,
                        port=app.production_port(slot),
                        status=SlotStatus.SKIPPED,
                        artifact=artifact,
                        previous_artifact=existing.artifact,
                    )
                )
                continue

            slot_outcome, terminal = self._replace_slot(
                app, slot, artifact, existing, paths, timeout
            )
            outcome.slots.append(slot_outcome)
            if slot_outcome.status in (SlotStatus.REPLACED, SlotStatus.STARTED):
                highest_started = max(highest_started, slot)

            if terminal is not None:
                outcome.status = terminal
                outcome.error = slot_outcome.detail
                break

            if slot < target_scale:
                self._sleep(self._settle)

        if outcome.status is None:
            self._resize(app, fleet, outcome, current_scale, target_scale)
        elif highest_started > current_scale:
            self._cover_started(app, outcome, current_scale, highest_started)

        outcome.mark_complete(outcome.status or OutcomeStatus.SUCCEEDED)
        logger.info(
            "roll.completed",
            app=app.name,
            status=outcome.status.value,
            duration_seconds=round(outcome.duration_seconds, 1),
        )
        return outcome

    def _replace_slot(
        self,
        app: Application,
        slot: int,
        artifact: str,
        existing: Instance | None,
        paths: list[str],
        timeout: float,
    ) -> tuple[SlotOutcome, OutcomeStatus | None]:
        """Replace one slot. Returns the slot outcome and a terminal status, if any."""
        port = app.production_port(slot)
        staging_port = port + self._offset
        previous = existing.artifact if existing else None

        def failed(detail: str, terminal: OutcomeStatus) -> tuple[SlotOutcome, OutcomeStatus]:
            logger.error("slot.failed", slot=slot, port=port, detail=detail, outcome=terminal.value)
            return (
                SlotOutcome(
                    slot=slot,
                    port=port,
                    status=SlotStatus.FAILED,
                    artifact=artifact,
                    previous_artifact=previous,
                    detail=detail,
                ),
                terminal,
            )

        # 1. candidate on the staging port
        staging = self._spec(app, slot, artifact, staging_port, staging=True)
        try:
            self._runtime.start(staging)
        except ContainerRuntimeError as exc:
            self._discard(staging.name)
            return failed(f"staging start failed: {exc.message}", OutcomeStatus.ABORTED)

        result = self._health.await_healthy(
            f"{UPSTREAM_HOST}:{staging_port}", paths, timeout, self._health_interval
        )
        self._discard(staging.name)
        if not result.healthy:
            return failed(
                f"staging health check timed out after {result.elapsed_seconds:.0f}s "
                f"on port {staging_port} ({result.last_error})",
                OutcomeStatus.ABORTED,
            )

        # 2. swap the production instance
        if existing is not None:
            try:
                self._runtime.stop(existing.name, timeout=self._stop_timeout)
                self._runtime.remove(existing.name)
            except ContainerRuntimeError as exc:
                return failed(f"retiring {existing.name} failed: {exc.message}", OutcomeStatus.FAILED)

        production = self._spec(app, slot, artifact, port)
        try:
            self._runtime.start(production)
        except ContainerRuntimeError as exc:
            return failed(f"production start failed: {exc.message}", OutcomeStatus.FAILED)

        # 3. production re-check
        result = self._health.await_healthy(
            f"{UPSTREAM_HOST}:{port}", paths, timeout, self._health_interval
        )
        if not result.healthy:
            if existing is None:
                # never routed, nothing to keep
                self._discard(production.name)
            return failed(
                f"production health check timed out after {result.elapsed_seconds:.0f}s "
                f"on port {port} ({result.last_error})",
                OutcomeStatus.FAILED,
            )

        status = SlotStatus.REPLACED if existing is not None else SlotStatus.STARTED
        logger.info(f"slot.{status.value}", slot=slot, port=port, artifact=artifact, previous=previous)
        return (
            SlotOutcome(
                slot=slot, port=port, status=status, artifact=artifact, previous_artifact=previous
            ),
            None,
        )

    # ------------------------------------------------------------------
    # Resizing
    # ------------------------------------------------------------------

    def _resize(
        self,
        app: Application,
        fleet: FleetState,
        outcome: DeploymentOutcome,
        current_scale: int,
        target_scale: int,
    ) -> None:
        if target_scale == current_scale:
            return

        result = self._sync_to(app, target_scale, outcome)

        if target_scale > current_scale:
            if not result.synced:
                self._remove_slots(app, outcome, range(current_scale + 1, target_scale + 1), result.error)
                outcome.status = OutcomeStatus.FAILED
                outcome.error = f"Upstream config reverted: {result.error}"
            return

        if not result.synced:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = f"Upstream config reverted, surplus slots kept: {result.error}"
            return

        for slot in sorted(s for s in fleet.web if s > target_scale):
            inst = fleet.web[slot]
            try:
                self._runtime.stop(inst.name, timeout=self._stop_timeout)
                self._runtime.remove(inst.name)
            except ContainerRuntimeError as exc:
                # already out of the upstream config, so nothing routes to it
                logger.error("slot.remove_failed", slot=slot, error=exc.message)
                outcome.slots.append(
                    SlotOutcome(
                        slot=slot,
                        port=app.production_port(slot),
                        status=SlotStatus.FAILED,
                        previous_artifact=inst.artifact,
                        detail=f"surplus instance not removed: {exc.message}",
                    )
                )
                outcome.status = OutcomeStatus.FAILED
                outcome.error = f"Surplus instance {inst.name} not removed: {exc.message}"
                continue
            outcome.slots.append(
                SlotOutcome(
                    slot=slot,
                    port=app.production_port(slot),
                    status=SlotStatus.REMOVED,
                    previous_artifact=inst.artifact,
                )
            )
            logger.info("slot.removed", slot=slot, port=app.production_port(slot))

    def _cover_started(
        self, app: Application, outcome: DeploymentOutcome, current_scale: int, new_scale: int
    ) -> None:
        """After an abort, bring the config in line with slots started beyond the old scale."""
        result = self._sync_to(app, new_scale, outcome)
        if not result.synced:
            self._remove_slots(app, outcome, range(current_scale + 1, new_scale + 1), result.error)

    def _sync_to(self, app: Application, scale: int, outcome: DeploymentOutcome) -> SyncResult:
        """Synchronise the upstream config; an error leaves it as it was and counts as reverted."""
        try:
            result = self._sync.sync(app, scale, owner=outcome.run_id)
        except RollgateError as exc:
            logger.error("upstream.sync_failed", app=app.name, scale=scale, error=exc.message)
            result = SyncResult(
                app=app.name, scale=scale, status=SyncStatus.REVERTED, error=exc.message
            )
        outcome.sync = result
        return result

    def _remove_slots(
        self, app: Application, outcome: DeploymentOutcome, slots: range, reason: str | None
    ) -> None:
        """Remove newly started, never-routed slots after the config was reverted."""
        for slot in slots:
            self._discard(app.web_name(slot))
            existing = outcome.slot(slot)
            if existing is not None:
                existing.status = SlotStatus.REMOVED
                existing.detail = f"upstream config reverted: {reason}"

    # ------------------------------------------------------------------
    # Auxiliary roles
    # ------------------------------------------------------------------

    def replace_auxiliary(self, app: Application, artifact: str) -> list[str]:
        """Replace worker and scheduler instances with ``artifact``.

        Workers are first told to stop taking jobs, then given
        ``worker_stop_timeout`` to drain. Returns the names started.
        """
        profile = get_profile(app.profile)
        fleet = self.reconcile(app)
        started: list[str] = []

        worker_cmd = profile.worker_command()
        wanted = app.worker_count if worker_cmd else 0
        for index, inst in sorted(fleet.workers.items()):
            quiet = profile.worker_quiet_command()
            if quiet and inst.running:
                code, output = self._runtime.exec_once(inst.name, quiet, timeout=30)
                if code != 0:
                    logger.warning("worker.quiet_failed", worker=inst.name, output=output.strip()[:200])
            self._runtime.stop(inst.name, timeout=app.worker_stop_timeout)
            self._runtime.remove(inst.name)
            if index > wanted:
                logger.info("worker.removed", worker=inst.name)

        for index in range(1, wanted + 1):
            spec = self._spec(app, index, artifact, None, role=Role.WORKER, command=worker_cmd)
            self._runtime.start(spec)
            started.append(spec.name)

        scheduler_cmd = profile.scheduler_command()
        if fleet.scheduler is not None:
            self._runtime.stop(fleet.scheduler.name, timeout=self._stop_timeout)
            self._runtime.remove(fleet.scheduler.name)
        if app.scheduler_enabled and scheduler_cmd:
            spec = self._spec(app, None, artifact, None, role=Role.SCHEDULER, command=scheduler_cmd)
            self._runtime.start(spec)
            started.append(spec.name)

        if started:
            logger.info("auxiliary.replaced", app=app.name, instances=started, artifact=artifact)
        return started

    def stop_all(self, app: Application) -> list[str]:
        """Stop and remove every instance of ``app``."""
        removed = []
        for inst in self._runtime.list(app.name):
            timeout = app.worker_stop_timeout if inst.role == Role.WORKER else self._stop_timeout
            self._runtime.stop(inst.name, timeout=timeout)
            self._runtime.remove(inst.name)
            removed.append(inst.name)
        logger.info("app.stopped", app=app.name, instances=removed)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spec(
        self,
        app: Application,
        index: int | None,
        artifact: str,
        port: int | None,
        *,
        role: Role = Role.WEB,
        staging: bool = False,
        command: list[str] | None = None,
    ) -> InstanceSpec:
        if role == Role.WEB:
            name = app.staging_name(index) if staging else app.web_name(index)
        elif role == Role.WORKER:
            name = app.worker_name(index)
        else:
            name = app.scheduler_name
        return InstanceSpec(
            name=name,
            app=app.name,
            image=app.image(artifact),
            artifact=artifact,
            role=role,
            slot=index,
            port=port,
            container_port=app.container_port,
            env=dict(app.env),
            env_file=str(app.env_file) if app.env_file else None,
            network=app.network,
            command=command,
            staging=staging,
        )

    def _discard(self, name: str) -> None:
        try:
            self._runtime.remove(name)
        except ContainerRuntimeError as exc:
            # a leftover staging instance is caught by the next preflight
            logger.error("instance.discard_failed", instance=name, error=exc.message)


__all__ = ["FleetState", "RollingEngine"]
