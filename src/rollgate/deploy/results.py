"""Result models for rollgate.

Pydantic v2 models that capture structured outcomes from every step of a
deployment. They compose: a ``HealthResult`` decides a ``SlotOutcome``,
slot outcomes plus the optional ``MigrationResult`` and ``SyncResult``
roll up into a ``DeploymentOutcome``, and a finished outcome is frozen
into an append-only ``DeploymentRecord``.

Key Concepts:
    OutcomeStatus: ``succeeded`` / ``aborted`` / ``failed``. Aborted means
        the fleet is partially updated but still fully serving; failed means
        an instance was lost and the operator must look.
    SlotOutcome: What happened to one slot (replaced, started, skipped,
        failed, removed).
    DeploymentOutcome: ``mark_complete()`` finalises timestamps and
        duration, mirroring the result models of the deploy package.
    Instance: The live view of one container, re-derived from the runtime
        on every operation; never persisted.

Architecture Decisions:
    - Pydantic v2 BaseModel: ``model_dump_json()`` for the history store
      and ``model_validate_json()`` to read it back.
    - Records are frozen: history is never mutated after completion.

Tags:
    results, models, pydantic, deployment, status, reporting
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Shared enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Role an instance plays within an application."""

    WEB = "web"
    WORKER = "worker"
    SCHEDULER = "scheduler"
    MIGRATION = "migration"


class OutcomeStatus(str, Enum):
    """Terminal status of a deployment invocation."""

    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    FAILED = "failed"


class SlotStatus(str, Enum):
    REPLACED = "replaced"
    STARTED = "started"
    SKIPPED = "skipped"
    FAILED = "failed"
    REMOVED = "removed"


class MigrationState(str, Enum):
    """States of the migration safety gate."""

    NOOP = "noop"
    PENDING = "pending_detected"
    BACKED_UP = "backed_up"
    APPLIED = "applied"
    DONE = "done"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    REVERTED = "reverted"


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Runtime view
# ---------------------------------------------------------------------------


class Instance(BaseModel):
    """One container as reported by the runtime."""

    name: str
    app: str
    role: Role
    slot: int | None = None
    port: int | None = None
    artifact: str | None = None
    state: str = "running"
    staging: bool = False

    @property
    def running(self) -> bool:
        return self.state == "running"


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


class HealthResult(BaseModel):
    """Outcome of one health gate: healthy, or timed out."""

    healthy: bool
    address: str
    path: str | None = None
    status_code: int | None = None
    attempts: int = 0
    elapsed_seconds: float = 0.0
    last_error: str | None = None

    @property
    def timed_out(self) -> bool:
        return not self.healthy


class BackupRecord(BaseModel):
    """A timestamped database dump taken before applying migrations."""

    model_config = ConfigDict(frozen=True)

    app: str
    database: str
    path: Path
    created_at: datetime = Field(default_factory=_now)
    size_bytes: int = 0


class MigrationResult(BaseModel):
    """Outcome of the migration safety gate for one candidate artifact."""

    artifact: str
    state: MigrationState = MigrationState.NOOP
    pending: bool = False
    backup: BackupRecord | None = None
    output: str = ""


class SyncResult(BaseModel):
    """Outcome of one upstream config synchronisation."""

    app: str
    scale: int
    status: SyncStatus
    path: Path | None = None
    ports: list[int] = Field(default_factory=list)
    error: str | None = None

    @property
    def synced(self) -> bool:
        return self.status == SyncStatus.SYNCED


class SlotOutcome(BaseModel):
    """What the rolling engine did to one slot."""

    slot: int
    port: int
    status: SlotStatus
    artifact: str | None = None
    previous_artifact: str | None = None
    detail: str | None = None


class ArtifactSummary(BaseModel):
    """One retained artifact, as listed newest-first."""

    tag: str
    image: str
    created_at: datetime
    size: str = ""
    image_id: str = ""
    current: bool = False


# ---------------------------------------------------------------------------
# Deployment outcome and record
# ---------------------------------------------------------------------------


class DeploymentOutcome(BaseModel):
    """Result of one deploy/restart/scale/rollback invocation."""

    run_id: str
    app: str
    kind: str  # deploy, restart, scale, rollback
    artifact: str
    previous_scale: int = 0
    target_scale: int
    status: OutcomeStatus | None = None
    slots: list[SlotOutcome] = Field(default_factory=list)
    migration: MigrationResult | None = None
    sync: SyncResult | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def slot(self, index: int) -> SlotOutcome | None:
        for outcome in self.slots:
            if outcome.slot == index:
                return outcome
        return None

    def mark_complete(self, status: OutcomeStatus, error: str | None = None) -> None:
        """Finalise the outcome with status, end time and duration."""
        self.status = status
        if error is not None:
            self.error = error
        self.completed_at = _now()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()


class DeploymentRecord(BaseModel):
    """Append-only history entry. Never consulted to decide behaviour."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    app: str
    kind: str
    artifact: str
    target_scale: int
    status: OutcomeStatus
    started_at: datetime
    completed_at: datetime
    slots: list[SlotOutcome] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_outcome(cls, outcome: DeploymentOutcome) -> DeploymentRecord:
        if outcome.status is None or outcome.completed_at is None:
            raise ValueError(f"Deployment {outcome.run_id} has not completed")
        return cls(
            run_id=outcome.run_id,
            app=outcome.app,
            kind=outcome.kind,
            artifact=outcome.artifact,
            target_scale=outcome.target_scale,
            status=outcome.status,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
            slots=list(outcome.slots),
            error=outcome.error,
        )


class AppStatus(BaseModel):
    """Live view of an application for ``rollgate status``."""

    app: str
    current_artifact: str | None = None
    instances: list[Instance] = Field(default_factory=list)
    upstream_ports: list[int] = Field(default_factory=list)

    @property
    def web_ports(self) -> list[int]:
        return sorted(
            i.port for i in self.instances
            if i.role == Role.WEB and not i.staging and i.running and i.port is not None
        )

    @property
    def consistent(self) -> bool:
        """True when the upstream config references exactly the live web ports."""
        return sorted(self.upstream_ports) == self.web_ports
