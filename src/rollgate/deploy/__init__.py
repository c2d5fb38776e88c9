"""rollgate.deploy — zero-downtime rolling deployments on a single host.

Replaces the web instances of an application one slot at a time, each
replacement gated by a live health check; keeps the nginx upstream block
equal to the live instance set; takes a database backup before running
any pending migration; and keeps enough artifact history to roll back.

Key Concepts:
    Application: Frozen pydantic model loaded from ``<apps_dir>/<name>.yaml``
        (profile, ports, scale, database, proxy settings).
    ApplicationProfile: Rails / Node capability (build, migration commands,
        health paths, auxiliary roles), selected by configuration.
    Slot: Index ``i`` in ``1..scale``; production port ``base_port + i - 1``,
        staging port ``production port + staging_port_offset``.
    DeploymentOutcome: ``succeeded`` / ``aborted`` / ``failed`` with per-slot
        detail; every terminal outcome is recorded as a DeploymentRecord.
    DeploymentService: Composition root behind every CLI command.

Architecture Decisions:
    - subprocess-only: ``docker``, ``git``, ``pg_dump`` and ``nginx`` are
      driven through their CLIs, never through client libraries.
    - Fleet state is re-derived from the runtime before every mutation; the
      runtime is the source of truth, not a cached record.
    - Two lock scopes in one sqlite table: one per application, one for the
      shared proxy.
    - Collaborators are injected, so engine properties are tested against
      in-memory fakes.

Architecture::

    ┌──────────────────────────────────────────────────────────────┐
    │                    DeploymentService                          │
    ├──────────────┬──────────────┬──────────────┬─────────────────┤
    │  Artifact    │  Migration   │   Rolling    │   Version       │
    │  Store       │  Gate        │   Engine     │   Manager       │
    ├──────────────┴──────────────┼──────────────┴─────────────────┤
    │  Container runtime (docker) │  Health gate │ Upstream sync   │
    ├─────────────────────────────┴──────────────┴─────────────────┤
    │   Locks │ History │ Notifier │ Retention jobs                │
    └──────────────────────────────────────────────────────────────┘

Tags:
    deploy, rolling, zero-downtime, health-check, nginx, migrations,
    rollback, docker

Example:
    >>> from rollgate.deploy import get_profile
    >>> get_profile("rails").default_health_paths
    ('/up', '/')
"""

from __future__ import annotations

from rollgate.deploy.config import Application, DatabaseConfig, load_application
from rollgate.deploy.profiles import ApplicationProfile, get_profile
from rollgate.deploy.results import (
    AppStatus,
    ArtifactSummary,
    BackupRecord,
    DeploymentOutcome,
    DeploymentRecord,
    HealthResult,
    Instance,
    MigrationResult,
    OutcomeStatus,
    SlotOutcome,
    SyncResult,
)
from rollgate.deploy.service import DeploymentService

__all__ = [
    "AppStatus",
    "Application",
    "ApplicationProfile",
    "ArtifactSummary",
    "BackupRecord",
    "DatabaseConfig",
    "DeploymentOutcome",
    "DeploymentRecord",
    "DeploymentService",
    "HealthResult",
    "Instance",
    "MigrationResult",
    "OutcomeStatus",
    "SlotOutcome",
    "SyncResult",
    "get_profile",
    "load_application",
]
