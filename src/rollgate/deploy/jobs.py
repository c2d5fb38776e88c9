"""Maintenance jobs: artifact and backup retention.

Plain functions taking the application as an argument, runnable on
demand from the CLI, from a deploy, or from tests. Each is idempotent:
running it twice in a row removes nothing the second time.

    >>> prune_artifacts(app, store, keep=20)
    PurgeResult(app='shop', kind='artifacts', deleted=['20240101_120000'], ...)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application

logger = get_logger(__name__)


@dataclass
class PurgeResult:
    """Result of one retention job."""

    app: str
    kind: str
    deleted: list[str] = field(default_factory=list)
    kept: int = 0
    cutoff: str | None = None


@dataclass
class RetentionReport:
    """Aggregated results of running every job for several applications."""

    results: list[PurgeResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(len(r.deleted) for r in self.results)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


def prune_artifacts(app: Application, store: Any, keep: int) -> PurgeResult:
    """Keep the newest ``keep`` artifacts (and always the current one)."""
    deleted = store.prune(app, keep)
    kept = len(store.list(app))
    logger.info("retention.artifacts", app=app.name, deleted=len(deleted), kept=kept)
    return PurgeResult(app=app.name, kind="artifacts", deleted=deleted, kept=kept)


def prune_backups(
    app: Application,
    database: Any,
    retention_days: int,
    now: datetime | None = None,
) -> PurgeResult:
    """Delete BackupRecords older than ``retention_days``."""
    if retention_days < 1:
        raise ValueError(f"retention_days must be at least 1, got {retention_days}")
    cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
    deleted = []
    kept = 0
    for record in database.list_backups(app):
        if record.created_at < cutoff:
            database.delete_backup(record)
            deleted.append(record.path.name)
        else:
            kept += 1
    logger.info("retention.backups", app=app.name, deleted=len(deleted), cutoff=cutoff.isoformat())
    return PurgeResult(
        app=app.name, kind="backups", deleted=deleted, kept=kept, cutoff=cutoff.isoformat()
    )


def run_retention(
    apps: list[Application],
    store: Any,
    database: Any,
    keep_artifacts: int,
    retention_days: int,
) -> RetentionReport:
    """Run both jobs for every application, collecting per-app errors."""
    report = RetentionReport()
    for app in apps:
        try:
            report.results.append(prune_artifacts(app, store, keep_artifacts))
            report.results.append(prune_backups(app, database, retention_days))
        except Exception as exc:  # noqa: BLE001 - one app must not stop the rest
            logger.error("retention.failed", app=app.name, error=str(exc))
            report.errors[app.name] = str(exc)
    return report


__all__ = [
    "PurgeResult",
    "RetentionReport",
    "prune_artifacts",
    "prune_backups",
    "run_retention",
]
