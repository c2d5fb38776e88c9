"""Append-only deployment log.

One ``DeploymentRecord`` per deploy/restart/scale/rollback invocation,
inserted once when the invocation completes and never updated. The log
is for operator visibility only; nothing in rollgate reads it to decide
what to do next. Current state always comes from the live instance set.
"""

from __future__ import annotations

import sqlite3

from rollgate.core.logging import get_logger
from rollgate.deploy.results import DeploymentRecord

logger = get_logger(__name__)


class DeploymentHistory:
    """``deployment_records`` table in the state database."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def append(self, record: DeploymentRecord) -> None:
        """Insert a completed record. A duplicate ``run_id`` is an error."""
        self._conn.execute(
            """
            INSERT INTO deployment_records
                (run_id, app, kind, artifact, target_scale, status, started_at, completed_at, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.run_id,
                record.app,
                record.kind,
                record.artifact,
                record.target_scale,
                record.status.value,
                record.started_at.isoformat(),
                record.completed_at.isoformat(),
                record.model_dump_json(),
            ),
        )
        self._conn.commit()
        logger.debug("history.appended", run_id=record.run_id, status=record.status.value)

    def list(self, app: str | None = None, limit: int = 20) -> list[DeploymentRecord]:
        """Records newest first, optionally for one application."""
        if app is None:
            rows = self._conn.execute(
                "SELECT payload FROM deployment_records ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT payload FROM deployment_records
                WHERE app = ? ORDER BY started_at DESC LIMIT ?
                """,
                (app, limit),
            ).fetchall()
        return [DeploymentRecord.model_validate_json(row[0]) for row in rows]

    def get(self, run_id: str) -> DeploymentRecord | None:
        row = self._conn.execute(
            "SELECT payload FROM deployment_records WHERE run_id = ?", (run_id,)
        ).fetchone()
        return DeploymentRecord.model_validate_json(row[0]) if row else None


__all__ = ["DeploymentHistory"]
