"""Tests for rollgate.deploy.history and rollgate.deploy.state."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from rollgate.deploy.results import (
    DeploymentOutcome,
    DeploymentRecord,
    OutcomeStatus,
    SlotOutcome,
    SlotStatus,
)
from rollgate.deploy.state import open_state_db


def record(run_id: str, app: str = "shop", minutes: int = 0, status=OutcomeStatus.SUCCEEDED) -> DeploymentRecord:
    started = datetime(2025, 3, 1, 12, 0, tzinfo=UTC) + timedelta(minutes=minutes)
    return DeploymentRecord(
        run_id=run_id,
        app=app,
        kind="deploy",
        artifact="20250301_120000",
        target_scale=2,
        status=status,
        started_at=started,
        completed_at=started + timedelta(seconds=40),
        slots=[SlotOutcome(slot=1, port=3020, status=SlotStatus.REPLACED, artifact="20250301_120000")],
    )


class TestDeploymentHistory:
    def test_append_and_get(self, history):
        history.append(record("r1", status=OutcomeStatus.ABORTED))
        stored = history.get("r1")
        assert stored.status == OutcomeStatus.ABORTED
        assert stored.slots[0].port == 3020
        assert history.get("missing") is None

    def test_list_newest_first(self, history):
        history.append(record("r1", minutes=0))
        history.append(record("r2", minutes=5))
        history.append(record("r3", app="blog", minutes=10))

        assert [r.run_id for r in history.list()] == ["r3", "r2", "r1"]
        assert [r.run_id for r in history.list(app="shop")] == ["r2", "r1"]
        assert [r.run_id for r in history.list(limit=1)] == ["r3"]

    def test_append_only(self, history):
        history.append(record("r1"))
        with pytest.raises(sqlite3.IntegrityError):
            history.append(record("r1"))


class TestRecordFromOutcome:
    def test_requires_completion(self):
        outcome = DeploymentOutcome(run_id="r1", app="shop", kind="deploy", artifact="B", target_scale=2)
        with pytest.raises(ValueError, match="has not completed"):
            DeploymentRecord.from_outcome(outcome)

    def test_copies_outcome(self):
        outcome = DeploymentOutcome(run_id="r1", app="shop", kind="scale", artifact="B", target_scale=4)
        outcome.mark_complete(OutcomeStatus.FAILED, error="Upstream config reverted")
        rec = DeploymentRecord.from_outcome(outcome)
        assert rec.kind == "scale"
        assert rec.error == "Upstream config reverted"
        assert rec.completed_at >= rec.started_at


class TestStateDb:
    def test_creates_file_and_tables(self, tmp_path):
        path = tmp_path / "state" / "state.db"
        conn = open_state_db(path)
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        conn.close()
        assert path.exists()
        assert {"rollgate_locks", "deployment_records"} <= tables

    def test_reopen_is_idempotent(self, tmp_path):
        path = tmp_path / "state.db"
        open_state_db(path).close()
        open_state_db(path).close()
