"""Tests for rollgate.deploy.migrations: the migration safety gate."""

from __future__ import annotations

import pytest

from rollgate.core.errors import BackupError, ContainerRuntimeError, MigrationError
from rollgate.deploy.migrations import MigrationGate
from rollgate.deploy.results import MigrationState

STATUS = ("bundle", "exec", "rails", "db:migrate:status")
APPLY = ("bundle", "exec", "rails", "db:migrate")

PENDING = " Status   Migration ID    Migration Name\n   up     20250101120000  Create products\n  down    20250301120000  Add sku\n"
CURRENT = " Status   Migration ID    Migration Name\n   up     20250101120000  Create products\n"


@pytest.fixture
def rails_app(make_app):
    return make_app(profile="rails", database={"name": "shop_production"})


@pytest.fixture
def gate(runtime, database):
    return MigrationGate(runtime, database, timeout=120)


class TestMigrationGate:
    def test_profile_without_migrations_is_done(self, gate, runtime, make_app):
        result = gate.ensure_schema_current(make_app(profile="node"), "B")
        assert result.state == MigrationState.DONE
        assert runtime.exec_calls == []

    def test_nothing_pending(self, gate, runtime, database, rails_app, timeline):
        runtime.exec_results[STATUS] = (0, CURRENT)
        result = gate.ensure_schema_current(rails_app, "B")

        assert result.state == MigrationState.DONE
        assert result.pending is False
        assert "backup" not in timeline.kinds()
        assert runtime.exec_calls == [("shop_migration_check", list(STATUS), "/rails")]
        assert "shop_migration_check" not in runtime.containers

    def test_pending_backs_up_then_applies(self, gate, runtime, rails_app, timeline):
        runtime.exec_results[STATUS] = (0, PENDING)
        runtime.exec_results[APPLY] = (0, "== AddSku: migrated")
        result = gate.ensure_schema_current(rails_app, "B")

        assert result.state == MigrationState.APPLIED
        assert result.pending is True
        assert result.backup is not None
        assert result.backup.path.exists()
        kinds = timeline.kinds()
        assert kinds.index("backup") < max(i for i, k in enumerate(kinds) if k == "exec")
        assert [c[1] for c in runtime.exec_calls] == [list(STATUS), list(APPLY)]

    def test_disposable_runs_candidate_image(self, gate, runtime, rails_app, timeline):
        runtime.exec_results[STATUS] = (0, CURRENT)
        gate.ensure_schema_current(rails_app, "B")
        event = timeline.events[timeline.index("disposable")]
        assert event.name == "shop_migration_check"
        assert event.artifact == "B"

    def test_backup_failure_blocks_apply(self, gate, runtime, database, rails_app):
        runtime.exec_results[STATUS] = (0, PENDING)
        database.fail_dump = True
        with pytest.raises(BackupError):
            gate.ensure_schema_current(rails_app, "B")
        assert [c[1] for c in runtime.exec_calls] == [list(STATUS)]
        assert "shop_migration_check" not in runtime.containers

    def test_pending_without_database(self, gate, runtime, make_app):
        runtime.exec_results[STATUS] = (0, PENDING)
        with pytest.raises(BackupError, match="no database"):
            gate.ensure_schema_current(make_app(profile="rails"), "B")

    def test_apply_failure(self, gate, runtime, rails_app):
        runtime.exec_results[STATUS] = (0, PENDING)
        runtime.exec_results[APPLY] = (1, "PG::DuplicateColumn: column sku already exists")
        with pytest.raises(MigrationError, match="DuplicateColumn") as exc_info:
            gate.ensure_schema_current(rails_app, "B")
        assert "backup" in exc_info.value.context
        assert "shop_migration_check" not in runtime.containers

    def test_status_failure(self, gate, runtime, rails_app):
        runtime.exec_results[STATUS] = (1, "could not connect to server")
        with pytest.raises(MigrationError, match="exited 1"):
            gate.ensure_schema_current(rails_app, "B")

    def test_disposable_start_failure(self, gate, runtime, rails_app):
        def boom(spec):
            raise ContainerRuntimeError("image not found")

        runtime.start_disposable = boom
        with pytest.raises(MigrationError, match="Cannot start migration check"):
            gate.ensure_schema_current(rails_app, "B")

    def test_exec_timeout_becomes_migration_error(self, gate, runtime, rails_app):
        def hang(name, command, workdir=None, timeout=None):
            raise ContainerRuntimeError(f"Docker command timed out after {timeout}s")

        runtime.exec_once = hang
        with pytest.raises(MigrationError, match="timed out after 120"):
            gate.ensure_schema_current(rails_app, "B")

    def test_cleanup_failure_is_logged_not_raised(self, gate, runtime, rails_app):
        runtime.exec_results[STATUS] = (0, CURRENT)

        def fail_remove(name):
            raise ContainerRuntimeError("daemon busy")

        runtime.remove = fail_remove
        assert gate.ensure_schema_current(rails_app, "B").state == MigrationState.DONE
