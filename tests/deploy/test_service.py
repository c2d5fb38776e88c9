"""Tests for rollgate.deploy.service: the operations behind the CLI.

The service is wired with in-memory collaborators (see ``tests/conftest.py``)
sharing one timeline, so ordering across the artifact store, migration gate
and runtime can be asserted.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from rollgate.core.errors import (
    ContainerRuntimeError,
    LockContentionError,
    MissingConfigError,
    NoSuchArtifactError,
    PreconditionError,
)
from rollgate.deploy.locks import PROXY_LOCK, app_lock_key
from rollgate.deploy.results import MigrationState, OutcomeStatus, SlotStatus

STATUS = ("bundle", "exec", "rails", "db:migrate:status")
APPLY = ("bundle", "exec", "rails", "db:migrate")
PENDING = "   up     20250101120000  Create products\n  down    20250301120000  Add sku\n"

PORTS = [3020, 3021, 3022]


class TestDeploy:
    def test_fresh_deploy(self, service, write_app, runtime, store, history, notifier):
        write_app("shop", scale=2)

        outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.artifact == "20250301_120000"
        assert runtime.serving() == {3020: "20250301_120000", 3021: "20250301_120000"}
        assert store.refreshed == 1
        assert store.current_tag == "20250301_120000"
        assert [r.run_id for r in history.list()] == [outcome.run_id]
        assert notifier.kinds() == ["deploy.succeeded"]
        payload = notifier.events[0][1]
        assert payload["app"] == "shop"
        assert payload["slots"] == ["1:started", "2:started"]

    def test_explicit_artifact_skips_build(self, service, write_app, store, timeline):
        write_app("shop", scale=1)
        store.add("A")

        outcome = service.deploy("shop", artifact="A", refresh_source=False)

        assert outcome.succeeded
        assert "build" not in timeline.kinds()
        assert store.refreshed == 0

    def test_unknown_artifact_is_rejected_unrecorded(self, service, write_app, store, history, notifier):
        write_app("shop")
        store.add("A")
        with pytest.raises(NoSuchArtifactError):
            service.deploy("shop", artifact="Z")
        assert history.list() == []
        assert notifier.events == []

    def test_scale_checked_before_lock(self, service, write_app, locks, timeline):
        write_app("shop", port_range=4)
        with pytest.raises(PreconditionError, match="between 1 and 4"):
            service.deploy("shop", scale=5)
        assert locks.list_active() == []
        assert timeline.events == []

    def test_unknown_application(self, service):
        with pytest.raises(MissingConfigError):
            service.deploy("nope")

    def test_lock_contention(self, service, write_app, locks, history, notifier, timeline):
        write_app("shop")
        locks.acquire(app_lock_key("shop"), "other-run")

        with pytest.raises(LockContentionError) as exc_info:
            service.deploy("shop")

        assert exc_info.value.exit_code == 2
        assert history.list() == []
        assert notifier.events == []
        assert timeline.events == []

    def test_lock_released_after_deploy(self, service, write_app, locks):
        write_app("shop", scale=1)
        service.deploy("shop")
        assert locks.holder(app_lock_key("shop")) is None

    def test_aborted_deploy_is_recorded(self, service, write_app, runtime, health, history, notifier):
        write_app("shop")
        runtime.seed("shop", "A", PORTS)
        health.unhealthy_ports = {13022}

        outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.ABORTED
        assert runtime.serving() == {3020: "20250301_120000", 3021: "20250301_120000", 3022: "A"}
        assert history.get(outcome.run_id).status == OutcomeStatus.ABORTED
        assert notifier.kinds() == ["deploy.aborted"]

    def test_missing_proxy_template_rejected_before_build(
        self, service, write_app, runtime, store, history, notifier, timeline, tmp_path
    ):
        write_app("shop", scale=2, proxy_template=str(tmp_path / "missing.tpl"))
        runtime.seed("shop", "A", [3020])

        with pytest.raises(PreconditionError, match="template not found"):
            service.deploy("shop")

        assert "build" not in timeline.kinds()
        assert store.refreshed == 0
        assert runtime.serving() == {3020: "A"}
        assert history.list() == []
        assert notifier.events == []

    def test_proxy_lock_held_during_scale_up_is_recorded(
        self, service, write_app, runtime, locks, proxy, history, notifier
    ):
        write_app("shop", scale=3)
        runtime.seed("shop", "A", [3020])
        locks.acquire(PROXY_LOCK, "blog-run")

        outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.FAILED
        assert runtime.serving() == {3020: "20250301_120000"}
        assert not proxy.config_path("shop").exists()
        assert history.get(outcome.run_id).status == OutcomeStatus.FAILED
        assert notifier.kinds() == ["deploy.failed"]
        assert locks.holder(app_lock_key("shop")) is None

    def test_precondition_after_migration_gate_is_recorded(self, service, write_app, history, notifier):
        write_app("shop", scale=1)

        with patch.object(service.engine, "roll", side_effect=PreconditionError("scale changed underneath")):
            outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error == "scale changed underneath"
        assert history.get(outcome.run_id).status == OutcomeStatus.FAILED
        assert notifier.kinds() == ["deploy.failed"]

    def test_prunes_artifacts_after_success(self, service, write_app, store):
        write_app("shop", scale=1)
        store.add("20250101_000000", "20250102_000000", "20250103_000000", "20250104_000000",
                  "20250105_000000", "20250106_000000", current="20250106_000000")

        service.deploy("shop")

        # max_artifacts=5 in the test settings
        assert len(store.tags) == 5
        assert store.tags[-1] == "20250301_120000"


class TestMigrationGateInDeploy:
    def test_backup_and_migrate_before_any_new_instance(self, service, write_app, runtime, timeline):
        write_app("shop", profile="rails", scale=2, database={"name": "shop_production"})
        runtime.seed("shop", "A", [3020, 3021])
        runtime.exec_results[STATUS] = (0, PENDING)

        outcome = service.deploy("shop")

        assert outcome.succeeded
        assert outcome.migration.state == MigrationState.APPLIED
        first_start = timeline.index("start", artifact="20250301_120000")
        assert timeline.index("backup") < first_start
        assert timeline.index("promote") < first_start
        apply_exec = [i for i, e in enumerate(timeline.events) if e.kind == "exec"][-1]
        assert apply_exec < first_start

    def test_migration_failure_is_recorded_and_nothing_replaced(
        self, service, write_app, runtime, store, history, notifier
    ):
        write_app("shop", profile="rails", scale=2, database={"name": "shop_production"})
        runtime.seed("shop", "A", [3020, 3021])
        store.add("A", current="A")
        runtime.exec_results[STATUS] = (0, PENDING)
        runtime.exec_results[APPLY] = (1, "PG::UndefinedTable")

        outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.FAILED
        assert "UndefinedTable" in outcome.error
        assert outcome.artifact == "20250301_120000"
        assert runtime.serving() == {3020: "A", 3021: "A"}
        assert store.current_tag == "A"
        assert history.get(outcome.run_id).status == OutcomeStatus.FAILED
        assert notifier.kinds() == ["deploy.failed"]

    def test_backup_failure_blocks_migration(self, service, write_app, runtime, database):
        write_app("shop", profile="rails", scale=1, database={"name": "shop_production"})
        runtime.exec_results[STATUS] = (0, PENDING)
        database.fail_dump = True

        outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.FAILED
        assert "pg_dump" in outcome.error
        assert [c[1] for c in runtime.exec_calls] == [list(STATUS)]


class TestAuxiliaryRoles:
    def test_workers_replaced_after_web(self, service, write_app, runtime, timeline):
        write_app("shop", profile="rails", scale=1, worker_count=1)

        outcome = service.deploy("shop")

        assert outcome.succeeded
        assert runtime.containers["shop_worker_1"].artifact == "20250301_120000"
        assert timeline.index("start", name="shop_web_1") < timeline.index("start", name="shop_worker_1")

    def test_worker_failure_fails_outcome(self, service, write_app, runtime, notifier):
        write_app("shop", profile="rails", scale=1, worker_count=1)
        runtime.fail_start = {"shop_worker_1"}

        outcome = service.deploy("shop")

        assert outcome.status == OutcomeStatus.FAILED
        assert "auxiliary roles failed" in outcome.error
        assert runtime.serving() == {3020: "20250301_120000"}
        assert notifier.kinds() == ["deploy.failed"]


class TestRestartScaleRollback:
    def test_restart_without_instances(self, service, write_app):
        write_app("shop")
        with pytest.raises(PreconditionError, match="Use 'deploy' instead of 'restart'"):
            service.restart("shop")

    def test_restart_rerolls_current(self, service, write_app, runtime, store, timeline):
        write_app("shop")
        runtime.seed("shop", "A", PORTS)
        store.add("A", current="A")

        outcome = service.restart("shop")

        assert outcome.kind == "restart"
        assert outcome.succeeded
        assert [s.status for s in outcome.slots] == [SlotStatus.REPLACED] * 3
        assert "build" not in timeline.kinds()

    def test_restart_falls_back_to_running_artifact(self, service, write_app, runtime):
        write_app("shop")
        runtime.seed("shop", "A", [3020])
        assert service.restart("shop").artifact == "A"

    def test_scale_up_keeps_current_slots(self, service, write_app, runtime, store):
        write_app("shop")
        runtime.seed("shop", "A", [3020, 3021])
        store.add("A", current="A")

        outcome = service.scale("shop", 4)

        assert outcome.kind == "scale"
        assert [s.status for s in outcome.slots] == [
            SlotStatus.SKIPPED, SlotStatus.SKIPPED, SlotStatus.STARTED, SlotStatus.STARTED
        ]
        assert service.status("shop").upstream_ports == [3020, 3021, 3022, 3023]

    def test_scale_down(self, service, write_app, runtime, store):
        write_app("shop")
        runtime.seed("shop", "A", [3020, 3021, 3022, 3023])
        store.add("A", current="A")

        outcome = service.scale("shop", 2)

        assert outcome.succeeded
        assert runtime.serving() == {3020: "A", 3021: "A"}
        status = service.status("shop")
        assert status.upstream_ports == [3020, 3021]
        assert status.consistent

    def test_scale_without_any_artifact(self, service, write_app):
        write_app("shop")
        with pytest.raises(PreconditionError, match="Run 'deploy' first"):
            service.scale("shop", 2)

    def test_rollback(self, service, write_app, runtime, store, history):
        write_app("shop")
        store.add("A", "B", current="B")
        runtime.seed("shop", "B", PORTS)

        outcome = service.rollback("shop")

        assert outcome.kind == "rollback"
        assert outcome.artifact == "A"
        assert runtime.serving() == {3020: "A", 3021: "A", 3022: "A"}
        assert store.current_tag == "A"
        assert history.list()[0].kind == "rollback"

    def test_rollback_beyond_retention(self, service, write_app, runtime, store, history, timeline):
        write_app("shop")
        store.add("A", "B", current="B")
        runtime.seed("shop", "B", PORTS)

        with pytest.raises(NoSuchArtifactError, match="2 artifact"):
            service.rollback("shop", "-2")

        assert store.current_tag == "B"
        assert history.list() == []
        assert timeline.events == []

    def test_rollback_rejected_by_preflight_keeps_current(self, service, write_app, runtime, store, tmp_path):
        write_app("shop", proxy_template=str(tmp_path / "missing.tpl"))
        store.add("A", "B", current="B")
        runtime.seed("shop", "B", PORTS)

        with pytest.raises(PreconditionError, match="template not found"):
            service.rollback("shop")

        assert store.current_tag == "B"
        assert runtime.serving() == {3020: "B", 3021: "B", 3022: "B"}


class TestStopStatusLogs:
    def test_stop(self, service, write_app, runtime, proxy, notifier):
        write_app("shop", scale=2)
        service.deploy("shop")
        config = proxy.config_path("shop").read_bytes()

        removed = service.stop("shop")

        assert sorted(removed) == ["shop_web_1", "shop_web_2"]
        assert runtime.containers == {}
        assert proxy.config_path("shop").read_bytes() == config
        assert notifier.kinds()[-1] == "stop.succeeded"

    def test_stop_respects_lock(self, service, write_app, runtime, locks):
        write_app("shop")
        runtime.seed("shop", "A", PORTS)
        locks.acquire(app_lock_key("shop"), "deploying")
        with pytest.raises(LockContentionError):
            service.stop("shop")
        assert len(runtime.serving()) == 3

    def test_status(self, service, write_app, store):
        write_app("shop", scale=3)
        service.deploy("shop")

        status = service.status("shop")

        assert status.current_artifact == "20250301_120000"
        assert status.web_ports == PORTS
        assert status.upstream_ports == PORTS
        assert status.consistent

    def test_status_detects_drift(self, service, write_app, runtime):
        write_app("shop")
        runtime.seed("shop", "A", [3020])
        status = service.status("shop")
        assert status.upstream_ports == []
        assert status.consistent is False

    def test_logs_selectors(self, service, write_app, runtime):
        write_app("shop")
        runtime.seed("shop", "A", PORTS)

        assert service.logs("shop") == "logs of shop_web_1\n"
        assert service.logs("shop", "2") == "logs of shop_web_2\n"
        assert service.logs("shop", "web_3") == "logs of shop_web_3\n"
        assert service.logs("shop", "shop_web_3") == "logs of shop_web_3\n"
        with pytest.raises(ContainerRuntimeError):
            service.logs("shop", "worker_1")

    def test_artifacts_and_deployments(self, service, write_app, store):
        write_app("shop", scale=1)
        store.add("A", current="A")
        outcome = service.deploy("shop")

        assert [a.tag for a in service.artifacts("shop")] == ["20250301_120000", "A"]
        assert [r.run_id for r in service.deployments("shop")] == [outcome.run_id]
        assert service.deployments("blog") == []


class TestMaintenance:
    def test_restore_newest_backup(self, service, write_app, database):
        write_app("shop", database={"name": "shop_production"})
        app = service.load("shop")
        database.dump(app)
        newest = database.dump(app)

        record = service.restore_backup("shop")

        assert record.path == newest.path
        assert database.restored[0].path == newest.path

    def test_restore_named_backup(self, service, write_app, database):
        write_app("shop", database={"name": "shop_production"})
        app = service.load("shop")
        oldest = database.dump(app)
        database.dump(app)

        record = service.restore_backup("shop", oldest.path.name)
        assert record.path == oldest.path

    def test_restore_without_backups(self, service, write_app):
        write_app("shop", database={"name": "shop_production"})
        with pytest.raises(PreconditionError, match="0 retained"):
            service.restore_backup("shop")

    def test_prune_artifacts_uses_settings_default(self, service, write_app, store):
        write_app("shop")
        store.add(*(f"2025010{i}_000000" for i in range(1, 8)), current="20250107_000000")
        result = service.prune_artifacts("shop")
        assert result.kept == 5
        assert len(result.deleted) == 2

    def test_retention_over_all_applications(self, service, write_app, store):
        write_app("shop")
        write_app("blog", base_port=4000)

        report = service.retention()

        assert report.success
        assert sorted({r.app for r in report.results}) == ["blog", "shop"]


class TestFromSettings:
    @patch("rollgate.deploy.container.shutil.which", return_value="/usr/bin/docker")
    def test_wires_production_collaborators(self, mock_which, settings):
        from rollgate.deploy.container import DockerRuntime
        from rollgate.deploy.notify import NotificationHub
        from rollgate.deploy.service import DeploymentService

        service = DeploymentService.from_settings(
            settings.model_copy(update={"notify_webhook_url": "https://hooks.example.com/x"})
        )

        assert isinstance(service.runtime, DockerRuntime)
        assert isinstance(service.notifier, NotificationHub)
        assert [c.name for c in service.notifier.channels] == ["log", "webhook"]
        assert settings.state_db.exists()
