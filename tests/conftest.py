"""
Shared pytest fixtures for rollgate tests.

This module provides:
- structlog / settings reset between tests
- Application factories (in-memory model and YAML definition on disk)
- In-memory collaborators wired into a real ``DeploymentService``

Usage:
    def test_something(service, write_app, runtime):
        write_app("shop", base_port=3020, scale=3)
        runtime.seed("shop", "A", [3020, 3021, 3022])
        ...
"""

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import structlog
import yaml

from _support.fakes import (
    FakeDatabase,
    FakeHealth,
    FakeProxy,
    FakeRuntime,
    FakeStore,
    RecordingNotifier,
    Timeline,
)
from rollgate.core.settings import RollgateSettings, get_settings
from rollgate.deploy.config import Application
from rollgate.deploy.history import DeploymentHistory
from rollgate.deploy.locks import LockManager
from rollgate.deploy.service import DeploymentService
from rollgate.deploy.state import open_state_db

# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def reset_logging_and_settings() -> Generator[None, None, None]:
    """Logging configured by a CLI invocation must not leak into later tests."""
    get_settings.cache_clear()
    yield
    structlog.reset_defaults()
    get_settings.cache_clear()


# =============================================================================
# Applications
# =============================================================================


def app_fields(name: str = "shop", **overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "name": name,
        "domain": f"{name}.example.com",
        "profile": "node",
        "base_port": 3020,
        "port_range": 10,
        "scale": 3,
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def make_app() -> Callable[..., Application]:
    """Build an ``Application`` in memory (node profile, no migrations by default)."""

    def _make(name: str = "shop", **overrides: Any) -> Application:
        return Application(**app_fields(name, **overrides))

    return _make


@pytest.fixture
def apps_dir(tmp_path: Path) -> Path:
    path = tmp_path / "apps"
    path.mkdir()
    return path


@pytest.fixture
def write_app(apps_dir: Path) -> Callable[..., Path]:
    """Write ``<apps_dir>/<name>.yaml`` and return its path."""

    def _write(name: str = "shop", **overrides: Any) -> Path:
        path = apps_dir / f"{name}.yaml"
        path.write_text(yaml.safe_dump(app_fields(name, **overrides)), encoding="utf-8")
        return path

    return _write


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def timeline() -> Timeline:
    return Timeline()


@pytest.fixture
def runtime(timeline: Timeline) -> FakeRuntime:
    return FakeRuntime(timeline)


@pytest.fixture
def health(runtime: FakeRuntime) -> FakeHealth:
    return FakeHealth(runtime)


@pytest.fixture
def proxy(tmp_path: Path) -> FakeProxy:
    return FakeProxy(tmp_path / "nginx")


@pytest.fixture
def database(tmp_path: Path, timeline: Timeline) -> FakeDatabase:
    return FakeDatabase(tmp_path / "backups", timeline)


@pytest.fixture
def store(timeline: Timeline) -> FakeStore:
    return FakeStore(timeline)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def state_conn():
    conn = open_state_db(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def locks(state_conn) -> LockManager:
    return LockManager(state_conn, sleep=lambda _: None)


@pytest.fixture
def history(state_conn) -> DeploymentHistory:
    return DeploymentHistory(state_conn)


@pytest.fixture
def settings(tmp_path: Path, apps_dir: Path) -> RollgateSettings:
    return RollgateSettings(
        apps_dir=apps_dir,
        state_dir=tmp_path / "state",
        backup_dir=tmp_path / "backups",
        proxy_config_dir=tmp_path / "nginx",
        settle_interval=0,
        health_timeout=10,
        health_interval=1,
        proxy_lock_wait=0,
        max_artifacts=5,
    )


@pytest.fixture
def service(
    settings, runtime, store, health, proxy, database, locks, history, notifier
) -> DeploymentService:
    return DeploymentService(
        settings=settings,
        runtime=runtime,
        store=store,
        health=health,
        proxy=proxy,
        database=database,
        locks=locks,
        history=history,
        notifier=notifier,
        sleep=lambda _: None,
    )
