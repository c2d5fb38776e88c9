"""Framework profiles for rollgate.

A profile captures everything that differs between a Rails-like and a
Node-like application: build arguments, the commands that read and apply
schema migrations inside a disposable instance, the health paths to probe,
and the commands of auxiliary worker/scheduler roles. The rolling engine
never branches on framework; it asks the application's profile.

Key Concepts:
    ApplicationProfile: Abstract capability with one concrete variant per
        framework, selected by the ``profile`` field of the definition.
    PROFILES: Registry keyed by profile name.
    get_profile(): Lookup helper raising ``ValueError`` listing what is
        available, in the same manner as the service registry.

Examples:
    >>> profile = get_profile("rails")
    >>> profile.migration_status_command()
    ['bundle', 'exec', 'rails', 'db:migrate:status']
    >>> profile.has_pending_migrations(0, "   up     20240101  Create users")
    False

Tags:
    profiles, rails, node, migrations, health, polymorphism
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from rollgate.core.errors import MigrationError

if TYPE_CHECKING:
    from rollgate.deploy.artifacts import ArtifactStore
    from rollgate.deploy.config import Application


class ApplicationProfile(ABC):
    """Framework-specific behaviour of an application."""

    name: str = ""
    default_health_paths: tuple[str, ...] = ("/",)
    migrations_by_default: bool = False
    workdir: str | None = None

    def build_args(self, app: Application) -> dict[str, str]:
        return {}

    def build_artifact(self, app: Application, store: ArtifactStore, tag: str | None = None) -> str:
        """Build a new tagged artifact for ``app`` and return its tag."""
        return store.build(app, tag=tag, build_args=self.build_args(app))

    def health_paths(self, app: Application) -> list[str]:
        if app.health_paths:
            return list(app.health_paths)
        return list(self.default_health_paths)

    def needs_migrations(self, app: Application) -> bool:
        if app.needs_migrations is not None:
            return app.needs_migrations
        return self.migrations_by_default

    @abstractmethod
    def migration_status_command(self) -> list[str]:
        """Command run inside the disposable instance to read schema status."""

    @abstractmethod
    def migration_apply_command(self) -> list[str]:
        """Command run inside the disposable instance to apply migrations."""

    @abstractmethod
    def has_pending_migrations(self, exit_code: int, output: str) -> bool:
        """Interpret the status command.

        Raises
        ------
        MigrationError
            If the status could not be determined.
        """

    def worker_command(self) -> list[str] | None:
        return None

    def worker_quiet_command(self) -> list[str] | None:
        """Command that tells a worker to stop picking up new jobs."""
        return None

    def scheduler_command(self) -> list[str] | None:
        return None


class RailsProfile(ApplicationProfile):
    """Rails applications: ``/up`` health endpoint, ActiveRecord migrations, Sidekiq."""

    name = "rails"
    default_health_paths = ("/up", "/")
    migrations_by_default = True
    workdir = "/rails"

    _PENDING_RE = re.compile(r"^\s*down\s", re.MULTILINE)

    def build_args(self, app: Application) -> dict[str, str]:
        return {"RAILS_ENV": "production"}

    def migration_status_command(self) -> list[str]:
        return ["bundle", "exec", "rails", "db:migrate:status"]

    def migration_apply_command(self) -> list[str]:
        return ["bundle", "exec", "rails", "db:migrate"]

    def has_pending_migrations(self, exit_code: int, output: str) -> bool:
        if exit_code != 0:
            raise MigrationError(
                f"db:migrate:status exited {exit_code}: {output.strip()[-500:]}"
            )
        return bool(self._PENDING_RE.search(output))

    def worker_command(self) -> list[str]:
        return ["bundle", "exec", "sidekiq"]

    def worker_quiet_command(self) -> list[str]:
        return ["pkill", "-TSTP", "-f", "sidekiq"]

    def scheduler_command(self) -> list[str]:
        return ["bundle", "exec", "clockwork", "lib/clock.rb"]


class NodeProfile(ApplicationProfile):
    """Node/Next.js applications: root health path, optional Prisma migrations."""

    name = "node"
    default_health_paths = ("/",)
    migrations_by_default = False
    workdir = "/app"

    def build_args(self, app: Application) -> dict[str, str]:
        return {"NODE_ENV": "production"}

    def migration_status_command(self) -> list[str]:
        return ["npx", "prisma", "migrate", "status"]

    def migration_apply_command(self) -> list[str]:
        return ["npx", "prisma", "migrate", "deploy"]

    def has_pending_migrations(self, exit_code: int, output: str) -> bool:
        # prisma exits non-zero when migrations are pending
        if "not yet been applied" in output:
            return True
        if exit_code != 0:
            raise MigrationError(
                f"prisma migrate status exited {exit_code}: {output.strip()[-500:]}"
            )
        return False


PROFILES: dict[str, ApplicationProfile] = {
    "rails": RailsProfile(),
    "node": NodeProfile(),
}


def get_profile(name: str) -> ApplicationProfile:
    """Look up a profile by name.

    Parameters
    ----------
    name
        Profile name (case-insensitive).

    Returns
    -------
    ApplicationProfile

    Raises
    ------
    ValueError
        If the profile name is not recognized.
    """
    key = name.lower().strip()
    if key not in PROFILES:
        available = ", ".join(sorted(PROFILES.keys()))
        raise ValueError(f"Unknown profile: {name!r}. Available: {available}")
    return PROFILES[key]


__all__ = [
    "ApplicationProfile",
    "NodeProfile",
    "PROFILES",
    "RailsProfile",
    "get_profile",
]
