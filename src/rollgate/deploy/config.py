"""Application definitions for rollgate.

An ``Application`` is the operator-owned description of one deployable
service: its name, domain, reserved port range, declared scale, image
repository and framework profile. Definitions live as one YAML file per
application under ``RollgateSettings.apps_dir``::

    # apps/shop.yaml
    domain: shop.example.com
    profile: rails
    base_port: 3020
    scale: 3
    repo_dir: /srv/shop
    env_file: /srv/shop/.env.production
    worker_count: 2
    scheduler_enabled: true
    database:
      name: shop_production

Key Concepts:
    Application: Frozen pydantic model. Only ``scale`` changes after
        creation, and only by producing a copy via ``with_scale()``.
    Naming convention: ``<app>_web_<i>``, ``<app>_worker_<i>``,
        ``<app>_scheduler``, ``<app>_migration_check``. Every container
        name is derived here so the runtime can be reconciled by prefix.
    Port range: ``[base_port, base_port + port_range)``; slot ``i`` owns
        ``base_port + i - 1``.

Architecture Decisions:
    - YAML via ``yaml.safe_load`` and ``Application.model_validate``: the
      same validation path for files, tests and programmatic use.
    - A missing or invalid definition is a ``PreconditionError``, raised
      before anything is touched.

Related Modules:
    - :mod:`rollgate.deploy.profiles` resolves the ``profile`` field
    - :mod:`rollgate.core.settings` host-wide settings

Tags:
    config, application, pydantic, yaml, ports
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from rollgate.core.errors import MissingConfigError, PreconditionError
from rollgate.deploy.profiles import PROFILES

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


class DatabaseConfig(BaseModel):
    """PostgreSQL database backing an application."""

    model_config = ConfigDict(frozen=True)

    name: str
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    enabled: bool = True


class Application(BaseModel):
    """A deployable application with a reserved, fixed port range."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    domain: str
    display_name: str | None = None
    profile: str = "rails"

    # Ports and scale
    base_port: int = Field(ge=1, le=65535)
    port_range: int = Field(default=10, ge=1)
    scale: int = Field(default=2, ge=1)
    container_port: int = 3000

    # Artifact source
    image_repository: str | None = None
    repo_dir: Path | None = None
    repo_branch: str = "main"

    # Runtime
    env_file: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    network: str | None = None
    health_paths: list[str] | None = None
    health_timeout: float | None = None

    # Auxiliary roles
    worker_count: int = Field(default=0, ge=0)
    scheduler_enabled: bool = False
    worker_stop_timeout: int = 90

    # Schema
    needs_migrations: bool | None = None
    database: DatabaseConfig | None = None

    # Proxy
    upstream_name: str | None = None
    proxy_template: Path | None = None
    max_fails: int = 3
    fail_timeout: int = 30

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(
                f"Invalid application name {value!r}: use lowercase letters, digits and '-'"
            )
        return value

    @field_validator("profile")
    @classmethod
    def _check_profile(cls, value: str) -> str:
        key = value.lower().strip()
        if key not in PROFILES:
            available = ", ".join(sorted(PROFILES))
            raise ValueError(f"Unknown profile: {value!r}. Available: {available}")
        return key

    @field_validator("health_paths")
    @classmethod
    def _check_paths(cls, value: list[str] | None) -> list[str] | None:
        if value is not None:
            if not value:
                raise ValueError("health_paths cannot be empty")
            for path in value:
                if not path.startswith("/"):
                    raise ValueError(f"Health path must start with '/': {path!r}")
        return value

    @model_validator(mode="after")
    def _check_range(self) -> Application:
        if self.scale > self.port_range:
            raise ValueError(
                f"scale {self.scale} exceeds the reserved port range of {self.port_range}"
            )
        if self.base_port + self.port_range - 1 > 65535:
            raise ValueError("Port range extends beyond 65535")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def repository(self) -> str:
        return self.image_repository or self.name

    @property
    def upstream(self) -> str:
        return self.upstream_name or f"{self.name.replace('-', '_')}_backend"

    @property
    def title(self) -> str:
        return self.display_name or self.name

    def image(self, tag: str) -> str:
        return f"{self.repository}:{tag}"

    def production_port(self, slot: int) -> int:
        """Port owned by ``slot`` (1-based)."""
        if not 1 <= slot <= self.port_range:
            raise ValueError(f"Slot {slot} outside 1..{self.port_range}")
        return self.base_port + slot - 1

    def ports(self, scale: int) -> list[int]:
        """Production ports for ``scale`` instances, ascending."""
        return [self.production_port(i) for i in range(1, scale + 1)]

    # Container naming

    def web_name(self, slot: int) -> str:
        return f"{self.name}_web_{slot}"

    def staging_name(self, slot: int) -> str:
        return f"{self.name}_web_{slot}_staging"

    def worker_name(self, index: int) -> str:
        return f"{self.name}_worker_{index}"

    @property
    def scheduler_name(self) -> str:
        return f"{self.name}_scheduler"

    @property
    def migration_name(self) -> str:
        return f"{self.name}_migration_check"

    # ------------------------------------------------------------------
    # Scale
    # ------------------------------------------------------------------

    def check_scale(self, scale: int) -> int:
        """Validate a requested scale against the reserved range.

        Raises
        ------
        PreconditionError
            If ``scale`` is outside ``1..port_range``.
        """
        if not 1 <= scale <= self.port_range:
            raise PreconditionError(
                f"Scale must be between 1 and {self.port_range} for {self.name!r}, got {scale}",
                context={"app": self.name, "scale": scale},
            )
        return scale

    def with_scale(self, scale: int) -> Application:
        return self.model_copy(update={"scale": self.check_scale(scale)})


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def definition_path(name: str, apps_dir: Path) -> Path:
    return Path(apps_dir) / f"{name}.yaml"


def load_application(name: str, apps_dir: Path) -> Application:
    """Load and validate ``<apps_dir>/<name>.yaml``.

    Parameters
    ----------
    name
        Application name; also the file stem.
    apps_dir
        Directory of application definitions.

    Returns
    -------
    Application

    Raises
    ------
    MissingConfigError
        If no definition file exists.
    PreconditionError
        If the file is not valid YAML or fails validation.
    """
    path = definition_path(name, apps_dir)
    if not path.is_file():
        raise MissingConfigError(name, f"No configuration found for {name!r} at {path}")

    try:
        raw: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise PreconditionError(f"Invalid YAML in {path}", cause=exc) from exc

    if not isinstance(raw, dict):
        raise PreconditionError(f"{path} must contain a mapping")
    raw.setdefault("name", name)
    if raw["name"] != name:
        raise PreconditionError(
            f"{path} declares name {raw['name']!r}, expected {name!r}"
        )

    try:
        return Application.model_validate(raw)
    except ValidationError as exc:
        raise PreconditionError(
            f"Invalid configuration for {name!r}: {exc}", context={"app": name}, cause=exc
        ) from exc


def list_applications(apps_dir: Path) -> list[str]:
    """Names of all defined applications, sorted."""
    directory = Path(apps_dir)
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob("*.yaml"))


__all__ = [
    "Application",
    "DatabaseConfig",
    "definition_path",
    "list_applications",
    "load_application",
]
