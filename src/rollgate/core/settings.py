"""Host-wide settings for rollgate.

One ``RollgateSettings`` instance describes the host: where application
definitions live, where state and backups are written, how the proxy is
validated and reloaded, and the timing knobs of the rolling engine.
Per-application values live in the YAML definitions loaded by
:mod:`rollgate.deploy.config`.

Features:
    - **env_prefix:** every field is overridable as ``ROLLGATE_<FIELD>``
    - **.env file support:** automatic loading via pydantic-settings
    - **Extra ignore:** unknown env vars don't cause startup failures

Examples:
    >>> import os
    >>> os.environ["ROLLGATE_HEALTH_TIMEOUT"] = "30"
    >>> RollgateSettings().health_timeout
    30.0

Tags:
    settings, configuration, pydantic, environment, rollgate
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RollgateSettings(BaseSettings):
    """Settings shared by every application deployed on this host.

    Fields
    ──────
    apps_dir             : Directory of ``<name>.yaml`` application definitions
    state_dir            : sqlite state (locks, deployment records)
    backup_dir           : Root of the BackupRecord store
    proxy_config_dir     : Where generated nginx configs are written
    staging_port_offset  : staging port = production port + offset
    health_timeout       : Seconds before a health gate gives up
    settle_interval      : Pause between slot replacements
    max_artifacts        : Retained artifacts per application (rollback reach)
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    apps_dir: Path = Field(default=Path("apps"), description="Application definitions")
    state_dir: Path = Field(
        default_factory=lambda: Path.home() / ".rollgate",
        description="Lock table and deployment records",
    )
    backup_dir: Path = Field(
        default_factory=lambda: Path.home() / ".rollgate" / "backups",
        description="Pre-migration database dumps",
    )

    # ── Proxy ────────────────────────────────────────────────────
    proxy_config_dir: Path = Path("/etc/nginx/sites-enabled")
    proxy_validate_command: str = "nginx -t"
    proxy_reload_command: str = "nginx -s reload"
    proxy_lock_wait: float = 30.0

    # ── Runtime ──────────────────────────────────────────────────
    docker_binary: str = "docker"
    staging_port_offset: int = 10000

    # ── Timing ───────────────────────────────────────────────────
    health_timeout: float = 60.0
    health_interval: float = 2.0
    settle_interval: float = 5.0
    build_timeout: float = 1800.0
    backup_timeout: float = 1800.0
    migration_timeout: float = 1800.0

    # ── Retention ────────────────────────────────────────────────
    max_artifacts: int = Field(default=20, ge=2)
    backup_retention_days: int = Field(default=30, ge=1)

    # ── Notifications ────────────────────────────────────────────
    notify_webhook_url: str | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    @model_validator(mode="after")
    def _check_timing(self) -> RollgateSettings:
        if self.health_timeout <= 0:
            raise ValueError("health_timeout must be positive")
        if self.health_interval <= 0:
            raise ValueError("health_interval must be positive")
        if self.settle_interval < 0:
            raise ValueError("settle_interval cannot be negative")
        return self

    @property
    def state_db(self) -> Path:
        return self.state_dir / "state.db"

    @property
    def proxy_backup_dir(self) -> Path:
        return self.state_dir / "proxy-backups"


@lru_cache(maxsize=1)
def get_settings() -> RollgateSettings:
    """Return the process-wide settings (cached)."""
    return RollgateSettings()


__all__ = ["RollgateSettings", "get_settings"]
