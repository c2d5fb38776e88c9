"""Core primitives shared by the deploy engine and the CLI: errors, logging, settings."""

from rollgate.core.errors import (
    BackupError,
    ConfigValidationError,
    ContainerRuntimeError,
    HealthCheckTimeout,
    LockContentionError,
    MigrationError,
    MissingConfigError,
    NoSuchArtifactError,
    PortConflictError,
    PreconditionError,
    ProxyError,
    RollgateError,
)
from rollgate.core.logging import LogContext, configure_logging, get_logger
from rollgate.core.settings import RollgateSettings, get_settings

__all__ = [
    "BackupError",
    "ConfigValidationError",
    "ContainerRuntimeError",
    "HealthCheckTimeout",
    "LockContentionError",
    "LogContext",
    "MigrationError",
    "MissingConfigError",
    "NoSuchArtifactError",
    "PortConflictError",
    "PreconditionError",
    "ProxyError",
    "RollgateError",
    "RollgateSettings",
    "configure_logging",
    "get_logger",
    "get_settings",
]
