"""
Structured error types for rollgate.

Every failure the orchestrator can surface is a ``RollgateError`` subclass
carrying a category, a structured context and an optional chained cause.
The category decides how the CLI reports it and which exit code the
operator sees; the context carries the application, slot and port involved
so log lines and notifications stay machine-readable.

Manifesto:
    - **Typed hierarchy:** one type per failure mode, not one per call site
    - **Reject early:** precondition failures happen before any mutation
    - **Rich context:** errors carry metadata for logging and notification
    - **Error chaining:** the underlying subprocess/HTTP error is kept as cause

Architecture:
    ::

        RollgateError (category, context, cause, exit_code)
        ├── PreconditionError            PRECONDITION   exit 2
        │   ├── MissingConfigError
        │   └── NoSuchArtifactError
        ├── LockContentionError          CONCURRENCY    exit 2
        ├── HealthCheckTimeout           HEALTH         exit 3
        ├── ContainerRuntimeError        RUNTIME        exit 3
        │   ├── DockerNotFoundError
        │   └── PortConflictError
        ├── MigrationError               MIGRATION      exit 3
        │   └── BackupError
        ├── ConfigValidationError        PROXY          exit 3
        └── ProxyError                   PROXY          exit 3

Related Modules:
    - :mod:`rollgate.cli.utils` maps errors to exit codes and panels
    - :mod:`rollgate.deploy.service` raises and records them

Tags:
    errors, exceptions, error-hierarchy, exit-codes, rollgate
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and exit-code routing."""

    PRECONDITION = "PRECONDITION"
    CONCURRENCY = "CONCURRENCY"
    HEALTH = "HEALTH"
    RUNTIME = "RUNTIME"
    MIGRATION = "MIGRATION"
    PROXY = "PROXY"
    INTERNAL = "INTERNAL"

    def __str__(self) -> str:
        return self.value


# Exit codes reported by the CLI
EXIT_OK = 0
EXIT_PRECONDITION = 2
EXIT_DEPLOYMENT_FAILED = 3


class RollgateError(Exception):
    """
    Base exception for all rollgate errors.

    Subclasses set ``default_category`` and ``exit_code``; instances may
    override the category and attach arbitrary context.

    Examples:
        >>> err = RollgateError("boom")
        >>> err.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> err.with_context(app="shop").context
        {'app': 'shop'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    exit_code: int = EXIT_DEPLOYMENT_FAILED

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RollgateError:
        """Add context to this error (fluent API).

        Usage:
            raise PortConflictError("busy").with_context(app="shop", port=3020)
        """
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "exit_code": self.exit_code,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# PRECONDITION ERRORS (rejected before any mutation)
# =============================================================================


class PreconditionError(RollgateError):
    """Bad input or missing state detected before anything was changed."""

    default_category = ErrorCategory.PRECONDITION
    exit_code = EXIT_PRECONDITION


class MissingConfigError(PreconditionError):
    """No application definition exists under the given name."""

    def __init__(self, app: str, message: str | None = None):
        super().__init__(
            message or f"No configuration found for application {app!r}",
            context={"app": app},
        )
        self.app = app


class NoSuchArtifactError(PreconditionError):
    """A rollback selector does not resolve to a retained artifact.

    The message always states how many artifacts are retained so the
    operator can see that retention, not a typo, bounds the rollback.
    """

    def __init__(self, selector: str, retained: int, app: str | None = None):
        super().__init__(
            f"No artifact matches {selector!r}: {retained} artifact(s) retained"
            + (f" for {app!r}" if app else ""),
            context={"selector": selector, "retained": retained, "app": app},
        )
        self.selector = selector
        self.retained = retained


class LockContentionError(RollgateError):
    """Another deployment of the same application is in progress."""

    default_category = ErrorCategory.CONCURRENCY
    exit_code = EXIT_PRECONDITION

    def __init__(self, lock_key: str, holder: str | None = None):
        msg = f"Deployment already in progress ({lock_key})"
        if holder:
            msg += f", held by {holder}"
        super().__init__(msg, context={"lock_key": lock_key, "holder": holder})
        self.lock_key = lock_key
        self.holder = holder


# =============================================================================
# DEPLOYMENT ERRORS (operator attention required)
# =============================================================================


class HealthCheckTimeout(RollgateError):
    """An instance never answered its health paths within the timeout."""

    default_category = ErrorCategory.HEALTH


class ContainerRuntimeError(RollgateError):
    """A container runtime command failed or timed out."""

    default_category = ErrorCategory.RUNTIME


class DockerNotFoundError(ContainerRuntimeError):
    """The docker CLI is not available on PATH."""


class PortConflictError(ContainerRuntimeError):
    """A port or container name is already taken, usually by a stale run."""


class MigrationError(RollgateError):
    """Schema status could not be read or pending migrations failed to apply."""

    default_category = ErrorCategory.MIGRATION


class BackupError(MigrationError):
    """The pre-migration database dump failed; migrations were not applied."""


class ConfigValidationError(RollgateError):
    """The proxy rejected the generated configuration and it was reverted."""

    default_category = ErrorCategory.PROXY


class ProxyError(RollgateError):
    """The proxy could not be validated or reloaded."""

    default_category = ErrorCategory.PROXY


def exit_code_for(error: Exception) -> int:
    """Return the CLI exit code for an exception."""
    if isinstance(error, RollgateError):
        return error.exit_code
    return EXIT_DEPLOYMENT_FAILED


__all__ = [
    "ErrorCategory",
    "EXIT_OK",
    "EXIT_PRECONDITION",
    "EXIT_DEPLOYMENT_FAILED",
    "RollgateError",
    "PreconditionError",
    "MissingConfigError",
    "NoSuchArtifactError",
    "LockContentionError",
    "HealthCheckTimeout",
    "ContainerRuntimeError",
    "DockerNotFoundError",
    "PortConflictError",
    "MigrationError",
    "BackupError",
    "ConfigValidationError",
    "ProxyError",
    "exit_code_for",
]
