"""Reverse proxy collaborator (nginx).

Exposes the two operations the synchronizer needs: ``validate()`` over
the entire merged configuration (``nginx -t``) and a graceful
``reload()`` (``nginx -s reload``) that leaves in-flight connections of
other applications alone. Both commands come from settings so hosts that
run nginx under systemd or sudo can substitute their own.

Tags:
    proxy, nginx, validate, reload, subprocess
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from rollgate.core.errors import ProxyError
from rollgate.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    output: str = ""


class NginxProxy:
    """nginx driven through its CLI.

    Parameters
    ----------
    config_dir
        Directory nginx includes site configs from.
    validate_command, reload_command
        Shell-style command strings, split with ``shlex``.
    """

    def __init__(
        self,
        config_dir: Path,
        validate_command: str = "nginx -t",
        reload_command: str = "nginx -s reload",
        timeout: float = 60.0,
    ) -> None:
        self.config_dir = Path(config_dir)
        self._validate_cmd = shlex.split(validate_command)
        self._reload_cmd = shlex.split(reload_command)
        self._timeout = timeout

    def config_path(self, app_name: str) -> Path:
        return self.config_dir / f"{app_name}.conf"

    def validate(self) -> ValidationResult:
        """Check the complete configuration. Never raises on a bad config."""
        try:
            result = subprocess.run(
                self._validate_cmd, capture_output=True, text=True, timeout=self._timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return ValidationResult(ok=False, output=str(exc))
        # nginx -t reports on stderr
        output = (result.stderr + result.stdout).strip()
        if result.returncode != 0:
            logger.warning("proxy.validation_failed", output=output[-1000:])
        return ValidationResult(ok=result.returncode == 0, output=output)

    def reload(self) -> None:
        """Graceful reload.

        Raises
        ------
        ProxyError
            If the reload command fails.
        """
        try:
            result = subprocess.run(
                self._reload_cmd, capture_output=True, text=True, timeout=self._timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ProxyError(f"Proxy reload failed: {exc}", cause=exc) from exc
        if result.returncode != 0:
            raise ProxyError(f"Proxy reload failed: {(result.stderr or result.stdout).strip()}")
        logger.info("proxy.reloaded")


__all__ = ["NginxProxy", "ValidationResult"]
