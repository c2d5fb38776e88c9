"""Container lifecycle management for rollgate.

Starts, stops, removes and lists application instances through
the ``docker`` CLI (subprocess). Every instance gets a deterministic name
derived from :class:`~rollgate.deploy.config.Application` and a set of
``rollgate.*`` labels so the live instance set can be re-derived at any
time, without trusting anything this process remembers.

Key Concepts:
    DockerRuntime: ``start()``, ``stop()``, ``remove()``, ``list()``,
        ``start_disposable()``, ``exec_once()``, ``logs()``.
    InstanceSpec: Everything needed to launch one instance.
    PortConflictError: ``start()`` fails fast, without retrying, when the
        port or name is already taken.

Architecture Decisions:
    - subprocess, not docker-py: works with any runtime exposing a
      ``docker`` CLI and keeps the dependency surface small.
    - Restart policy at start time: every long-lived instance is started
      with ``--restart unless-stopped`` so the runtime recovers crashes on
      its own. Deployments never rely on it; they health-gate instead.
    - Idempotent teardown: stopping or removing an absent container is a
      no-op, so cleanup paths can run unconditionally.
    - Name fallback for reconciliation: containers without labels (started
      by hand or by older tooling) are still recognised from their name.

Related Modules:
    - :mod:`rollgate.deploy.rolling` drives slot replacement through here
    - :mod:`rollgate.deploy.migrations` uses the disposable instance calls

Tags:
    container, docker, lifecycle, subprocess, labels, reconciliation
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from dataclasses import dataclass, field

from rollgate.core.errors import ContainerRuntimeError, DockerNotFoundError, PortConflictError
from rollgate.core.logging import get_logger
from rollgate.deploy.results import Instance, Role

logger = get_logger(__name__)

LABEL_PREFIX = "rollgate"
RESTART_POLICY = "unless-stopped"

_CONFLICT_MARKERS = (
    "port is already allocated",
    "address already in use",
    "is already in use by container",
)
_MISSING_MARKERS = ("no such container", "no such object")
_PORT_RE = re.compile(r":(\d+)->")


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class InstanceSpec:
    """Launch parameters for one instance."""

    name: str
    app: str
    image: str
    artifact: str
    role: Role = Role.WEB
    slot: int | None = None
    port: int | None = None
    container_port: int = 3000
    env: dict[str, str] = field(default_factory=dict)
    env_file: str | None = None
    network: str | None = None
    command: list[str] | None = None
    staging: bool = False

    def labels(self) -> dict[str, str]:
        labels = {
            f"{LABEL_PREFIX}.app": self.app,
            f"{LABEL_PREFIX}.role": self.role.value,
            f"{LABEL_PREFIX}.artifact": self.artifact,
        }
        if self.slot is not None:
            labels[f"{LABEL_PREFIX}.slot"] = str(self.slot)
        if self.port is not None:
            labels[f"{LABEL_PREFIX}.port"] = str(self.port)
        if self.staging:
            labels[f"{LABEL_PREFIX}.staging"] = "true"
        return labels


def parse_instance_name(app: str, name: str) -> tuple[Role, int | None, bool] | None:
    """Recover ``(role, slot, staging)`` from a conventional container name.

    Returns ``None`` for names that do not belong to ``app``.

    >>> parse_instance_name("shop", "shop_web_2_staging")
    (<Role.WEB: 'web'>, 2, True)
    """
    prefix = f"{app}_"
    if not name.startswith(prefix):
        return None
    rest = name[len(prefix):]
    if rest == "scheduler":
        return Role.SCHEDULER, None, False
    if rest == "migration_check":
        return Role.MIGRATION, None, False
    match = re.fullmatch(r"(web|worker)_(\d+)(_staging)?", rest)
    if match is None:
        return None
    role = Role.WEB if match.group(1) == "web" else Role.WORKER
    return role, int(match.group(2)), bool(match.group(3))


def _parse_labels(raw: str | dict | None) -> dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    labels = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if sep:
            labels[key.strip()] = value.strip()
    return labels


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class DockerRuntime:
    """Container runtime backed by the ``docker`` CLI.

    Parameters
    ----------
    docker_binary
        Name or path of the docker executable.
    command_timeout
        Default timeout in seconds for individual docker commands.

    Example::

        runtime = DockerRuntime()
        runtime.start(InstanceSpec(name="shop_web_1", app="shop",
                                   image="shop:20250101_120000",
                                   artifact="20250101_120000", slot=1, port=3020))
        runtime.list("shop")
    """

    def __init__(self, docker_binary: str = "docker", command_timeout: int = 120) -> None:
        self.command_timeout = command_timeout
        self._docker_cmd = self._find_docker(docker_binary)

    # ------------------------------------------------------------------
    # Docker CLI discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _find_docker(binary: str) -> str:
        docker = shutil.which(binary)
        if docker is None:
            raise DockerNotFoundError(
                f"Docker CLI {binary!r} not found on PATH. Install Docker or set ROLLGATE_DOCKER_BINARY."
            )
        return docker

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------

    def start(self, spec: InstanceSpec) -> Instance:
        """Start a long-lived instance with the auto-restart policy.

        Raises
        ------
        PortConflictError
            If the port or container name is already taken. Not retried.
        ContainerRuntimeError
            For any other start failure.
        """
        args = ["run", "--detach", "--name", spec.name, "--restart", RESTART_POLICY]
        args.extend(self._common_args(spec))
        if spec.port is not None:
            args.extend(["-p", f"{spec.port}:{spec.container_port}"])
        for key, value in spec.labels().items():
            args.extend(["--label", f"{key}={value}"])
        args.append(spec.image)
        if spec.command:
            args.extend(spec.command)

        result = self.run_docker(args, check=False)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            # a name conflict means the container belongs to someone else
            if "is already in use by container" not in stderr.lower():
                self.remove(spec.name)
            if any(marker in stderr.lower() for marker in _CONFLICT_MARKERS):
                raise PortConflictError(
                    f"Cannot start {spec.name}: {stderr}",
                    context={"container": spec.name, "port": spec.port},
                )
            raise ContainerRuntimeError(
                f"Failed to start {spec.name} (exit {result.returncode}): {stderr}",
                context={"container": spec.name, "port": spec.port},
            )

        logger.info(
            "container.started",
            container=spec.name,
            image=spec.image,
            role=spec.role.value,
            port=spec.port,
        )
        return Instance(
            name=spec.name,
            app=spec.app,
            role=spec.role,
            slot=spec.slot,
            port=spec.port,
            artifact=spec.artifact,
            staging=spec.staging,
        )

    def stop(self, name: str, timeout: int = 30) -> None:
        """Stop an instance. No-op if it does not exist."""
        result = self.run_docker(
            ["stop", "--time", str(timeout), name],
            check=False,
            timeout=timeout + self.command_timeout,
        )
        if result.returncode != 0 and not self._is_missing(result.stderr):
            raise ContainerRuntimeError(f"Failed to stop {name}: {result.stderr.strip()}")
        logger.debug("container.stopped", container=name)

    def remove(self, name: str) -> None:
        """Remove an instance, releasing its name. No-op if it does not exist."""
        result = self.run_docker(["rm", "--force", name], check=False)
        if result.returncode != 0 and not self._is_missing(result.stderr):
            raise ContainerRuntimeError(f"Failed to remove {name}: {result.stderr.strip()}")
        logger.debug("container.removed", container=name)

    def list(self, prefix: str) -> list[Instance]:
        """List containers whose name follows ``prefix``'s naming convention."""
        result = self.run_docker(
            ["ps", "--all", "--filter", f"name={prefix}_", "--format", "{{json .}}"],
        )
        instances = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("container.list_unparseable", line=line[:200])
                continue
            instance = self._to_instance(prefix, row)
            if instance is not None:
                instances.append(instance)
        return sorted(instances, key=lambda i: (i.role.value, i.slot or 0, i.staging))

    # ------------------------------------------------------------------
    # Disposable instances
    # ------------------------------------------------------------------

    def start_disposable(self, spec: InstanceSpec) -> None:
        """Start an idle instance for one-off commands. No port, no restart policy."""
        self.remove(spec.name)
        args = ["run", "--detach", "--name", spec.name]
        args.extend(self._common_args(spec))
        for key, value in spec.labels().items():
            args.extend(["--label", f"{key}={value}"])
        args.extend([spec.image, "sleep", "infinity"])
        self.run_docker(args)
        logger.debug("container.disposable_started", container=spec.name, image=spec.image)

    def exec_once(
        self,
        name: str,
        command: list[str],
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str]:
        """Run ``command`` inside a running instance and return ``(exit_code, output)``."""
        args = ["exec"]
        if workdir:
            args.extend(["--workdir", workdir])
        args.extend([name, *command])
        result = self.run_docker(args, check=False, timeout=timeout)
        return result.returncode, result.stdout + result.stderr

    def logs(self, name: str, tail: int | None = None, follow: bool = False) -> str:
        """Return container logs. With ``follow`` the output streams to the terminal."""
        args = ["logs", "--timestamps"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if follow:
            subprocess.run([self._docker_cmd, *args, "--follow", name], check=False)
            return ""
        result = self.run_docker([*args, name], check=False)
        if result.returncode != 0 and self._is_missing(result.stderr):
            raise ContainerRuntimeError(f"No such instance: {name}")
        return result.stdout + result.stderr

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _common_args(spec: InstanceSpec) -> list[str]:
        args: list[str] = []
        if spec.network:
            args.extend(["--network", spec.network])
        if spec.env_file:
            args.extend(["--env-file", spec.env_file])
        for key, value in spec.env.items():
            args.extend(["--env", f"{key}={value}"])
        return args

    @staticmethod
    def _is_missing(stderr: str) -> bool:
        lowered = stderr.lower()
        return any(marker in lowered for marker in _MISSING_MARKERS)

    @staticmethod
    def _to_instance(prefix: str, row: dict) -> Instance | None:
        name = str(row.get("Names", "")).split(",")[0].strip()
        parsed = parse_instance_name(prefix, name)
        if parsed is None:
            return None
        role, slot, staging = parsed
        labels = _parse_labels(row.get("Labels"))

        port: int | None = None
        if f"{LABEL_PREFIX}.port" in labels:
            port = int(labels[f"{LABEL_PREFIX}.port"])
        else:
            match = _PORT_RE.search(str(row.get("Ports", "")))
            if match:
                port = int(match.group(1))

        artifact = labels.get(f"{LABEL_PREFIX}.artifact")
        if artifact is None:
            image = str(row.get("Image", ""))
            artifact = image.rsplit(":", 1)[1] if ":" in image else None

        return Instance(
            name=name,
            app=prefix,
            role=role,
            slot=slot,
            port=port,
            artifact=artifact,
            state=str(row.get("State", "running")).lower(),
            staging=staging,
        )

    def run_docker(
        self,
        args: list[str],
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command."""
        timeout = timeout or self.command_timeout
        cmd = [self._docker_cmd, *args]
        logger.debug("docker.exec", cmd=" ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ContainerRuntimeError(
                f"Docker command timed out after {timeout}s: {' '.join(args)}", cause=exc
            ) from exc
        if check and result.returncode != 0:
            raise ContainerRuntimeError(
                f"Docker command failed (exit {result.returncode}): "
                f"{' '.join(args)}\n{result.stderr}"
            )
        return result


__all__ = [
    "DockerRuntime",
    "InstanceSpec",
    "LABEL_PREFIX",
    "RESTART_POLICY",
    "parse_instance_name",
]
