"""Artifact store: build, list, promote and prune application images.

Artifacts are docker images tagged ``<repository>:<YYYYmmdd_HHMMSS>``.
Promotion re-tags an artifact as ``<repository>:latest``; the current
artifact is whichever timestamp tag shares the image ID of ``latest``.
Tags are never overwritten, so an artifact is immutable once built.

Key Concepts:
    ArtifactStore.build(): optional ``git`` refresh of the source checkout,
        then ``docker build`` with a fresh timestamp tag.
    ArtifactStore.list(): newest-first summaries; the retained set is
        exactly what rollback can reach.
    ArtifactStore.prune(): oldest-first deletion keeping the newest K,
        never the current artifact.

Tags:
    artifacts, images, docker, build, retention
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from rollgate.core.errors import ContainerRuntimeError, PreconditionError
from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application
from rollgate.deploy.container import DockerRuntime
from rollgate.deploy.results import ArtifactSummary

logger = get_logger(__name__)

TAG_FORMAT = "%Y%m%d_%H%M%S"
CURRENT_TAG = "latest"


def new_tag(now: datetime | None = None) -> str:
    """Timestamp tag for a new artifact."""
    return (now or datetime.now()).strftime(TAG_FORMAT)


def _parse_created(value: str, tag: str) -> datetime:
    # docker prints "2025-01-01 12:00:00 +0000 UTC"
    try:
        return datetime.strptime(value[:25], "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        pass
    try:
        return datetime.strptime(tag, TAG_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return datetime.fromtimestamp(0, UTC)


class ArtifactStore:
    """Image registry on the local docker daemon.

    Parameters
    ----------
    runtime
        Docker runtime whose CLI binary is reused for image commands.
    build_timeout
        Seconds allowed for ``docker build``.
    clock
        Source of "now" for tag generation.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        build_timeout: float = 1800.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._runtime = runtime
        self._build_timeout = build_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def refresh_source(self, app: Application) -> None:
        """Reset the application's checkout to ``origin/<branch>``."""
        if app.repo_dir is None:
            return
        repo = Path(app.repo_dir)
        if not (repo / ".git").exists():
            raise PreconditionError(f"{repo} is not a git checkout", context={"app": app.name})
        for args in (
            ["fetch", "origin", app.repo_branch],
            ["reset", "--hard", f"origin/{app.repo_branch}"],
        ):
            result = subprocess.run(
                ["git", "-C", str(repo), *args], capture_output=True, text=True, timeout=300
            )
            if result.returncode != 0:
                raise PreconditionError(
                    f"git {args[0]} failed in {repo}: {result.stderr.strip()}",
                    context={"app": app.name},
                )
        logger.info("source.refreshed", app=app.name, branch=app.repo_branch)

    def build(
        self,
        app: Application,
        tag: str | None = None,
        build_args: dict[str, str] | None = None,
    ) -> str:
        """Build a new artifact from ``app.repo_dir`` and return its tag."""
        if app.repo_dir is None:
            raise PreconditionError(
                f"{app.name!r} has no repo_dir to build from", context={"app": app.name}
            )
        tag = tag or new_tag(self._clock())
        args = ["build", "--tag", app.image(tag)]
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(str(app.repo_dir))

        logger.info("artifact.building", app=app.name, tag=tag)
        self._runtime.run_docker(args, timeout=self._build_timeout)
        logger.info("artifact.built", app=app.name, image=app.image(tag))
        return tag

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def list(self, app: Application) -> list[ArtifactSummary]:
        """Retained artifacts, newest first. ``latest`` itself is not listed."""
        result = self._runtime.run_docker(
            ["images", app.repository, "--no-trunc", "--format", "{{json .}}"]
        )
        rows = [json.loads(line) for line in result.stdout.splitlines() if line.strip()]
        latest_id = next(
            (r.get("ID") for r in rows if r.get("Tag") == CURRENT_TAG), None
        )

        summaries = []
        for row in rows:
            tag = row.get("Tag", "")
            if tag in (CURRENT_TAG, "<none>", ""):
                continue
            summaries.append(
                ArtifactSummary(
                    tag=tag,
                    image=app.image(tag),
                    created_at=_parse_created(str(row.get("CreatedAt", "")), tag),
                    size=str(row.get("Size", "")),
                    image_id=str(row.get("ID", "")),
                )
            )
        summaries.sort(key=lambda s: (s.created_at, s.tag), reverse=True)

        # Several tags may share an image; the newest one is current
        for summary in summaries:
            if latest_id and summary.image_id == latest_id:
                summary.current = True
                break
        return summaries

    def current(self, app: Application) -> str | None:
        """Tag of the artifact currently promoted, if any."""
        for summary in self.list(app):
            if summary.current:
                return summary.tag
        return None

    def exists(self, app: Application, tag: str) -> bool:
        result = self._runtime.run_docker(
            ["image", "inspect", "--format", "{{.Id}}", app.image(tag)], check=False
        )
        return result.returncode == 0

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def promote(self, app: Application, tag: str) -> None:
        """Make ``tag`` the current artifact."""
        self._runtime.run_docker(["tag", app.image(tag), app.image(CURRENT_TAG)])
        logger.info("artifact.promoted", app=app.name, tag=tag)

    def remove(self, app: Application, tag: str) -> None:
        self._runtime.run_docker(["rmi", app.image(tag)])
        logger.info("artifact.removed", app=app.name, tag=tag)

    def prune(self, app: Application, keep: int) -> list[str]:
        """Delete the oldest artifacts beyond ``keep``. Returns removed tags."""
        if keep < 1:
            raise ValueError(f"keep must be at least 1, got {keep}")
        removed = []
        for summary in self.list(app)[keep:]:
            if summary.current:
                continue
            try:
                self.remove(app, summary.tag)
            except ContainerRuntimeError as exc:
                # still referenced by a running container
                logger.warning("artifact.prune_skipped", app=app.name, tag=summary.tag, error=str(exc))
                continue
            removed.append(summary.tag)
        return removed


__all__ = ["ArtifactStore", "CURRENT_TAG", "TAG_FORMAT", "new_tag"]
