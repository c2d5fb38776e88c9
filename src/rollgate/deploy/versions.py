"""Version and rollback manager.

Lists retained artifacts newest-first and rolls an application back to
one of them. A selector is either a relative offset (``-1`` is the
artifact before the newest, ``-2`` two back) or an explicit tag.

Retention bounds rollback: ``-k`` needs at least ``k + 1`` retained
artifacts. When it does not resolve, ``NoSuchArtifactError`` reports how
many are retained, and nothing is promoted or replaced.

Rollback keeps the live scale and does not run the migration gate;
reverting a schema is a restore from a BackupRecord, not a deployment.
"""

from __future__ import annotations

import re
from typing import Any

from rollgate.core.errors import NoSuchArtifactError, PreconditionError
from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application
from rollgate.deploy.results import ArtifactSummary, DeploymentOutcome

logger = get_logger(__name__)

_OFFSET_RE = re.compile(r"^-(\d+)$")


def resolve_selector(selector: str, artifacts: list[ArtifactSummary], app: str | None = None) -> str:
    """Resolve ``selector`` against a newest-first artifact list.

    >>> from datetime import datetime
    >>> arts = [ArtifactSummary(tag=t, image=f"a:{t}", created_at=datetime(2025, 1, 1))
    ...         for t in ("c", "b", "a")]
    >>> resolve_selector("-2", arts)
    'a'
    """
    selector = selector.strip()
    match = _OFFSET_RE.match(selector)
    if match:
        offset = int(match.group(1))
        if offset < 1:
            raise PreconditionError(f"Rollback offset must be -1 or lower, got {selector!r}")
        if offset >= len(artifacts):
            raise NoSuchArtifactError(selector, len(artifacts), app)
        return artifacts[offset].tag

    for artifact in artifacts:
        if artifact.tag == selector:
            return artifact.tag
    raise NoSuchArtifactError(selector, len(artifacts), app)


class VersionManager:
    """Artifact history and rollback on top of the store and the rolling engine."""

    def __init__(self, store: Any, engine: Any) -> None:
        self._store = store
        self._engine = engine

    def list_artifacts(self, app: Application) -> list[ArtifactSummary]:
        return self._store.list(app)

    def resolve(self, app: Application, selector: str) -> str:
        return resolve_selector(selector, self._store.list(app), app.name)

    def rollback(self, app: Application, selector: str, *, run_id: str) -> DeploymentOutcome:
        """Promote the selected artifact and roll the current scale onto it.

        Raises
        ------
        NoSuchArtifactError
            The selector does not resolve; state is unchanged.
        PreconditionError
            The roll would be rejected; checked before promotion.
        """
        tag = self.resolve(app, selector)
        scale = self._engine.reconcile(app).scale or app.scale
        logger.info("rollback.resolved", app=app.name, selector=selector, artifact=tag, scale=scale)

        self._engine.preflight(app, scale)
        self._store.promote(app, tag)
        return self._engine.roll(app, scale, tag, run_id=run_id, kind="rollback")


__all__ = ["VersionManager", "resolve_selector"]
