"""Load balancer config synchronizer.

Regenerates an application's nginx upstream block from ``base_port`` and
a scale, and swaps it in with automatic revert::

    acquire proxy lock
      └─ back up previous bytes ─► atomic write ─► validate whole config
                                                    ├─ fail ─► restore bytes ─► REVERTED
                                                    └─ ok ───► graceful reload
                                                                ├─ fail ─► restore ─► REVERTED
                                                                └─ ok ───► SYNCED

The upstream block is always regenerated wholesale, never patched, and
every server line carries nginx's passive health parameters
(``max_fails``/``fail_timeout``) so the proxy stops routing to a slot that
degrades between deployments.

When the application defines ``proxy_template``, the whole site file is
rendered from it instead, substituting ``{{UPSTREAM_SERVERS}}``,
``{{NGINX_UPSTREAM_NAME}}``, ``{{DOMAIN}}`` and ``{{APP_NAME}}``.

Related Modules:
    - :mod:`rollgate.deploy.proxy` validate/reload
    - :mod:`rollgate.deploy.locks` proxy-scope lock

Tags:
    nginx, upstream, config, atomic-write, revert, load-balancer
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Any

from rollgate.core.errors import PreconditionError, ProxyError
from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application
from rollgate.deploy.results import SyncResult, SyncStatus

logger = get_logger(__name__)

UPSTREAM_HOST = "localhost"
_SERVER_RE = re.compile(r"^\s*server\s+([^\s:;]+):(\d+)\b", re.MULTILINE)


# ---------------------------------------------------------------------------
# Rendering and parsing
# ---------------------------------------------------------------------------


def server_lines(app: Application, scale: int) -> list[str]:
    return [
        f"    server {UPSTREAM_HOST}:{port} max_fails={app.max_fails} fail_timeout={app.fail_timeout}s;"
        for port in app.ports(scale)
    ]


def render_upstream(app: Application, scale: int) -> str:
    """The managed upstream block for ``scale`` instances."""
    lines = [
        f"# Managed by rollgate for {app.name}; regenerated on every scale change.",
        f"upstream {app.upstream} {{",
        *server_lines(app, scale),
        "}",
        "",
    ]
    return "\n".join(lines)


def render_site(app: Application, scale: int, template: str) -> str:
    """Render a full site config from a template."""
    if "{{UPSTREAM_SERVERS}}" not in template:
        raise PreconditionError(
            f"Proxy template for {app.name!r} has no {{{{UPSTREAM_SERVERS}}}} placeholder"
        )
    replacements = {
        "{{NGINX_UPSTREAM_NAME}}": app.upstream,
        "{{DOMAIN}}": app.domain,
        "{{APP_NAME}}": app.name,
        "{{UPSTREAM_SERVERS}}": "\n".join(server_lines(app, scale)),
    }
    for placeholder, value in replacements.items():
        template = template.replace(placeholder, value)
    return template


def parse_upstream(text: str, upstream_name: str) -> list[tuple[str, int]]:
    """Read back ``(host, port)`` pairs of one upstream block, in file order."""
    match = re.search(
        rf"upstream\s+{re.escape(upstream_name)}\s*\{{(?P<body>[^}}]*)\}}", text
    )
    if match is None:
        return []
    return [(host, int(port)) for host, port in _SERVER_RE.findall(match.group("body"))]


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------


class UpstreamSynchronizer:
    """Write, validate and reload an application's proxy config.

    Parameters
    ----------
    proxy
        Collaborator providing ``config_path(name)``, ``validate()`` and ``reload()``.
    locks
        ``LockManager``; the proxy-scope lock serialises writers across applications.
    lock_wait
        Seconds to wait for the proxy lock before ``LockContentionError``.
    backup_dir
        Where the previous config is kept until the new one is live. Must be
        outside the proxy include path, or nginx would load the backup too.
    """

    def __init__(
        self, proxy: Any, locks: Any, backup_dir: Path, lock_wait: float = 30.0
    ) -> None:
        self._proxy = proxy
        self._locks = locks
        self._backup_dir = Path(backup_dir)
        self._lock_wait = lock_wait

    def render(self, app: Application, scale: int) -> str:
        if app.proxy_template is not None:
            template_path = Path(app.proxy_template)
            if not template_path.is_file():
                raise PreconditionError(f"Proxy template not found: {template_path}")
            return render_site(app, scale, template_path.read_text(encoding="utf-8"))
        return render_upstream(app, scale)

    def read_back(self, app: Application) -> list[tuple[str, int]]:
        """Entries currently in the application's generated config."""
        path = self._proxy.config_path(app.name)
        if not path.is_file():
            return []
        return parse_upstream(path.read_text(encoding="utf-8"), app.upstream)

    def sync(self, app: Application, new_scale: int, owner: str = "rollgate") -> SyncResult:
        """Regenerate the config for ``new_scale`` and swap it in, or revert."""
        app.check_scale(new_scale)
        content = self.render(app, new_scale).encode("utf-8")
        path: Path = self._proxy.config_path(app.name)
        ports = app.ports(new_scale)

        with self._locks.proxy_lock(owner, wait=self._lock_wait):
            previous = path.read_bytes() if path.exists() else None
            backup = self._backup_dir / f"{path.name}.bak"
            try:
                if previous is not None:
                    _atomic_write(backup, previous)
                _atomic_write(path, content)
            except OSError as exc:
                # os.replace did not run, so the live config is untouched
                raise ProxyError(
                    f"Cannot write proxy config {path}: {exc}",
                    context={"app": app.name},
                    cause=exc,
                ) from exc
            logger.info("upstream.written", app=app.name, scale=new_scale, path=str(path))

            validation = self._proxy.validate()
            if not validation.ok:
                self._restore(path, previous, backup)
                logger.error("upstream.reverted", app=app.name, reason="validation", output=validation.output)
                return SyncResult(
                    app=app.name,
                    scale=new_scale,
                    status=SyncStatus.REVERTED,
                    path=path,
                    error=validation.output or "proxy configuration failed validation",
                )

            try:
                self._proxy.reload()
            except ProxyError as exc:
                self._restore(path, previous, backup)
                logger.error("upstream.reverted", app=app.name, reason="reload", error=exc.message)
                return SyncResult(
                    app=app.name,
                    scale=new_scale,
                    status=SyncStatus.REVERTED,
                    path=path,
                    error=exc.message,
                )

            backup.unlink(missing_ok=True)

        logger.info("upstream.synced", app=app.name, scale=new_scale, ports=ports)
        return SyncResult(
            app=app.name, scale=new_scale, status=SyncStatus.SYNCED, path=path, ports=ports
        )

    @staticmethod
    def _restore(path: Path, previous: bytes | None, backup: Path) -> None:
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            _atomic_write(path, previous)
        backup.unlink(missing_ok=True)


def _atomic_write(path: Path, data: bytes) -> None:
    """Write via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


__all__ = [
    "UpstreamSynchronizer",
    "parse_upstream",
    "render_site",
    "render_upstream",
    "server_lines",
]
