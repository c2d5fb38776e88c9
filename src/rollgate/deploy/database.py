"""PostgreSQL collaborator: dump, restore and the BackupRecord store.

Backups are plain SQL dumps compressed by ``pg_dump -Z`` and written to
``<backup_dir>/<app>/<database>_<YYYYmmdd_HHMMSS>.sql.gz``. The file name
is the record: listing the directory re-derives every ``BackupRecord``,
so there is no index to fall out of sync.

Both dump and restore are bounded by a timeout. A hung ``pg_dump`` fails
the deployment with ``BackupError`` instead of holding the application
lock indefinitely.

Tags:
    database, postgres, backup, restore, pg_dump
"""

from __future__ import annotations

import gzip
import os
import re
import subprocess
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from rollgate.core.errors import BackupError, PreconditionError
from rollgate.core.logging import get_logger
from rollgate.deploy.config import Application, DatabaseConfig
from rollgate.deploy.results import BackupRecord

logger = get_logger(__name__)

_BACKUP_RE = re.compile(r"^(?P<db>.+)_(?P<ts>\d{8}_\d{6})\.sql\.gz$")
BACKUP_TS_FORMAT = "%Y%m%d_%H%M%S"


class PostgresDatabase:
    """Dump and restore application databases with the PostgreSQL client tools.

    Parameters
    ----------
    backup_dir
        Root of the BackupRecord store.
    timeout
        Seconds allowed for a dump or restore.
    clock
        Source of "now" for backup file names.
    """

    def __init__(
        self,
        backup_dir: Path,
        timeout: float = 1800.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.timeout = timeout
        self._clock = clock

    def app_dir(self, app: Application) -> Path:
        return self.backup_dir / app.name

    @staticmethod
    def _database(app: Application) -> DatabaseConfig:
        if app.database is None or not app.database.enabled:
            raise PreconditionError(
                f"{app.name!r} has no database configured", context={"app": app.name}
            )
        return app.database

    @staticmethod
    def _connection_args(db: DatabaseConfig) -> list[str]:
        return ["-h", db.host, "-p", str(db.port), "-U", db.user, "--no-password"]

    # ------------------------------------------------------------------
    # Dump / restore
    # ------------------------------------------------------------------

    def dump(self, app: Application) -> BackupRecord:
        """Write a full compressed dump and return its record.

        Raises
        ------
        BackupError
            If ``pg_dump`` fails, times out or produces an empty file.
        """
        db = self._database(app)
        created = self._clock()
        directory = self.app_dir(app)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{db.name}_{created.strftime(BACKUP_TS_FORMAT)}.sql.gz"

        cmd = ["pg_dump", *self._connection_args(db), "-Z", "9", "-f", str(path), db.name]
        logger.info("backup.started", app=app.name, database=db.name, path=str(path))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            path.unlink(missing_ok=True)
            raise BackupError(
                f"pg_dump of {db.name} timed out after {self.timeout}s",
                context={"app": app.name},
                cause=exc,
            ) from exc
        except OSError as exc:
            raise BackupError(f"Cannot run pg_dump: {exc}", context={"app": app.name}, cause=exc) from exc

        if result.returncode != 0:
            path.unlink(missing_ok=True)
            raise BackupError(
                f"pg_dump of {db.name} failed (exit {result.returncode}): {result.stderr.strip()}",
                context={"app": app.name},
            )
        if not path.exists() or path.stat().st_size == 0:
            path.unlink(missing_ok=True)
            raise BackupError(f"pg_dump of {db.name} produced no output", context={"app": app.name})

        record = BackupRecord(
            app=app.name,
            database=db.name,
            path=path,
            created_at=created,
            size_bytes=path.stat().st_size,
        )
        logger.info("backup.completed", app=app.name, path=str(path), size_bytes=record.size_bytes)
        return record

    def restore(self, app: Application, record: BackupRecord) -> None:
        """Feed a dump back into the application's database with ``psql``."""
        db = self._database(app)
        if not record.path.is_file():
            raise PreconditionError(f"Backup {record.path} does not exist")
        with gzip.open(record.path, "rb") as fh:
            sql = fh.read()
        cmd = ["psql", *self._connection_args(db), "--set", "ON_ERROR_STOP=1", "-d", db.name]
        logger.info("restore.started", app=app.name, path=str(record.path))
        try:
            result = subprocess.run(cmd, input=sql, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise BackupError(f"Restore of {db.name} timed out", cause=exc) from exc
        if result.returncode != 0:
            raise BackupError(
                f"Restore of {db.name} failed: {result.stderr.decode(errors='replace').strip()}"
            )
        logger.info("restore.completed", app=app.name, path=str(record.path))

    # ------------------------------------------------------------------
    # Record store
    # ------------------------------------------------------------------

    def list_backups(self, app: Application) -> list[BackupRecord]:
        """All backups of ``app``, newest first."""
        directory = self.app_dir(app)
        if not directory.is_dir():
            return []
        records = []
        for path in directory.iterdir():
            match = _BACKUP_RE.match(path.name)
            if not match:
                continue
            created = datetime.strptime(match.group("ts"), BACKUP_TS_FORMAT).replace(tzinfo=UTC)
            records.append(
                BackupRecord(
                    app=app.name,
                    database=match.group("db"),
                    path=path,
                    created_at=created,
                    size_bytes=path.stat().st_size,
                )
            )
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def delete_backup(self, record: BackupRecord) -> None:
        os.remove(record.path)
        logger.info("backup.deleted", app=record.app, path=str(record.path))


__all__ = ["PostgresDatabase", "BACKUP_TS_FORMAT"]
