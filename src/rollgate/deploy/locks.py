"""Tagged advisory locks backed by the state database.

Two scopes of the same mutex:

- **Application scope** (``app:<name>``): held for the whole of a
  deploy/restart/scale/rollback/stop. A second attempt is rejected at once
  with ``LockContentionError``; it never queues.
- **Proxy scope** (``proxy``): held around the backup/write/validate/reload
  sequence of the upstream synchronizer. Writers from different
  applications wait for it, bounded by ``wait``.

Acquisition is an INSERT on a primary key: a constraint violation means
someone else holds the lock. Every lock has an expiry so a crashed run
cannot block an application forever; expired rows are deleted before
each attempt.

Example::

    locks = LockManager(open_state_db(settings.state_db))
    with locks.app_lock("shop", owner=run_id):
        ...
    with locks.proxy_lock(owner=run_id, wait=30):
        ...
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from rollgate.core.errors import LockContentionError
from rollgate.core.logging import get_logger

logger = get_logger(__name__)

PROXY_LOCK = "proxy"
APP_LOCK_TTL = 2 * 3600
PROXY_LOCK_TTL = 300


def app_lock_key(app_name: str) -> str:
    return f"app:{app_name}"


def utcnow() -> datetime:
    return datetime.now(UTC)


class LockManager:
    """Expiring advisory locks in the ``rollgate_locks`` table."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._conn = conn
        self._sleep = sleep
        self._clock = clock

    def acquire(self, lock_key: str, owner: str, ttl_seconds: int = APP_LOCK_TTL) -> bool:
        """Try once to acquire a lock.

        Returns:
            True if acquired (or already held by ``owner``, whose lease is extended),
            False if held by someone else.
        """
        now = utcnow()
        expires_at = (now + timedelta(seconds=ttl_seconds)).isoformat()
        cursor = self._conn.cursor()

        cursor.execute(
            "DELETE FROM rollgate_locks WHERE lock_key = ? AND expires_at < ?",
            (lock_key, now.isoformat()),
        )
        try:
            cursor.execute(
                """
                INSERT INTO rollgate_locks (lock_key, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (lock_key, owner, now.isoformat(), expires_at),
            )
            self._conn.commit()
            return True
        except sqlite3.IntegrityError:
            self._conn.rollback()

        holder = self.holder(lock_key)
        if holder == owner:
            cursor.execute(
                "UPDATE rollgate_locks SET expires_at = ? WHERE lock_key = ? AND owner = ?",
                (expires_at, lock_key, owner),
            )
            self._conn.commit()
            return True
        return False

    def release(self, lock_key: str, owner: str) -> bool:
        cursor = self._conn.cursor()
        cursor.execute(
            "DELETE FROM rollgate_locks WHERE lock_key = ? AND owner = ?",
            (lock_key, owner),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def holder(self, lock_key: str) -> str | None:
        """Owner of a live lock, or None."""
        row = self._conn.execute(
            "SELECT owner, expires_at FROM rollgate_locks WHERE lock_key = ?",
            (lock_key,),
        ).fetchone()
        if row is None or datetime.fromisoformat(row[1]) < utcnow():
            return None
        return row[0]

    def list_active(self) -> list[dict]:
        rows = self._conn.execute(
            """
            SELECT lock_key, owner, acquired_at, expires_at FROM rollgate_locks
            WHERE expires_at > ? ORDER BY acquired_at
            """,
            (utcnow().isoformat(),),
        ).fetchall()
        return [
            {"lock_key": r[0], "owner": r[1], "acquired_at": r[2], "expires_at": r[3]}
            for r in rows
        ]

    @contextmanager
    def hold(
        self,
        lock_key: str,
        owner: str,
        wait: float = 0.0,
        ttl_seconds: int = APP_LOCK_TTL,
        poll_interval: float = 0.5,
    ) -> Iterator[None]:
        """Hold ``lock_key`` for the duration of the block.

        With ``wait == 0`` a held lock raises immediately; otherwise the lock
        is polled until ``wait`` seconds have passed.
        """
        deadline = self._clock() + wait
        while not self.acquire(lock_key, owner, ttl_seconds):
            if self._clock() >= deadline:
                raise LockContentionError(lock_key, self.holder(lock_key))
            self._sleep(poll_interval)
        logger.debug("lock.acquired", lock_key=lock_key, owner=owner)
        try:
            yield
        finally:
            self.release(lock_key, owner)
            logger.debug("lock.released", lock_key=lock_key, owner=owner)

    def app_lock(self, app_name: str, owner: str):
        """Per-application lock. Never waits."""
        return self.hold(app_lock_key(app_name), owner, wait=0.0, ttl_seconds=APP_LOCK_TTL)

    def proxy_lock(self, owner: str, wait: float = 30.0):
        """Proxy-config lock shared by all applications on the host."""
        return self.hold(PROXY_LOCK, owner, wait=wait, ttl_seconds=PROXY_LOCK_TTL)


__all__ = ["LockManager", "PROXY_LOCK", "app_lock_key"]
