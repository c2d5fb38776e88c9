"""SQLite state database shared by the lock table and the deployment log.

One file (``<state_dir>/state.db``) holds both tables. Connections use
WAL mode and a busy timeout so several rollgate processes deploying
different applications can share it.

Usage::

    conn = open_state_db(settings.state_db)
    locks = LockManager(conn)
    history = DeploymentHistory(conn)
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS rollgate_locks (
    lock_key     TEXT PRIMARY KEY,
    owner        TEXT NOT NULL,
    acquired_at  TEXT NOT NULL,
    expires_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS deployment_records (
    run_id        TEXT PRIMARY KEY,
    app           TEXT NOT NULL,
    kind          TEXT NOT NULL,
    artifact      TEXT NOT NULL,
    target_scale  INTEGER NOT NULL,
    status        TEXT NOT NULL,
    started_at    TEXT NOT NULL,
    completed_at  TEXT NOT NULL,
    payload       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_deployment_records_app
    ON deployment_records (app, started_at);
"""


def open_state_db(path: Path | str) -> sqlite3.Connection:
    """Open (and create if needed) the state database."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30, check_same_thread=False)
    if str(path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


__all__ = ["open_state_db", "SCHEMA"]
