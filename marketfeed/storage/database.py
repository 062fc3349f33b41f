from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from marketfeed.errors import PersistenceError

DEFAULT_DB_PATH = os.path.expanduser("~/.marketfeed/marketfeed.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS market_snapshots (
    symbol          TEXT PRIMARY KEY,
    tier            TEXT NOT NULL,
    price           REAL NOT NULL,
    open            REAL NOT NULL,
    high            REAL NOT NULL,
    low             REAL NOT NULL,
    close           REAL NOT NULL,
    volume          INTEGER,
    previous_close  REAL NOT NULL,
    timestamp       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_tier ON market_snapshots(tier);

CREATE TABLE IF NOT EXISTS historical_points (
    symbol          TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    tier            TEXT NOT NULL,
    price           REAL NOT NULL,
    open            REAL NOT NULL,
    high            REAL NOT NULL,
    low             REAL NOT NULL,
    close           REAL NOT NULL,
    volume          INTEGER,
    previous_close  REAL NOT NULL,
    PRIMARY KEY (symbol, timestamp)
);

CREATE TABLE IF NOT EXISTS alert_rules (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner           TEXT NOT NULL,
    symbol          TEXT NOT NULL,
    kind            TEXT NOT NULL,
    threshold       REAL NOT NULL,
    message         TEXT,
    state           TEXT NOT NULL DEFAULT 'active',
    created_at      TEXT NOT NULL,
    triggered_at    TEXT
);
CREATE INDEX IF NOT EXISTS idx_alert_rules_state ON alert_rules(state, symbol);
CREATE INDEX IF NOT EXISTS idx_alert_rules_owner ON alert_rules(owner);
"""


def to_db_ts(dt: datetime) -> str:
    """Fixed-width UTC ISO string so text ordering matches time ordering."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_ts(raw: str) -> datetime:
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Database:
    """
    SQLite file shared by the snapshot store and the alert repository.

    connect() yields a connection inside one transaction: committed when the
    block exits cleanly, rolled back otherwise. sqlite errors surface as
    PersistenceError.
    """

    def __init__(self, path: str = DEFAULT_DB_PATH) -> None:
        self.path = path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA)
