"""SQLite database connection management and schema initialization."""

import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tickets (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('high', 'medium', 'low')),
    priority_rank INTEGER NOT NULL DEFAULT 1,
    complexity TEXT NOT NULL DEFAULT 'small'
        CHECK (complexity IN ('trivial', 'small', 'medium', 'large')),
    state TEXT NOT NULL DEFAULT 'queued' CHECK (state IN (
        'queued', 'assigned', 'planning', 'implementing', 'gate-check',
        'escalated', 'completed', 'failed', 'skipped'
    )),
    assigned_worker TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    quality_score REAL,
    security_flagged INTEGER NOT NULL DEFAULT 0,
    context TEXT NOT NULL DEFAULT '',
    enqueue_order INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    archived_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tickets_schedule
    ON tickets (state, priority_rank, enqueue_order);

CREATE TABLE IF NOT EXISTS ticket_files (
    ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    resource_key TEXT NOT NULL,
    PRIMARY KEY (ticket_id, resource_key)
);

CREATE TABLE IF NOT EXISTS ticket_dependencies (
    ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    depends_on_ticket_id TEXT NOT NULL,
    PRIMARY KEY (ticket_id, depends_on_ticket_id)
);

CREATE TABLE IF NOT EXISTS ticket_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    from_state TEXT,
    to_state TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_ticket ON ticket_transitions (ticket_id, id);

CREATE TABLE IF NOT EXISTS locks (
    resource_key TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    token TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_locks_token ON locks (token);

CREATE TABLE IF NOT EXISTS worker_slots (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'idle' CHECK (status IN ('idle', 'busy')),
    current_ticket TEXT,
    last_progress_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS escalations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    trigger_type TEXT NOT NULL CHECK (trigger_type IN (
        'architecture', 'security', 'data', 'breaking_change', 'ambiguity', 'repeated_failure'
    )),
    context TEXT NOT NULL DEFAULT '',
    raised_at TEXT NOT NULL,
    resolution TEXT CHECK (resolution IS NULL OR resolution IN ('approved-continue', 'rejected')),
    note TEXT NOT NULL DEFAULT '',
    resolved_at TEXT,
    notified_at TEXT,
    applied_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_escalations_ticket ON escalations (ticket_id);
"""


class Database:
    """A single SQLite connection shared by every store and worker thread.

    Access is serialized by a re-entrant mutex. ``transaction()`` nests: only
    the outermost block issues ``BEGIN IMMEDIATE`` / ``COMMIT``, and callbacks
    registered with ``on_commit`` run once the outermost block commits.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._mutex = threading.RLock()
        self._depth = 0
        self._after_commit: list[Callable[[], None]] = []

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._mutex:
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                    self._after_commit.clear()
                raise
            self._depth -= 1
            if outermost:
                self.conn.execute("COMMIT")
                callbacks, self._after_commit = self._after_commit, []
                for callback in callbacks:
                    callback()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection for a multi-statement read, without a write lock."""
        with self._mutex:
            yield self.conn

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after the current transaction commits."""
        with self._mutex:
            if self._depth == 0:
                callback()
            else:
                self._after_commit.append(callback)

    def query(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._mutex:
            return self.conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._mutex:
            self.conn.close()


def init_db(db_path: Path) -> Database:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.executescript(SCHEMA)
    return Database(conn)


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    db = init_db(db_path)
    try:
        yield db
    finally:
        db.close()


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)
