"""File lock manager: exclusive, expiring claims on resource keys.

Acquisition is all-or-nothing and never blocks. A resource key is a path or a
glob pattern; two keys conflict when they are equal or when either pattern
matches the other. Expired locks are reclaimed before every acquisition.
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from fnmatch import fnmatchcase

from ticket_orchestrator.db.engine import Database, format_ts, parse_ts
from ticket_orchestrator.db.models import Lease, LockConflict, LockRecord

logger = logging.getLogger(__name__)


def keys_overlap(a: str, b: str) -> bool:
    """True when two resource keys name at least one common path."""
    return a == b or fnmatchcase(a, b) or fnmatchcase(b, a)


class LockManager:
    def __init__(
        self,
        db: Database,
        clock: Callable[[], datetime] = datetime.now,
        default_timeout: float = 1800.0,
    ):
        self.db = db
        self.clock = clock
        self.default_timeout = default_timeout

    def try_acquire(
        self,
        resource_keys: Iterable[str],
        holder: str,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> Lease | LockConflict:
        """Lock every key for ``holder`` or none of them.

        Returns a Lease on success. On conflict returns a LockConflict naming
        the requested keys that clashed and who holds the clashing locks.
        Keys the holder already owns are moved onto the new lease.
        """
        keys = frozenset(resource_keys)
        now = now or self.clock()
        expires_at = now + timedelta(seconds=self._ttl(timeout))

        with self.db.transaction() as conn:
            self._reclaim(conn, now)
            held = conn.execute("SELECT resource_key, holder FROM locks").fetchall()

            conflicting_keys: set[str] = set()
            holders: dict[str, str] = {}
            for key in keys:
                for row in held:
                    if row["holder"] == holder:
                        continue
                    if keys_overlap(key, row["resource_key"]):
                        conflicting_keys.add(key)
                        holders[row["resource_key"]] = row["holder"]
            if conflicting_keys:
                logger.debug(
                    "Lock conflict for %s on %s (held by %s)",
                    holder, sorted(conflicting_keys), sorted(set(holders.values())),
                )
                return LockConflict(frozenset(conflicting_keys), holders)

            token = uuid.uuid4().hex
            for key in sorted(keys):
                conn.execute(
                    """INSERT INTO locks (resource_key, holder, token, acquired_at, expires_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(resource_key) DO UPDATE SET
                           holder = excluded.holder,
                           token = excluded.token,
                           acquired_at = excluded.acquired_at,
                           expires_at = excluded.expires_at""",
                    (key, holder, token, format_ts(now), format_ts(expires_at)),
                )

        return Lease(
            token=token,
            holder=holder,
            resource_keys=keys,
            acquired_at=now,
            expires_at=expires_at,
        )

    def release(self, token: str) -> int:
        """Free every key of a lease. Releasing twice is a no-op."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM locks WHERE token = ?", (token,))
            return cur.rowcount

    def release_holder(self, holder: str) -> int:
        """Free every key held by ``holder``."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM locks WHERE holder = ?", (holder,))
            if cur.rowcount:
                logger.info("Released %d lock(s) held by %s", cur.rowcount, holder)
            return cur.rowcount

    def renew(self, token: str, now: datetime | None = None, timeout: float | None = None) -> bool:
        """Push a lease's expiry forward. False if the lease is gone."""
        now = now or self.clock()
        expires_at = now + timedelta(seconds=self._ttl(timeout))
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE locks SET expires_at = ? WHERE token = ?",
                (format_ts(expires_at), token),
            )
            return cur.rowcount > 0

    def reclaim_expired(self, now: datetime | None = None) -> list[LockRecord]:
        """Free every lock whose expiry is at or before ``now``."""
        now = now or self.clock()
        with self.db.transaction() as conn:
            return self._reclaim(conn, now)

    def active_locks(self, now: datetime | None = None) -> list[LockRecord]:
        """Locks that have not expired, ordered by resource key."""
        now = now or self.clock()
        rows = self.db.query("SELECT * FROM locks ORDER BY resource_key")
        return [r for r in map(_row_to_lock, rows) if r.expires_at > now]

    def _reclaim(self, conn: sqlite3.Connection, now: datetime) -> list[LockRecord]:
        rows = conn.execute("SELECT * FROM locks").fetchall()
        expired = [r for r in map(_row_to_lock, rows) if r.expires_at <= now]
        for record in expired:
            conn.execute(
                "DELETE FROM locks WHERE resource_key = ? AND token = ?",
                (record.resource_key, record.token),
            )
            logger.info(
                "Reclaimed expired lock on '%s' from %s (expired %s)",
                record.resource_key, record.holder, format_ts(record.expires_at),
            )
        return expired

    def _ttl(self, timeout: float | None) -> float:
        return self.default_timeout if timeout is None else timeout


def _row_to_lock(row: sqlite3.Row) -> LockRecord:
    return LockRecord(
        resource_key=row["resource_key"],
        holder=row["holder"],
        token=row["token"],
        acquired_at=parse_ts(row["acquired_at"]),
        expires_at=parse_ts(row["expires_at"]),
    )
