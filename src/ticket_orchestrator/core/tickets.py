"""Ticket store: ticket records, the dependency graph and the transition log."""

import logging
import re
import sqlite3
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import datetime

from ticket_orchestrator.core.audit import AuditSink
from ticket_orchestrator.core.state_machine import validate_transition
from ticket_orchestrator.db.engine import Database, format_ts, parse_ts
from ticket_orchestrator.db.models import (
    Complexity,
    Priority,
    Ticket,
    TicketState,
    Transition,
)

logger = logging.getLogger(__name__)

MARK_FIELDS = ("assigned_worker", "attempt_count", "quality_score", "security_flagged", "context")


class DuplicateIdError(ValueError):
    """Raised when a ticket id is already taken."""


class OwnershipLostError(Exception):
    """Raised when a worker moves a ticket it no longer owns."""


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def ticket_from_dict(data: dict) -> Ticket:
    """Build a ticket from an intake record. The id defaults to the slugified title."""
    if not isinstance(data, dict):
        raise ValueError(f"Ticket record must be an object, got {type(data).__name__}: {data!r}")
    title = data.get("title", "")
    ticket_id = data.get("id") or slugify(title)
    if not ticket_id:
        raise ValueError(f"Ticket needs an id or a title: {data!r}")
    try:
        priority = Priority(data.get("priority", Priority.MEDIUM.value))
        complexity = Complexity(data.get("complexity", Complexity.SMALL.value))
    except ValueError as e:
        raise ValueError(f"Ticket '{ticket_id}': {e}") from e
    return Ticket(
        id=ticket_id,
        title=title,
        description=data.get("description", ""),
        priority=priority,
        complexity=complexity,
        estimated_files=set(data.get("estimated_files") or data.get("files") or ()),
        dependencies=set(data.get("dependencies") or data.get("depends_on") or ()),
    )


class TicketStore:
    """Holds tickets and funnels every state change through the lifecycle topology."""

    def __init__(
        self,
        db: Database,
        clock: Callable[[], datetime] = datetime.now,
        sinks: Sequence[AuditSink] = (),
    ):
        self.db = db
        self.clock = clock
        self.sinks: list[AuditSink] = list(sinks)

    # ── Intake ──────────────────────────────────────────────────────────────

    def enqueue(self, ticket: Ticket) -> Ticket:
        """Add a ticket in the queued state."""
        with self.db.transaction() as conn:
            self._insert(conn, ticket, self.clock())
            return self._load(conn, ticket.id)

    def enqueue_many(self, tickets: Iterable[Ticket]) -> list[Ticket]:
        """Batch intake. Either every ticket is enqueued or none is."""
        tickets = list(tickets)
        now = self.clock()
        with self.db.transaction() as conn:
            for ticket in tickets:
                self._insert(conn, ticket, now)
            return [self._load(conn, t.id) for t in tickets]

    def _insert(self, conn: sqlite3.Connection, ticket: Ticket, now: datetime):
        if not ticket.id:
            raise ValueError("Ticket id must not be empty")
        if ticket.id in ticket.dependencies:
            raise ValueError(f"Ticket cannot depend on itself: {ticket.id}")
        existing = conn.execute("SELECT id FROM tickets WHERE id = ?", (ticket.id,)).fetchone()
        if existing:
            raise DuplicateIdError(f"Ticket already exists: {ticket.id}")

        priority = Priority(ticket.priority)
        complexity = Complexity(ticket.complexity)
        order = conn.execute(
            "SELECT COALESCE(MAX(enqueue_order), 0) + 1 FROM tickets"
        ).fetchone()[0]

        conn.execute(
            """INSERT INTO tickets
               (id, title, description, priority, priority_rank, complexity, state,
                enqueue_order, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 'queued', ?, ?, ?)""",
            (
                ticket.id, ticket.title, ticket.description, priority.value, priority.rank,
                complexity.value, order, format_ts(now), format_ts(now),
            ),
        )
        for key in sorted(ticket.estimated_files):
            conn.execute(
                "INSERT INTO ticket_files (ticket_id, resource_key) VALUES (?, ?)",
                (ticket.id, key),
            )
        for dep_id in sorted(ticket.dependencies):
            conn.execute(
                "INSERT INTO ticket_dependencies (ticket_id, depends_on_ticket_id) VALUES (?, ?)",
                (ticket.id, dep_id),
            )
        self._log_transition(conn, ticket.id, None, TicketState.QUEUED, "enqueued", now)

    # ── Queries ─────────────────────────────────────────────────────────────

    def get(self, ticket_id: str) -> Ticket | None:
        """Get a ticket by ID with its files and dependencies."""
        with self.db.reading() as conn:
            return self._load(conn, ticket_id)

    def list_tickets(
        self,
        state: TicketState | None = None,
        include_archived: bool = False,
    ) -> list[Ticket]:
        """List tickets in scheduling order, optionally filtered by state."""
        query = "SELECT id FROM tickets WHERE 1=1"
        params: list = []
        if state is not None:
            query += " AND state = ?"
            params.append(TicketState(state).value)
        if not include_archived:
            query += " AND archived_at IS NULL"
        query += " ORDER BY priority_rank ASC, enqueue_order ASC"
        rows = self.db.query(query, params)
        return [t for r in rows if (t := self.get(r["id"])) is not None]

    def candidates(self) -> Iterator[Ticket]:
        """Queued tickets whose dependencies are all completed.

        Ordered by priority, then enqueue order. Each call starts a fresh pass.
        """
        rows = self.db.query(
            """SELECT id FROM tickets
               WHERE state = 'queued' AND archived_at IS NULL
               ORDER BY priority_rank ASC, enqueue_order ASC"""
        )
        for row in rows:
            ticket = self.get(row["id"])
            if ticket is None or ticket.state != TicketState.QUEUED:
                continue
            if self._dependencies_completed(ticket):
                yield ticket

    def blocked(self) -> list[Ticket]:
        """Queued tickets still waiting on a dependency."""
        return [
            t for t in self.list_tickets(TicketState.QUEUED)
            if t.dependencies and not self._dependencies_completed(t)
        ]

    def _dependencies_completed(self, ticket: Ticket) -> bool:
        if not ticket.dependencies:
            return True
        deps = sorted(ticket.dependencies)
        placeholders = ", ".join("?" for _ in deps)
        rows = self.db.query(
            f"SELECT id, state FROM tickets WHERE id IN ({placeholders})", deps
        )
        states = {r["id"]: r["state"] for r in rows}
        return all(states.get(dep_id) == TicketState.COMPLETED.value for dep_id in deps)

    def transitions(self, ticket_id: str) -> list[Transition]:
        """The full transition log of a ticket, oldest first."""
        rows = self.db.query(
            "SELECT * FROM ticket_transitions WHERE ticket_id = ? ORDER BY id",
            (ticket_id,),
        )
        return [_row_to_transition(r) for r in rows]

    def summary(self) -> dict[str, int]:
        """Count of unarchived tickets per state."""
        counts = {s.value: 0 for s in TicketState}
        rows = self.db.query(
            "SELECT state, COUNT(*) AS n FROM tickets WHERE archived_at IS NULL GROUP BY state"
        )
        for row in rows:
            counts[row["state"]] = row["n"]
        return counts

    # ── State changes ───────────────────────────────────────────────────────

    def mark(
        self,
        ticket_id: str,
        new_state: TicketState,
        reason: str = "",
        *,
        owner: str | None = None,
        **fields,
    ) -> Ticket:
        """Move a ticket to ``new_state``, updating ``fields`` alongside.

        When ``owner`` is given the ticket must still be assigned to that
        worker. ``assigned_worker`` is cleared whenever the ticket leaves the
        worker-held states.
        """
        unknown = set(fields) - set(MARK_FIELDS)
        if unknown:
            raise TypeError(f"Cannot update ticket fields: {', '.join(sorted(unknown))}")

        new_state = TicketState(new_state)
        now = self.clock()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
            if not row:
                raise ValueError(f"Ticket not found: {ticket_id}")
            if owner is not None and row["assigned_worker"] != owner:
                raise OwnershipLostError(
                    f"Ticket '{ticket_id}' is no longer held by {owner} "
                    f"(state {row['state']}, worker {row['assigned_worker']})"
                )
            current = TicketState(row["state"])
            validate_transition(current, new_state)

            updates: dict = {"state": new_state.value, "updated_at": format_ts(now)}
            for key, value in fields.items():
                if key == "security_flagged":
                    value = int(bool(value))
                updates[key] = value
            if not new_state.is_active:
                updates["assigned_worker"] = None
            if new_state.is_terminal:
                updates["completed_at"] = format_ts(now)

            set_parts = [f"{k} = ?" for k in updates]
            conn.execute(
                f"UPDATE tickets SET {', '.join(set_parts)} WHERE id = ?",
                list(updates.values()) + [ticket_id],
            )
            self._log_transition(conn, ticket_id, current, new_state, reason, now)
            return self._load(conn, ticket_id)

    def claim(self, ticket_id: str, worker_id: str) -> Ticket | None:
        """Atomically move a queued ticket to assigned. None if it is no longer queued."""
        now = self.clock()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT state FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
            if not row or row["state"] != TicketState.QUEUED.value:
                return None
            conn.execute(
                """UPDATE tickets SET state = 'assigned', assigned_worker = ?, updated_at = ?
                   WHERE id = ?""",
                (worker_id, format_ts(now), ticket_id),
            )
            self._log_transition(
                conn, ticket_id, TicketState.QUEUED, TicketState.ASSIGNED,
                f"assigned to {worker_id}", now,
            )
            return self._load(conn, ticket_id)

    def propagate_skips(self) -> list[Ticket]:
        """Skip every queued ticket with a failed or skipped dependency, transitively."""
        skipped: list[Ticket] = []
        with self.db.transaction() as conn:
            while True:
                rows = conn.execute(
                    """SELECT d.ticket_id, d.depends_on_ticket_id, dep.state AS dep_state
                       FROM ticket_dependencies d
                       JOIN tickets t ON t.id = d.ticket_id
                       JOIN tickets dep ON dep.id = d.depends_on_ticket_id
                       WHERE t.state = 'queued' AND dep.state IN ('failed', 'skipped')
                       ORDER BY t.enqueue_order, d.depends_on_ticket_id"""
                ).fetchall()
                if not rows:
                    break
                seen: set[str] = set()
                for row in rows:
                    if row["ticket_id"] in seen:
                        continue
                    seen.add(row["ticket_id"])
                    ticket = self.mark(
                        row["ticket_id"],
                        TicketState.SKIPPED,
                        f"dependency {row['depends_on_ticket_id']} {row['dep_state']}",
                    )
                    skipped.append(ticket)
        for ticket in skipped:
            logger.info("Skipped ticket '%s': a dependency did not complete", ticket.id)
        return skipped

    def archive(self, ticket_ids: Iterable[str]) -> int:
        """Archive terminal tickets. Non-terminal ones are left untouched."""
        now = format_ts(self.clock())
        archived = 0
        with self.db.transaction() as conn:
            for ticket_id in ticket_ids:
                cur = conn.execute(
                    """UPDATE tickets SET archived_at = ?
                       WHERE id = ? AND archived_at IS NULL
                         AND state IN ('completed', 'failed', 'skipped')""",
                    (now, ticket_id),
                )
                archived += cur.rowcount
        return archived

    # ── Internals ───────────────────────────────────────────────────────────

    def _load(self, conn: sqlite3.Connection, ticket_id: str) -> Ticket | None:
        row = conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
        if not row:
            return None
        ticket = _row_to_ticket(row)
        files = conn.execute(
            "SELECT resource_key FROM ticket_files WHERE ticket_id = ?", (ticket_id,)
        ).fetchall()
        ticket.estimated_files = {f["resource_key"] for f in files}
        deps = conn.execute(
            "SELECT depends_on_ticket_id FROM ticket_dependencies WHERE ticket_id = ?",
            (ticket_id,),
        ).fetchall()
        ticket.dependencies = {d["depends_on_ticket_id"] for d in deps}
        return ticket

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        ticket_id: str,
        from_state: TicketState | None,
        to_state: TicketState,
        reason: str,
        now: datetime,
    ):
        cur = conn.execute(
            """INSERT INTO ticket_transitions (ticket_id, from_state, to_state, reason, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                ticket_id,
                from_state.value if from_state else None,
                to_state.value,
                reason,
                format_ts(now),
            ),
        )
        entry = Transition(
            id=cur.lastrowid,
            ticket_id=ticket_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            created_at=now,
        )
        self.db.on_commit(lambda: self._emit(entry))

    def _emit(self, entry: Transition):
        for sink in self.sinks:
            try:
                sink.emit(entry)
            except Exception:
                logger.exception("Audit sink %r failed for ticket '%s'", sink, entry.ticket_id)


def _row_to_ticket(row: sqlite3.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        priority=Priority(row["priority"]),
        complexity=Complexity(row["complexity"]),
        state=TicketState(row["state"]),
        assigned_worker=row["assigned_worker"],
        attempt_count=row["attempt_count"],
        quality_score=row["quality_score"],
        security_flagged=bool(row["security_flagged"]),
        context=row["context"],
        enqueue_order=row["enqueue_order"],
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
        completed_at=parse_ts(row["completed_at"]),
        archived_at=parse_ts(row["archived_at"]),
    )


def _row_to_transition(row: sqlite3.Row) -> Transition:
    return Transition(
        id=row["id"],
        ticket_id=row["ticket_id"],
        from_state=TicketState(row["from_state"]) if row["from_state"] else None,
        to_state=TicketState(row["to_state"]),
        reason=row["reason"],
        created_at=parse_ts(row["created_at"]),
    )
