"""Escalation records: raised by workers, resolved by humans."""

import sqlite3
from collections.abc import Callable
from datetime import datetime

from ticket_orchestrator.db.engine import Database, format_ts, parse_ts
from ticket_orchestrator.db.models import EscalationRecord, Resolution, TriggerType


class EscalationStore:
    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.clock = clock

    def record(self, ticket_id: str, trigger_type: TriggerType, context: str) -> EscalationRecord:
        """Open a new escalation for a ticket."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO escalations (ticket_id, trigger_type, context, raised_at)
                   VALUES (?, ?, ?, ?)""",
                (ticket_id, TriggerType(trigger_type).value, context, format_ts(self.clock())),
            )
            return self._load(conn, cur.lastrowid)

    def get(self, escalation_id: int) -> EscalationRecord | None:
        with self.db.reading() as conn:
            return self._load(conn, escalation_id)

    def is_open(self, escalation_id: int) -> bool:
        """True while the escalation exists and has no resolution."""
        record = self.get(escalation_id)
        return record is not None and record.resolution is None

    def list_escalations(
        self,
        open_only: bool = False,
        ticket_id: str | None = None,
    ) -> list[EscalationRecord]:
        """List escalations, oldest first."""
        query = "SELECT * FROM escalations WHERE 1=1"
        params: list = []
        if open_only:
            query += " AND resolution IS NULL"
        if ticket_id is not None:
            query += " AND ticket_id = ?"
            params.append(ticket_id)
        query += " ORDER BY id"
        return [_row_to_escalation(r) for r in self.db.query(query, params)]

    def resolve(
        self,
        escalation_id: int,
        resolution: Resolution,
        note: str = "",
    ) -> EscalationRecord:
        """Record a human decision. The orchestrator applies it on its next tick."""
        resolution = Resolution(resolution)
        with self.db.transaction() as conn:
            record = self._load(conn, escalation_id)
            if record is None:
                raise ValueError(f"Escalation not found: {escalation_id}")
            if record.resolution is not None:
                raise ValueError(
                    f"Escalation {escalation_id} is already resolved ({record.resolution.value})"
                )
            conn.execute(
                "UPDATE escalations SET resolution = ?, note = ?, resolved_at = ? WHERE id = ?",
                (resolution.value, note, format_ts(self.clock()), escalation_id),
            )
            return self._load(conn, escalation_id)

    def pending_resolutions(self) -> list[EscalationRecord]:
        """Resolved escalations the orchestrator has not acted on yet."""
        rows = self.db.query(
            "SELECT * FROM escalations WHERE resolution IS NOT NULL AND applied_at IS NULL ORDER BY id"
        )
        return [_row_to_escalation(r) for r in rows]

    def unnotified(self) -> list[EscalationRecord]:
        rows = self.db.query("SELECT * FROM escalations WHERE notified_at IS NULL ORDER BY id")
        return [_row_to_escalation(r) for r in rows]

    def mark_notified(self, escalation_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE escalations SET notified_at = ? WHERE id = ?",
                (format_ts(self.clock()), escalation_id),
            )

    def mark_applied(self, escalation_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE escalations SET applied_at = ? WHERE id = ?",
                (format_ts(self.clock()), escalation_id),
            )

    def waived_triggers(self, ticket_id: str) -> set[TriggerType]:
        """Trigger categories a human already approved for this ticket."""
        rows = self.db.query(
            """SELECT DISTINCT trigger_type FROM escalations
               WHERE ticket_id = ? AND resolution = ? AND trigger_type != ?""",
            (ticket_id, Resolution.APPROVED_CONTINUE.value, TriggerType.REPEATED_FAILURE.value),
        )
        return {TriggerType(r["trigger_type"]) for r in rows}

    def _load(self, conn: sqlite3.Connection, escalation_id: int) -> EscalationRecord | None:
        row = conn.execute("SELECT * FROM escalations WHERE id = ?", (escalation_id,)).fetchone()
        if not row:
            return None
        return _row_to_escalation(row)


def _row_to_escalation(row: sqlite3.Row) -> EscalationRecord:
    return EscalationRecord(
        id=row["id"],
        ticket_id=row["ticket_id"],
        trigger_type=TriggerType(row["trigger_type"]),
        context=row["context"],
        raised_at=parse_ts(row["raised_at"]),
        resolution=Resolution(row["resolution"]) if row["resolution"] else None,
        note=row["note"],
        resolved_at=parse_ts(row["resolved_at"]),
        notified_at=parse_ts(row["notified_at"]),
        applied_at=parse_ts(row["applied_at"]),
    )


def parse_decision(decision: str) -> Resolution:
    """Accept ``approve`` / ``reject`` as well as the stored resolution values."""
    aliases = {"approve": Resolution.APPROVED_CONTINUE, "reject": Resolution.REJECTED}
    value = decision.strip().lower()
    if value in aliases:
        return aliases[value]
    try:
        return Resolution(value)
    except ValueError:
        raise ValueError(f"Unknown decision: {decision}. Use approve or reject.") from None
