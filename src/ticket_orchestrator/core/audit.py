"""Audit sinks for ticket transition entries.

The ticket store keeps every transition in ``ticket_transitions``; sinks get a
copy of each committed entry for storage elsewhere.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from ticket_orchestrator.db.engine import format_ts
from ticket_orchestrator.db.models import Transition

audit_logger = logging.getLogger("ticket_orchestrator.audit")


class AuditSink(Protocol):
    def emit(self, entry: Transition) -> None: ...


def transition_dict(entry: Transition) -> dict:
    return {
        "id": entry.id,
        "ticket_id": entry.ticket_id,
        "from_state": entry.from_state.value if entry.from_state else None,
        "to_state": entry.to_state.value,
        "reason": entry.reason,
        "created_at": format_ts(entry.created_at),
    }


class LoggingAuditSink:
    """Writes transitions to the ``ticket_orchestrator.audit`` logger."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or audit_logger

    def emit(self, entry: Transition) -> None:
        self.logger.info(
            "%s: %s -> %s (%s)",
            entry.ticket_id,
            entry.from_state.value if entry.from_state else "-",
            entry.to_state.value,
            entry.reason,
            extra={"args_data": transition_dict(entry)},
        )


class JsonlAuditSink:
    """Appends one JSON object per transition to a file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, entry: Transition) -> None:
        line = json.dumps(transition_dict(entry))
        with self._lock:
            with open(self.path, "a") as f:
                f.write(line + "\n")


class MemoryAuditSink:
    """Keeps transitions in a list."""

    def __init__(self):
        self.entries: list[Transition] = []
        self._lock = threading.Lock()

    def emit(self, entry: Transition) -> None:
        with self._lock:
            self.entries.append(entry)
