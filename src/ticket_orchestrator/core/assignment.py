"""Assignment policy: pick the next ticket an idle worker can lock."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from ticket_orchestrator.config import LOCK_MODES
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.tickets import TicketStore
from ticket_orchestrator.db.models import Lease, LockConflict, Ticket

logger = logging.getLogger(__name__)

REPOSITORY_KEY = "*"


@dataclass
class Assignment:
    ticket: Ticket
    lease: Lease


class AssignmentPolicy:
    """Work-conserving, priority-ordered assignment under file locks.

    ``lock_mode`` sets lock granularity: ``file`` locks each ticket's
    estimated files, ``repository`` locks the whole repository (one ticket at
    a time), ``none`` takes no locks at all (queue-only).
    """

    def __init__(
        self,
        store: TicketStore,
        locks: LockManager,
        lock_timeout: float | None = None,
        lock_mode: str = "file",
    ):
        if lock_mode not in LOCK_MODES:
            raise ValueError(f"Unknown lock mode: {lock_mode}")
        self.store = store
        self.locks = locks
        self.lock_timeout = lock_timeout
        self.lock_mode = lock_mode

    def lock_keys(self, ticket: Ticket) -> set[str]:
        if self.lock_mode == "repository":
            return {REPOSITORY_KEY}
        if self.lock_mode == "none":
            return set()
        return set(ticket.estimated_files)

    def next_for(
        self,
        worker_id: str,
        candidates: Iterable[Ticket],
        now: datetime | None = None,
    ) -> Assignment | None:
        """Assign the first candidate whose locks can be taken.

        Candidates that cannot be locked stay queued for the next tick.
        Returns None when nothing could be assigned.
        """
        for ticket in candidates:
            result = self.locks.try_acquire(
                self.lock_keys(ticket), worker_id, now=now, timeout=self.lock_timeout
            )
            if isinstance(result, LockConflict):
                logger.debug(
                    "Ticket '%s' deferred: %s locked", ticket.id, ", ".join(sorted(result.resource_keys))
                )
                continue

            claimed = self.store.claim(ticket.id, worker_id)
            if claimed is None:
                # Changed state since the candidate pass started.
                self.locks.release(result.token)
                continue

            logger.info("Assigned ticket '%s' to %s", claimed.id, worker_id)
            return Assignment(ticket=claimed, lease=result)
        return None
