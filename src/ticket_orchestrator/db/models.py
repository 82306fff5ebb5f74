"""Data models for the ticket orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, 0 is the most urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class Complexity(str, Enum):
    TRIVIAL = "trivial"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class TicketState(str, Enum):
    QUEUED = "queued"
    ASSIGNED = "assigned"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    GATE_CHECK = "gate-check"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TicketState.COMPLETED, TicketState.FAILED, TicketState.SKIPPED)

    @property
    def is_in_progress(self) -> bool:
        return self in (TicketState.PLANNING, TicketState.IMPLEMENTING, TicketState.GATE_CHECK)

    @property
    def is_active(self) -> bool:
        """Held by a worker: assigned or in progress."""
        return self == TicketState.ASSIGNED or self.is_in_progress


class TriggerType(str, Enum):
    ARCHITECTURE = "architecture"
    SECURITY = "security"
    DATA = "data"
    BREAKING_CHANGE = "breaking_change"
    AMBIGUITY = "ambiguity"
    REPEATED_FAILURE = "repeated_failure"


class Resolution(str, Enum):
    APPROVED_CONTINUE = "approved-continue"
    REJECTED = "rejected"


class SlotStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


@dataclass
class Ticket:
    id: str
    title: str = ""
    description: str = ""
    priority: Priority = Priority.MEDIUM
    complexity: Complexity = Complexity.SMALL
    estimated_files: set[str] = field(default_factory=set)
    dependencies: set[str] = field(default_factory=set)
    state: TicketState = TicketState.QUEUED
    assigned_worker: str | None = None
    attempt_count: int = 0
    quality_score: float | None = None
    security_flagged: bool = False
    context: str = ""
    enqueue_order: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    archived_at: datetime | None = None


@dataclass
class Transition:
    id: int | None = None
    ticket_id: str = ""
    from_state: TicketState | None = None
    to_state: TicketState = TicketState.QUEUED
    reason: str = ""
    created_at: datetime | None = None


@dataclass(frozen=True)
class Lease:
    token: str
    holder: str
    resource_keys: frozenset[str]
    acquired_at: datetime
    expires_at: datetime


@dataclass
class LockConflict:
    resource_keys: frozenset[str]
    holders: dict[str, str] = field(default_factory=dict)


@dataclass
class LockRecord:
    resource_key: str
    holder: str
    token: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class WorkerSlot:
    id: str
    status: SlotStatus = SlotStatus.IDLE
    current_ticket: str | None = None
    last_progress_at: datetime | None = None


@dataclass
class EscalationRecord:
    id: int | None = None
    ticket_id: str = ""
    trigger_type: TriggerType = TriggerType.AMBIGUITY
    context: str = ""
    raised_at: datetime | None = None
    resolution: Resolution | None = None
    note: str = ""
    resolved_at: datetime | None = None
    notified_at: datetime | None = None
    applied_at: datetime | None = None


@dataclass(frozen=True)
class GateResult:
    quality_score: float
    security_flagged: bool = False
    passed: bool = True
