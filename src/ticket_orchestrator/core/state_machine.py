"""Ticket lifecycle topology.

Maps each state to the states a ticket may move to next. Self-transitions are
listed explicitly where they carry meaning: a retry re-enters ``planning`` or
``implementing``, and large tickets run a second, strict ``gate-check``.
Moving an in-flight ticket back to ``queued`` is the worker-lost recovery path.
"""

import logging

from ticket_orchestrator.db.models import TicketState

logger = logging.getLogger(__name__)

_S = TicketState

TRANSITIONS: dict[TicketState, frozenset[TicketState]] = {
    _S.QUEUED: frozenset({_S.ASSIGNED, _S.SKIPPED}),
    _S.ASSIGNED: frozenset({_S.PLANNING, _S.IMPLEMENTING, _S.ESCALATED, _S.QUEUED, _S.SKIPPED}),
    _S.PLANNING: frozenset({
        _S.PLANNING, _S.IMPLEMENTING, _S.ESCALATED, _S.FAILED, _S.QUEUED, _S.SKIPPED,
    }),
    _S.IMPLEMENTING: frozenset({
        _S.IMPLEMENTING, _S.GATE_CHECK, _S.ESCALATED, _S.FAILED, _S.QUEUED, _S.SKIPPED,
    }),
    _S.GATE_CHECK: frozenset({
        _S.GATE_CHECK, _S.IMPLEMENTING, _S.COMPLETED, _S.ESCALATED, _S.FAILED,
        _S.QUEUED, _S.SKIPPED,
    }),
    _S.ESCALATED: frozenset({_S.QUEUED, _S.FAILED, _S.SKIPPED}),
    _S.COMPLETED: frozenset(),
    _S.FAILED: frozenset(),
    _S.SKIPPED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a state change is not allowed by the lifecycle topology."""

    def __init__(
        self,
        message: str,
        current_state: TicketState,
        requested_state: TicketState,
        allowed: frozenset[TicketState],
    ):
        super().__init__(message)
        self.current_state = current_state
        self.requested_state = requested_state
        self.allowed = allowed


def is_transition_valid(current: TicketState, new: TicketState) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def allowed_transitions(current: TicketState) -> list[TicketState]:
    """Allowed next states, in declaration order of ``TicketState``."""
    allowed = TRANSITIONS.get(current, frozenset())
    return [s for s in TicketState if s in allowed]


def validate_transition(current: TicketState, new: TicketState) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is allowed."""
    if is_transition_valid(current, new):
        return

    allowed = TRANSITIONS.get(current, frozenset())
    if current.is_terminal:
        message = (
            f"Invalid transition: {current.value} -> {new.value}. "
            f"'{current.value}' is terminal and cannot change."
        )
    else:
        names = ", ".join(s.value for s in allowed_transitions(current))
        message = (
            f"Invalid transition: {current.value} -> {new.value}. "
            f"From {current.value} a ticket can only move to: {names}."
        )
    logger.warning("Blocked transition: %s", message)
    raise InvalidTransitionError(message, current, new, allowed)
