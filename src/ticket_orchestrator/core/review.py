"""Review queue: completed work ranked for human review."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from ticket_orchestrator.core.tickets import TicketStore
from ticket_orchestrator.db.models import Ticket, TicketState, Transition


@dataclass
class ReviewItem:
    ticket: Ticket
    transitions: list[Transition] = field(default_factory=list)


def review_key(ticket: Ticket) -> tuple:
    """Security-flagged first, then best score, priority, completion time and id."""
    score = ticket.quality_score
    return (
        not ticket.security_flagged,
        score is None,
        -(score or 0.0),
        ticket.priority.rank,
        ticket.completed_at or datetime.max,
        ticket.id,
    )


def build(tickets: Iterable[Ticket]) -> list[Ticket]:
    """Order tickets for review. Input order never affects the result."""
    return sorted(tickets, key=review_key)


def failure_report(store: TicketStore) -> list[ReviewItem]:
    """Every failed or skipped ticket with its transition log."""
    tickets = store.list_tickets(TicketState.FAILED) + store.list_tickets(TicketState.SKIPPED)
    tickets.sort(key=lambda t: (t.completed_at or datetime.max, t.id))
    return [ReviewItem(t, store.transitions(t.id)) for t in tickets]


def consume(store: TicketStore) -> list[ReviewItem]:
    """Take the current review queue and archive the tickets in it."""
    queue = build(store.list_tickets(TicketState.COMPLETED))
    items = [ReviewItem(t, store.transitions(t.id)) for t in queue]
    store.archive(t.id for t in queue)
    return items
