"""Tests for the review queue."""

import itertools
from datetime import datetime, timedelta

from helpers import make_ticket
from ticket_orchestrator.core import review
from ticket_orchestrator.db.models import Priority, TicketState

T0 = datetime(2026, 3, 2, 12, 0, 0)


def _completed(ticket_id, score=None, flagged=False, minutes=0, **kwargs):
    return make_ticket(
        ticket_id,
        state=TicketState.COMPLETED,
        quality_score=score,
        security_flagged=flagged,
        completed_at=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


class TestBuild:
    def test_flagged_first_despite_lower_score(self):
        t1 = _completed("T1", score=70, flagged=True)
        t2 = _completed("T2", score=95)
        assert [t.id for t in review.build([t2, t1])] == ["T1", "T2"]

    def test_score_then_priority_then_time(self):
        tickets = [
            _completed("low-score", score=60),
            _completed("late", score=90, minutes=5),
            _completed("early", score=90, minutes=1),
            _completed("urgent", score=90, minutes=9, priority=Priority.HIGH),
            _completed("unscored"),
        ]
        assert [t.id for t in review.build(tickets)] == [
            "urgent", "early", "late", "low-score", "unscored",
        ]

    def test_input_order_never_matters(self):
        tickets = [
            _completed("A", score=80, flagged=True),
            _completed("B", score=80),
            _completed("C", score=80),
            _completed("D", score=99, flagged=True),
        ]
        expected = [t.id for t in review.build(tickets)]
        for perm in itertools.permutations(tickets):
            assert [t.id for t in review.build(perm)] == expected
        assert expected == ["D", "A", "B", "C"]

    def test_empty(self):
        assert review.build([]) == []


def _finish(store, ticket_id, state, **fields):
    store.claim(ticket_id, "w1")
    store.mark(ticket_id, TicketState.IMPLEMENTING)
    store.mark(ticket_id, TicketState.GATE_CHECK)
    store.mark(ticket_id, state, "done", **fields)


class TestStoreViews:
    def test_failure_report_includes_transitions(self, store, clock):
        store.enqueue_many([make_ticket("A"), make_ticket("B", dependencies={"A"}), make_ticket("C")])
        _finish(store, "A", TicketState.FAILED)
        clock.advance(10)
        store.propagate_skips()
        _finish(store, "C", TicketState.COMPLETED, quality_score=88)

        items = review.failure_report(store)
        assert [item.ticket.id for item in items] == ["A", "B"]
        assert items[0].transitions[-1].to_state == TicketState.FAILED
        assert items[1].transitions[-1].reason == "dependency A failed"

    def test_consume_archives(self, store):
        store.enqueue_many([make_ticket("A"), make_ticket("B"), make_ticket("C")])
        _finish(store, "A", TicketState.COMPLETED, quality_score=70)
        _finish(store, "B", TicketState.COMPLETED, quality_score=95)

        items = review.consume(store)
        assert [item.ticket.id for item in items] == ["B", "A"]
        assert items[0].transitions[0].to_state == TicketState.QUEUED
        assert [t.id for t in store.list_tickets()] == ["C"]
        assert review.consume(store) == []
