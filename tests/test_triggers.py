"""Tests for escalation trigger detection."""

import pytest

from helpers import make_ticket
from ticket_orchestrator.config import Config
from ticket_orchestrator.core.triggers import (
    TriggerContext,
    TriggerRegistry,
    keyword_predicate,
    path_predicate,
)
from ticket_orchestrator.db.models import TicketState, TriggerType


def _context(ticket, state=TicketState.PLANNING, output=""):
    return TriggerContext(ticket=ticket, state=state, output=output)


class TestPredicates:
    def test_keyword_in_description(self):
        predicate = keyword_predicate(["breaking change"])
        ticket = make_ticket("T1", description="This is a Breaking Change for clients")
        assert predicate(_context(ticket)) == "matched 'breaking change' entering planning"

    def test_keyword_in_output(self):
        predicate = keyword_predicate(["unclear"])
        ticket = make_ticket("T1")
        assert predicate(_context(ticket)) is None
        assert predicate(_context(ticket, output="Requirements unclear")) is not None

    def test_keyword_ignores_output_when_asked(self):
        predicate = keyword_predicate(["unclear"], include_output=False)
        assert predicate(_context(make_ticket("T1"), output="unclear")) is None

    def test_path_glob(self):
        predicate = path_predicate(["*/migrations/*"])
        ticket = make_ticket("T1", estimated_files={"app/migrations/0002_users.py"})
        assert "app/migrations/0002_users.py" in predicate(_context(ticket))

    def test_top_level_directory_matches(self):
        predicate = path_predicate(["*/secrets/*"])
        ticket = make_ticket("T1", estimated_files={"secrets/prod.yaml"})
        assert predicate(_context(ticket)) is not None

    def test_path_no_match(self):
        predicate = path_predicate(["*.sql"])
        assert predicate(_context(make_ticket("T1", estimated_files={"app.py"}))) is None


class TestRegistry:
    def test_no_predicates_never_escalates(self):
        assert TriggerRegistry().detect(_context(make_ticket("T1"))) is None

    def test_category_order(self):
        registry = TriggerRegistry()
        registry.register(TriggerType.AMBIGUITY, lambda ctx: "vague")
        registry.register(TriggerType.SECURITY, lambda ctx: "touches auth")
        assert registry.detect(_context(make_ticket("T1"))) == (TriggerType.SECURITY, "touches auth")
        assert registry.categories() == [TriggerType.SECURITY, TriggerType.AMBIGUITY]

    def test_waived_category_skipped(self):
        registry = TriggerRegistry()
        registry.register(TriggerType.SECURITY, lambda ctx: "touches auth")
        registry.register(TriggerType.AMBIGUITY, lambda ctx: "vague")
        match = registry.detect(_context(make_ticket("T1")), waived={TriggerType.SECURITY})
        assert match == (TriggerType.AMBIGUITY, "vague")

    def test_repeated_failure_cannot_be_registered(self):
        with pytest.raises(ValueError):
            TriggerRegistry().register(TriggerType.REPEATED_FAILURE, lambda ctx: "x")

    def test_from_config_defaults(self):
        registry = TriggerRegistry.from_config(Config())
        data = make_ticket("T1", estimated_files={"db/migrations/0003.py"})
        assert registry.detect(_context(data))[0] == TriggerType.DATA

        security = make_ticket("T2", estimated_files={"deploy/server.pem"})
        assert registry.detect(_context(security))[0] == TriggerType.SECURITY

        plain = make_ticket("T3", title="Fix typo in footer", estimated_files={"web/footer.html"})
        assert registry.detect(_context(plain)) is None

    def test_from_config_custom_paths(self):
        registry = TriggerRegistry.from_config(Config(data_paths=("warehouse/*",)))
        ticket = make_ticket("T1", estimated_files={"warehouse/orders.py"})
        assert registry.detect(_context(ticket))[0] == TriggerType.DATA
