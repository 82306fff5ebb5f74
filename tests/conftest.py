"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from helpers import FakeClock, FixedGate, InlineExecutor, ScriptedAgent
from ticket_orchestrator.config import Config
from ticket_orchestrator.core.audit import MemoryAuditSink
from ticket_orchestrator.core.escalations import EscalationStore
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.orchestrator import Orchestrator
from ticket_orchestrator.core.tickets import TicketStore
from ticket_orchestrator.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        database = init_db(Path(tmp) / "test.db")
        yield database
        database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def store(db, clock, audit):
    return TicketStore(db, clock=clock, sinks=[audit])


@pytest.fixture
def locks(db, clock):
    return LockManager(db, clock=clock, default_timeout=600)


@pytest.fixture
def escalations(db, clock):
    return EscalationStore(db, clock=clock)


@pytest.fixture
def make_orchestrator(db, clock, audit):
    """Build orchestrators that run workers inline with no backoff delay."""
    created = []

    def factory(agent=None, gate=None, *, executor=None, triggers=None, responder=None, **config_kw):
        config_kw.setdefault("backoff_base", 0.0)
        config_kw.setdefault("backoff_cap", 0.0)
        config_kw.setdefault("command_timeout", 30.0)
        orchestrator = Orchestrator(
            db,
            agent or ScriptedAgent(),
            gate or FixedGate(),
            Config(**config_kw),
            triggers=triggers,
            audit_sinks=[audit],
            responder=responder,
            executor=executor or InlineExecutor(),
            clock=clock,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown(wait=False)
