"""Tests for the web dashboard API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from helpers import make_ticket
from ticket_orchestrator.core.escalations import EscalationStore
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.tickets import TicketStore
from ticket_orchestrator.db.engine import init_db
from ticket_orchestrator.db.models import Priority, TicketState, TriggerType
from ticket_orchestrator.web.app import create_app


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"TIX_DB_PATH": str(db_path), "TIX_REPO_PATH": tmp}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        store = TicketStore(db)
        store.enqueue_many([
            make_ticket("setup-db", title="Setup database", priority=Priority.HIGH),
            make_ticket("build-api", title="Build API", dependencies={"setup-db"},
                        estimated_files={"api/routes.py"}),
            make_ticket("rotate-keys", title="Rotate keys"),
            make_ticket("write-docs", title="Write docs"),
        ])
        store.claim("setup-db", "worker-1-abc")
        store.mark("setup-db", TicketState.IMPLEMENTING)
        store.mark("setup-db", TicketState.GATE_CHECK)
        store.mark("setup-db", TicketState.COMPLETED, "gate passed (91)", quality_score=91.0)
        store.claim("rotate-keys", "worker-2-def")
        store.mark("rotate-keys", TicketState.ESCALATED, "security: touches secrets")
        EscalationStore(db).record("rotate-keys", TriggerType.SECURITY, "touches secrets")
        store.mark("write-docs", TicketState.SKIPPED, "out of scope")
        LockManager(db).try_acquire({"api/routes.py"}, "worker-1-xyz")
        db.close()

        app = create_app()
        client = TestClient(app)
        yield client

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestDashboardPage:
    def test_index_returns_html(self, web_env):
        resp = web_env.get("/")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert "Ticket Orchestrator" in resp.text


class TestTicketsAPI:
    def test_list_tickets(self, web_env):
        resp = web_env.get("/api/tickets")
        assert resp.status_code == 200
        ids = [t["id"] for t in resp.json()]
        assert set(ids) == {"setup-db", "build-api", "rotate-keys", "write-docs"}

    def test_filter_by_state(self, web_env):
        resp = web_env.get("/api/tickets?state=completed")
        data = resp.json()
        assert [t["id"] for t in data] == ["setup-db"]
        assert data[0]["quality_score"] == 91.0

    def test_bad_state(self, web_env):
        resp = web_env.get("/api/tickets?state=done")
        assert resp.status_code == 400

    def test_get_ticket(self, web_env):
        resp = web_env.get("/api/tickets/rotate-keys")
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "escalated"
        assert [t["to_state"] for t in data["transitions"]] == ["queued", "assigned", "escalated"]
        assert data["escalations"][0]["trigger_type"] == "security"

    def test_get_nonexistent_ticket(self, web_env):
        resp = web_env.get("/api/tickets/nope")
        assert resp.status_code == 404


class TestSummaryAPI:
    def test_summary(self, web_env):
        resp = web_env.get("/api/summary")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 4
        assert data["counts"]["completed"] == 1
        assert data["counts"]["escalated"] == 1
        assert data["progress_pct"] == 50.0
        assert data["blocked"] == 0
        assert data["slots"] == []


class TestLocksAPI:
    def test_locks(self, web_env):
        resp = web_env.get("/api/locks")
        data = resp.json()
        assert [(lock["resource_key"], lock["holder"]) for lock in data] == [
            ("api/routes.py", "worker-1-xyz"),
        ]


class TestEscalationsAPI:
    def test_open_escalations(self, web_env):
        resp = web_env.get("/api/escalations?open=1")
        data = resp.json()
        assert len(data) == 1
        assert data[0]["ticket_id"] == "rotate-keys"
        assert data[0]["resolution"] is None


class TestReviewAPI:
    def test_review(self, web_env):
        data = web_env.get("/api/review").json()
        assert [t["id"] for t in data["queue"]] == ["setup-db"]
        assert [t["id"] for t in data["failures"]] == ["write-docs"]
        assert data["failures"][0]["transitions"][-1]["reason"] == "out of scope"
