"""MCP server exposing ticket orchestrator tools."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from ticket_orchestrator.config import Config, get_config
from ticket_orchestrator.core import review as review_mod
from ticket_orchestrator.core.escalations import EscalationStore, parse_decision
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.orchestrator import (
    Orchestrator,
    OrchestratorLoop,
    cancel_ticket as cancel_ticket_op,
    create_orchestrator,
)
from ticket_orchestrator.core.state_machine import InvalidTransitionError
from ticket_orchestrator.core.tickets import TicketStore, ticket_from_dict
from ticket_orchestrator.db.engine import Database, init_db
from ticket_orchestrator.db.models import TicketState
from ticket_orchestrator.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    db: Database
    config: Config
    store: TicketStore
    escalations: EscalationStore
    locks: LockManager
    orchestrator: Orchestrator | None = None
    loop: OrchestratorLoop | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and, when commands are configured, start the scheduler loop."""
    config = get_config()
    if config.log_dir:
        setup_logging(config.log_dir)
    db = init_db(config.db_path)

    orchestrator = None
    loop = None
    if config.agent_command and config.gate_command:
        orchestrator = create_orchestrator(db, config)
        loop = OrchestratorLoop(orchestrator)
        loop.start()
    else:
        logger.info("Agent or gate command not configured; scheduler loop not started")

    try:
        yield AppContext(
            db=db,
            config=config,
            store=orchestrator.store if orchestrator else TicketStore(db),
            escalations=orchestrator.escalations if orchestrator else EscalationStore(db),
            locks=orchestrator.locks if orchestrator else LockManager(db, default_timeout=config.lock_timeout),
            orchestrator=orchestrator,
            loop=loop,
        )
    finally:
        if loop:
            loop.stop()
        if orchestrator:
            orchestrator.shutdown(wait=False)
        db.close()


mcp = FastMCP("ticket-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Ticket Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def enqueue_ticket(
    ctx: Context,
    title: str,
    ticket_id: str | None = None,
    description: str = "",
    priority: str = "medium",
    complexity: str = "small",
    estimated_files: list[str] | None = None,
    dependencies: list[str] | None = None,
) -> dict:
    """Queue a ticket. Priority: high, medium, low. Complexity: trivial, small, medium, large."""
    app = _ctx(ctx)
    try:
        ticket = app.store.enqueue(ticket_from_dict({
            "id": ticket_id,
            "title": title,
            "description": description,
            "priority": priority,
            "complexity": complexity,
            "estimated_files": estimated_files,
            "dependencies": dependencies,
        }))
    except ValueError as e:
        return {"error": str(e)}
    return _ticket_to_dict(ticket)


@mcp.tool()
def enqueue_tickets(ctx: Context, tickets: list[dict]) -> dict:
    """Queue a batch of tickets atomically: all are queued, or none when any is invalid."""
    app = _ctx(ctx)
    try:
        queued = app.store.enqueue_many([ticket_from_dict(t) for t in tickets])
    except ValueError as e:
        return {"error": str(e)}
    return {"queued": [t.id for t in queued]}


@mcp.tool()
def list_tickets(ctx: Context, state: str | None = None) -> list[dict] | dict:
    """List tickets in scheduling order, optionally filtered by state."""
    app = _ctx(ctx)
    try:
        filter_state = TicketState(state) if state else None
    except ValueError:
        valid = ", ".join(s.value for s in TicketState)
        return {"error": f"Unknown state: {state}. Use one of: {valid}"}
    tickets = app.store.list_tickets(filter_state)
    return [_ticket_to_dict(t) for t in tickets]


@mcp.tool()
def get_ticket(ctx: Context, ticket_id: str) -> dict:
    """Get a ticket with its full transition log."""
    app = _ctx(ctx)
    ticket = app.store.get(ticket_id)
    if not ticket:
        return {"error": f"Ticket not found: {ticket_id}"}
    d = _ticket_to_dict(ticket)
    d["transitions"] = [
        f"{t.created_at.isoformat()} {t.from_state.value if t.from_state else '-'} -> "
        f"{t.to_state.value}: {t.reason}"
        for t in app.store.transitions(ticket_id)
    ]
    return d


@mcp.tool()
def cancel_ticket(ctx: Context, ticket_id: str, reason: str = "cancelled") -> dict:
    """Cancel a ticket from any non-terminal state. Its file locks are released at once."""
    app = _ctx(ctx)
    try:
        if app.orchestrator:
            ticket = app.orchestrator.cancel(ticket_id, reason)
        else:
            ticket = cancel_ticket_op(app.store, app.locks, ticket_id, reason)
    except (ValueError, InvalidTransitionError) as e:
        return {"error": str(e)}
    return _ticket_to_dict(ticket)


@mcp.tool()
def blocked_tickets(ctx: Context) -> list[dict]:
    """Queued tickets still waiting on dependencies."""
    app = _ctx(ctx)
    return [_ticket_to_dict(t) for t in app.store.blocked()]


@mcp.tool()
def ticket_summary(ctx: Context) -> dict:
    """Ticket counts per state."""
    return _ctx(ctx).store.summary()


# ── Escalation Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def list_escalations(ctx: Context, open_only: bool = True) -> list[dict]:
    """List escalations, by default only those awaiting a decision."""
    app = _ctx(ctx)
    return [_escalation_to_dict(e) for e in app.escalations.list_escalations(open_only=open_only)]


@mcp.tool()
def resolve_escalation(ctx: Context, escalation_id: int, decision: str, note: str = "") -> dict:
    """Resolve an escalation. Decision: approve (re-queue the ticket) or reject (fail it)."""
    app = _ctx(ctx)
    try:
        record = app.escalations.resolve(escalation_id, parse_decision(decision), note)
    except ValueError as e:
        return {"error": str(e)}
    return _escalation_to_dict(record)


# ── Review Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def review_queue(ctx: Context) -> list[dict]:
    """Completed tickets ranked for review: security-flagged first, then by quality score."""
    app = _ctx(ctx)
    return [_ticket_to_dict(t) for t in review_mod.build(app.store.list_tickets(TicketState.COMPLETED))]


@mcp.tool()
def failure_report(ctx: Context) -> list[dict]:
    """Failed and skipped tickets with the reason they ended there."""
    app = _ctx(ctx)
    result = []
    for item in review_mod.failure_report(app.store):
        d = _ticket_to_dict(item.ticket)
        last = item.transitions[-1] if item.transitions else None
        d["reason"] = last.reason if last else ""
        result.append(d)
    return result


# ── Scheduler Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def list_locks(ctx: Context) -> list[dict]:
    """Active file locks and who holds them."""
    app = _ctx(ctx)
    return [
        {"resource_key": lock.resource_key, "holder": lock.holder, "expires_at": lock.expires_at.isoformat()}
        for lock in app.locks.active_locks()
    ]


@mcp.tool()
def run_tick(ctx: Context) -> dict:
    """Run one scheduling tick now instead of waiting for the loop."""
    app = _ctx(ctx)
    if not app.orchestrator:
        return {"error": "Scheduler not running: set TIX_AGENT_COMMAND and TIX_GATE_COMMAND"}
    report = app.orchestrator.run()
    return {
        "assigned": report.assigned,
        "reaped": report.reaped,
        "recovered": report.recovered,
        "skipped": report.skipped,
        "applied_escalations": report.applied,
    }


# ── Helpers ───────────────────────────────────────────────────────────────────


def _ticket_to_dict(ticket) -> dict:
    d = {
        "id": ticket.id,
        "title": ticket.title,
        "state": ticket.state.value,
        "priority": ticket.priority.value,
        "complexity": ticket.complexity.value,
        "attempts": ticket.attempt_count,
    }
    if ticket.description:
        d["description"] = ticket.description
    if ticket.estimated_files:
        d["estimated_files"] = sorted(ticket.estimated_files)
    if ticket.dependencies:
        d["dependencies"] = sorted(ticket.dependencies)
    if ticket.assigned_worker:
        d["assigned_worker"] = ticket.assigned_worker
    if ticket.quality_score is not None:
        d["quality_score"] = ticket.quality_score
    if ticket.security_flagged:
        d["security_flagged"] = True
    if ticket.context:
        d["context"] = ticket.context
    return d


def _escalation_to_dict(record) -> dict:
    d = {
        "id": record.id,
        "ticket_id": record.ticket_id,
        "trigger_type": record.trigger_type.value,
        "context": record.context,
        "raised_at": record.raised_at.isoformat() if record.raised_at else None,
    }
    if record.resolution:
        d["resolution"] = record.resolution.value
        d["note"] = record.note
    return d


