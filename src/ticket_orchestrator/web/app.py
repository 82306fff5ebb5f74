"""Web dashboard API for the ticket orchestrator."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from ticket_orchestrator.config import get_config
from ticket_orchestrator.core import review as review_mod
from ticket_orchestrator.core.escalations import EscalationStore
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.orchestrator import list_worker_slots
from ticket_orchestrator.core.tickets import TicketStore
from ticket_orchestrator.db.engine import init_db
from ticket_orchestrator.db.models import TicketState
from ticket_orchestrator.web.dashboard import get_dashboard_html


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_tickets(request: Request):
    state = request.query_params.get("state")
    db = _get_db()
    try:
        try:
            state_filter = TicketState(state) if state else None
        except ValueError:
            return JSONResponse({"error": f"Unknown state: {state}"}, status_code=400)
        tickets = TicketStore(db).list_tickets(state_filter)
        return JSONResponse([_ticket_dict(t) for t in tickets])
    finally:
        db.close()


async def api_get_ticket(request: Request):
    ticket_id = request.path_params["ticket_id"]
    db = _get_db()
    try:
        store = TicketStore(db)
        ticket = store.get(ticket_id)
        if not ticket:
            return JSONResponse({"error": "Ticket not found"}, status_code=404)
        td = _ticket_dict(ticket)
        td["transitions"] = [_transition_dict(t) for t in store.transitions(ticket_id)]
        td["escalations"] = [
            _escalation_dict(e) for e in EscalationStore(db).list_escalations(ticket_id=ticket_id)
        ]
        return JSONResponse(td)
    finally:
        db.close()


async def api_summary(request: Request):
    db = _get_db()
    try:
        store = TicketStore(db)
        counts = store.summary()
        total = sum(counts.values())
        done = counts["completed"] + counts["failed"] + counts["skipped"]
        return JSONResponse({
            "counts": counts,
            "total": total,
            "blocked": len(store.blocked()),
            "progress_pct": round(done / total * 100, 1) if total else 0,
            "slots": [_slot_dict(s) for s in list_worker_slots(db)],
        })
    finally:
        db.close()


async def api_locks(request: Request):
    db = _get_db()
    try:
        locks = LockManager(db).active_locks()
        return JSONResponse([
            {
                "resource_key": lock.resource_key,
                "holder": lock.holder,
                "acquired_at": lock.acquired_at.isoformat(),
                "expires_at": lock.expires_at.isoformat(),
            }
            for lock in locks
        ])
    finally:
        db.close()


async def api_escalations(request: Request):
    open_only = request.query_params.get("open") in ("1", "true", "yes")
    db = _get_db()
    try:
        records = EscalationStore(db).list_escalations(open_only=open_only)
        return JSONResponse([_escalation_dict(e) for e in records])
    finally:
        db.close()


async def api_review(request: Request):
    db = _get_db()
    try:
        store = TicketStore(db)
        queue = review_mod.build(store.list_tickets(TicketState.COMPLETED))
        failures = review_mod.failure_report(store)
        return JSONResponse({
            "queue": [_ticket_dict(t) for t in queue],
            "failures": [
                {**_ticket_dict(item.ticket), "transitions": [_transition_dict(t) for t in item.transitions]}
                for item in failures
            ],
        })
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _ts(value) -> str | None:
    return value.isoformat() if value else None


def _ticket_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "state": t.state.value,
        "priority": t.priority.value,
        "complexity": t.complexity.value,
        "estimated_files": sorted(t.estimated_files),
        "dependencies": sorted(t.dependencies),
        "assigned_worker": t.assigned_worker,
        "attempt_count": t.attempt_count,
        "quality_score": t.quality_score,
        "security_flagged": t.security_flagged,
        "context": t.context,
        "created_at": _ts(t.created_at),
        "updated_at": _ts(t.updated_at),
        "completed_at": _ts(t.completed_at),
    }


def _transition_dict(t) -> dict:
    return {
        "from_state": t.from_state.value if t.from_state else None,
        "to_state": t.to_state.value,
        "reason": t.reason,
        "created_at": _ts(t.created_at),
    }


def _escalation_dict(e) -> dict:
    return {
        "id": e.id,
        "ticket_id": e.ticket_id,
        "trigger_type": e.trigger_type.value,
        "context": e.context,
        "raised_at": _ts(e.raised_at),
        "resolution": e.resolution.value if e.resolution else None,
        "note": e.note,
        "resolved_at": _ts(e.resolved_at),
    }


def _slot_dict(s) -> dict:
    return {
        "id": s.id,
        "status": s.status.value,
        "current_ticket": s.current_ticket,
        "last_progress_at": _ts(s.last_progress_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/tickets", api_list_tickets),
        Route("/api/tickets/{ticket_id}", api_get_ticket),
        Route("/api/summary", api_summary),
        Route("/api/locks", api_locks),
        Route("/api/escalations", api_escalations),
        Route("/api/review", api_review),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
