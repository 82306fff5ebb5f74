"""CLI entry point for the ticket orchestrator."""

import json
import logging
import sys
import time

import click

from ticket_orchestrator.config import get_config
from ticket_orchestrator.core import review as review_mod
from ticket_orchestrator.core.escalations import EscalationStore, parse_decision
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.orchestrator import (
    cancel_ticket,
    create_orchestrator,
    list_worker_slots,
)
from ticket_orchestrator.core.state_machine import InvalidTransitionError
from ticket_orchestrator.core.tickets import TicketStore, ticket_from_dict
from ticket_orchestrator.db.engine import get_db, init_db
from ticket_orchestrator.db.models import TicketState
from ticket_orchestrator.integrations import slack as slack_mod
from ticket_orchestrator.logging import setup_logging

STATE_ICONS = {
    "queued": "○",
    "assigned": "◔",
    "planning": "◑",
    "implementing": "●",
    "gate-check": "◕",
    "escalated": "!",
    "completed": "✓",
    "failed": "✗",
    "skipped": "–",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


@click.group()
def main():
    """tix - Ticket Orchestrator CLI"""
    pass


# ── Ticket Commands ───────────────────────────────────────────────────────────


@main.group("ticket")
def ticket_group():
    """Manage tickets."""
    pass


@ticket_group.command("add")
@click.argument("title")
@click.option("--id", "ticket_id", default=None, help="Ticket ID (defaults to the slugified title)")
@click.option("--description", "-d", default="", help="Ticket description")
@click.option("--priority", "-p", default="medium", type=click.Choice(["high", "medium", "low"]))
@click.option(
    "--complexity", "-c", default="small",
    type=click.Choice(["trivial", "small", "medium", "large"]),
)
@click.option("--files", "-f", default=None, help="Comma-separated files or globs the ticket will touch")
@click.option("--depends-on", default=None, help="Comma-separated ticket IDs this depends on")
def ticket_add(title, ticket_id, description, priority, complexity, files, depends_on):
    """Queue a new ticket."""
    with _get_db() as db:
        try:
            ticket = TicketStore(db).enqueue(ticket_from_dict({
                "id": ticket_id,
                "title": title,
                "description": description,
                "priority": priority,
                "complexity": complexity,
                "estimated_files": _split(files),
                "dependencies": _split(depends_on),
            }))
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Queued ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Priority: {ticket.priority.value} | Complexity: {ticket.complexity.value}")
        if ticket.estimated_files:
            click.echo(f"  Files: {', '.join(sorted(ticket.estimated_files))}")
        if ticket.dependencies:
            click.echo(f"  Depends on: {', '.join(sorted(ticket.dependencies))}")


@ticket_group.command("list")
@click.option("--state", default=None, type=click.Choice([s.value for s in TicketState]))
@click.option("--all", "include_archived", is_flag=True, help="Include archived tickets")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ticket_list(state, include_archived, json_output):
    """List tickets in scheduling order."""
    with _get_db() as db:
        tickets = TicketStore(db).list_tickets(
            TicketState(state) if state else None, include_archived=include_archived
        )

        if json_output:
            click.echo(json.dumps([_ticket_dict(t) for t in tickets], indent=2))
            return

        if not tickets:
            click.echo("No tickets found.")
            return

        for t in tickets:
            icon = STATE_ICONS.get(t.state.value, "?")
            deps = f" [depends: {', '.join(sorted(t.dependencies))}]" if t.dependencies else ""
            score = f" [score {t.quality_score:g}]" if t.quality_score is not None else ""
            click.echo(
                f"  {icon} {t.priority.value:<6} {t.id}: {t.title} ({t.state.value}){deps}{score}"
            )


@ticket_group.command("show")
@click.argument("ticket_id")
def ticket_show(ticket_id):
    """Show a ticket and its transition log."""
    with _get_db() as db:
        store = TicketStore(db)
        ticket = store.get(ticket_id)
        if not ticket:
            _fail(f"Ticket not found: {ticket_id}")

        click.echo(f"Ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  State: {ticket.state.value}")
        click.echo(f"  Priority: {ticket.priority.value} | Complexity: {ticket.complexity.value}")
        click.echo(f"  Attempts: {ticket.attempt_count}")
        if ticket.description:
            click.echo(f"  Description: {ticket.description}")
        if ticket.estimated_files:
            click.echo(f"  Files: {', '.join(sorted(ticket.estimated_files))}")
        if ticket.dependencies:
            click.echo(f"  Depends on: {', '.join(sorted(ticket.dependencies))}")
        if ticket.assigned_worker:
            click.echo(f"  Worker: {ticket.assigned_worker}")
        if ticket.quality_score is not None:
            flag = " (security flagged)" if ticket.security_flagged else ""
            click.echo(f"  Quality score: {ticket.quality_score:g}{flag}")
        if ticket.context:
            click.echo(f"  Context: {ticket.context}")

        click.echo("  Transitions:")
        for tr in store.transitions(ticket_id):
            src = tr.from_state.value if tr.from_state else "-"
            click.echo(f"    {tr.created_at:%Y-%m-%d %H:%M:%S} {src} -> {tr.to_state.value}: {tr.reason}")


@ticket_group.command("cancel")
@click.argument("ticket_id")
@click.option("--reason", default="cancelled", help="Reason recorded in the transition log")
def ticket_cancel(ticket_id, reason):
    """Cancel a ticket and release its file locks."""
    config = get_config()
    with _get_db() as db:
        try:
            ticket = cancel_ticket(
                TicketStore(db), LockManager(db, default_timeout=config.lock_timeout), ticket_id, reason
            )
        except (ValueError, InvalidTransitionError) as e:
            _fail(f"Error: {e}")
        click.echo(f"Cancelled ticket '{ticket.id}' ({ticket.state.value})")


@ticket_group.command("blocked")
def ticket_blocked():
    """Show queued tickets waiting on dependencies."""
    with _get_db() as db:
        store = TicketStore(db)
        blocked = store.blocked()
        if not blocked:
            click.echo("No blocked tickets.")
            return
        for t in blocked:
            waiting = []
            for dep_id in sorted(t.dependencies):
                dep = store.get(dep_id)
                waiting.append(f"{dep_id} ({dep.state.value if dep else 'missing'})")
            click.echo(f"  ○ {t.id}: {t.title}")
            click.echo(f"      waiting on: {', '.join(waiting)}")


@main.command("intake")
@click.argument("source", type=click.File("r"))
def intake(source):
    """Queue a batch of tickets from a JSON file ('-' for stdin).

    The file holds a list of tickets, or an object with a "tickets" list.
    The batch is atomic: one bad ticket rejects the whole file.
    """
    try:
        data = json.load(source)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    records = data.get("tickets", []) if isinstance(data, dict) else data
    if not isinstance(records, list):
        _fail("Error: expected a list of tickets or an object with a \"tickets\" list")

    with _get_db() as db:
        try:
            tickets = TicketStore(db).enqueue_many([ticket_from_dict(r) for r in records])
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Queued {len(tickets)} ticket(s)")
        for t in tickets:
            click.echo(f"  ○ {t.id}: {t.title}")


# ── Scheduler Commands ────────────────────────────────────────────────────────


@main.command("run")
@click.option("--ticks", type=int, default=None, help="Run this many ticks, then stop")
@click.option("--until-idle", is_flag=True, help="Run until nothing is left to schedule")
@click.option("--workers", type=int, default=None, help="Override TIX_WORKERS")
@click.option("--slack-summary", is_flag=True, help="Post a run summary to the Slack channel")
@click.option("--verbose", "-v", is_flag=True, help="Log scheduler activity to stderr")
def run(ticks, until_idle, workers, slack_summary, verbose):
    """Run the scheduler.

    Without --ticks or --until-idle it runs in the foreground until interrupted.
    """
    config = get_config()
    if workers is not None:
        config.worker_count = workers
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.log_dir:
        setup_logging(config.log_dir)

    db = init_db(config.db_path)
    try:
        try:
            orchestrator = create_orchestrator(db, config)
        except ValueError as e:
            _fail(f"Error: {e}")

        try:
            if until_idle:
                count = orchestrator.run_until_idle()
                click.echo(f"Idle after {count} tick(s)")
            elif ticks is not None:
                for i in range(ticks):
                    orchestrator.run()
                    if i < ticks - 1:
                        time.sleep(config.poll_interval)
            else:
                click.echo(f"Scheduler running with {config.worker_count} worker(s). Ctrl-C to stop.")
                while True:
                    orchestrator.run()
                    time.sleep(config.poll_interval)
        except KeyboardInterrupt:
            click.echo("Stopping scheduler...")
        except TimeoutError as e:
            click.echo(f"Warning: {e}", err=True)
        finally:
            orchestrator.shutdown(wait=True)

        counts = orchestrator.store.summary()
        click.echo("  " + " | ".join(f"{state}: {n}" for state, n in counts.items() if n))

        if slack_summary:
            if not config.slack_channel:
                _fail("Error: TIX_SLACK_CHANNEL not set")
            try:
                slack_mod.send_message(
                    config.slack_bot_token,
                    config.slack_channel,
                    "Ticket run summary",
                    blocks=slack_mod.format_run_summary(counts, orchestrator.review_queue()),
                )
            except slack_mod.SlackError as e:
                _fail(f"Error: {e}")
            click.echo(f"Summary posted to {config.slack_channel}")
    finally:
        db.close()


@main.command("status")
def status():
    """Show ticket counts and worker slots."""
    with _get_db() as db:
        counts = TicketStore(db).summary()
        for state, n in counts.items():
            click.echo(f"  {STATE_ICONS.get(state, '?')} {state:<13} {n}")
        slots = list_worker_slots(db)
        if slots:
            click.echo("Slots:")
            for slot in slots:
                current = f" -> {slot.current_ticket}" if slot.current_ticket else ""
                click.echo(f"  {slot.id}: {slot.status.value}{current}")


@main.command("locks")
def locks():
    """Show active file locks."""
    with _get_db() as db:
        active = LockManager(db).active_locks()
        if not active:
            click.echo("No active locks.")
            return
        for lock in active:
            click.echo(f"  {lock.resource_key}  held by {lock.holder} until {lock.expires_at:%H:%M:%S}")


# ── Escalation Commands ───────────────────────────────────────────────────────


@main.group("escalation")
def escalation_group():
    """Review and resolve escalations."""
    pass


@escalation_group.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include resolved escalations")
def escalation_list(show_all):
    """List escalations awaiting a decision."""
    with _get_db() as db:
        records = EscalationStore(db).list_escalations(open_only=not show_all)
        if not records:
            click.echo("No escalations.")
            return
        for e in records:
            state = e.resolution.value if e.resolution else "open"
            click.echo(f"  #{e.id} [{e.trigger_type.value}] {e.ticket_id} ({state})")
            click.echo(f"      {e.context}")


@escalation_group.command("resolve")
@click.argument("escalation_id", type=int)
@click.argument("decision")
@click.option("--note", default="", help="Note recorded with the decision")
def escalation_resolve(escalation_id, decision, note):
    """Resolve an escalation: DECISION is approve or reject.

    The running scheduler applies it on its next tick.
    """
    with _get_db() as db:
        try:
            record = EscalationStore(db).resolve(escalation_id, parse_decision(decision), note)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Escalation #{record.id} {record.resolution.value} (ticket {record.ticket_id})")


# ── Review Command ────────────────────────────────────────────────────────────


@main.command("review")
@click.option("--consume", is_flag=True, help="Archive the tickets once shown")
@click.option("--failures", is_flag=True, help="Show failed and skipped tickets instead")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def review(consume, failures, json_output):
    """Show the review queue, security-flagged and best-scored first."""
    with _get_db() as db:
        store = TicketStore(db)
        if failures:
            items = review_mod.failure_report(store)
        elif consume:
            items = review_mod.consume(store)
        else:
            items = [
                review_mod.ReviewItem(t, store.transitions(t.id))
                for t in review_mod.build(store.list_tickets(TicketState.COMPLETED))
            ]

        if json_output:
            result = []
            for item in items:
                d = _ticket_dict(item.ticket)
                d["transitions"] = [
                    {
                        "from": tr.from_state.value if tr.from_state else None,
                        "to": tr.to_state.value,
                        "reason": tr.reason,
                    }
                    for tr in item.transitions
                ]
                result.append(d)
            click.echo(json.dumps(result, indent=2))
            return

        if not items:
            click.echo("Nothing to review.")
            return

        for i, item in enumerate(items, 1):
            t = item.ticket
            flag = " [security]" if t.security_flagged else ""
            score = f"{t.quality_score:g}" if t.quality_score is not None else "-"
            click.echo(f"  {i}. {t.id}: {t.title} (score {score}, {t.priority.value}){flag}")
            if failures and item.transitions:
                click.echo(f"      {item.transitions[-1].reason}")
        if consume:
            click.echo(f"Archived {len(items)} ticket(s)")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from ticket_orchestrator.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from ticket_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _ticket_dict(ticket) -> dict:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "state": ticket.state.value,
        "priority": ticket.priority.value,
        "complexity": ticket.complexity.value,
        "estimated_files": sorted(ticket.estimated_files),
        "dependencies": sorted(ticket.dependencies),
        "attempt_count": ticket.attempt_count,
        "quality_score": ticket.quality_score,
        "security_flagged": ticket.security_flagged,
        "context": ticket.context,
    }


if __name__ == "__main__":
    main()
