"""Orchestrator: the scheduler tick and its background loop."""

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from ticket_orchestrator.config import Config
from ticket_orchestrator.core import review
from ticket_orchestrator.core.assignment import AssignmentPolicy
from ticket_orchestrator.core.audit import AuditSink, JsonlAuditSink, LoggingAuditSink
from ticket_orchestrator.core.escalations import EscalationStore
from ticket_orchestrator.core.lifecycle import (
    AgentRunner,
    GateRunner,
    RetryPolicy,
    TicketLifecycle,
)
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.runners import CommandAgentRunner, CommandGateRunner
from ticket_orchestrator.core.tickets import OwnershipLostError, TicketStore
from ticket_orchestrator.core.triggers import TriggerRegistry
from ticket_orchestrator.db.engine import Database, format_ts, parse_ts
from ticket_orchestrator.db.models import (
    EscalationRecord,
    Lease,
    Resolution,
    SlotStatus,
    Ticket,
    TicketState,
    TriggerType,
    WorkerSlot,
)
from ticket_orchestrator.integrations.slack import SlackResponder

logger = logging.getLogger(__name__)


class HumanReviewResponder(Protocol):
    def notify(self, record: EscalationRecord) -> None: ...

    def poll(self) -> Iterable[tuple[int, Resolution, str]]: ...


@dataclass
class TickReport:
    reaped: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    notified: list[int] = field(default_factory=list)
    applied: list[int] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    assigned: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.reaped or self.recovered or self.applied or self.skipped or self.assigned
        )


@dataclass
class _Worker:
    slot_id: str
    worker_id: str
    ticket_id: str
    lifecycle: TicketLifecycle
    lease: Lease
    last_progress: datetime
    future: Future | None = None


# ── Standalone operations ───────────────────────────────────────────────────


def cancel_ticket(
    store: TicketStore,
    locks: LockManager,
    ticket_id: str,
    reason: str = "cancelled",
) -> Ticket:
    """Skip a non-terminal ticket and free whatever its worker holds."""
    with store.db.transaction():
        ticket = store.get(ticket_id)
        if not ticket:
            raise ValueError(f"Ticket not found: {ticket_id}")
        if ticket.state.is_terminal:
            raise ValueError(f"Ticket '{ticket_id}' is already {ticket.state.value}")
        holder = ticket.assigned_worker
        ticket = store.mark(ticket_id, TicketState.SKIPPED, reason)
        if holder:
            locks.release_holder(holder)
    logger.info("Cancelled ticket '%s': %s", ticket_id, reason)
    return ticket


def list_worker_slots(db: Database) -> list[WorkerSlot]:
    rows = db.query("SELECT * FROM worker_slots ORDER BY id")
    return [_row_to_slot(r) for r in rows]


def _row_to_slot(row) -> WorkerSlot:
    return WorkerSlot(
        id=row["id"],
        status=SlotStatus(row["status"]),
        current_ticket=row["current_ticket"],
        last_progress_at=parse_ts(row["last_progress_at"]),
    )


# ── Orchestrator ────────────────────────────────────────────────────────────


class Orchestrator:
    """Runs tickets on a fixed pool of worker slots.

    Each call to ``run`` is one non-blocking tick. Workers run on ``executor``
    (a thread pool by default); tests pass an executor that runs them inline.
    Only one orchestrator may drive a database at a time: active tickets held
    by workers this instance does not know about are treated as lost.
    """

    def __init__(
        self,
        db: Database,
        agent: AgentRunner,
        gate: GateRunner,
        config: Config | None = None,
        *,
        triggers: TriggerRegistry | None = None,
        audit_sinks: Sequence[AuditSink] = (),
        responder: HumanReviewResponder | None = None,
        executor: Executor | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.agent = agent
        self.gate = gate
        self.config = config or Config()
        self.config.validate()
        self.triggers = triggers or TriggerRegistry()
        self.responder = responder
        self.clock = clock

        self.store = TicketStore(db, clock=clock, sinks=audit_sinks)
        self.locks = LockManager(db, clock=clock, default_timeout=self.config.lock_timeout)
        self.escalations = EscalationStore(db, clock=clock)
        self.policy = AssignmentPolicy(
            self.store,
            self.locks,
            lock_timeout=self.config.lock_timeout,
            lock_mode=self.config.lock_mode,
        )
        self.retry = RetryPolicy.from_config(self.config)
        # Several beats fit in the shorter of the two windows a worker must stay inside.
        self.heartbeat_interval = min(self.config.slot_timeout, self.config.lock_timeout) / 3

        self._owns_executor = executor is None
        # Abandoned workers keep their thread until they notice, hence the headroom.
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.config.worker_count * 2, thread_name_prefix="tix-worker"
        )
        self.slot_ids = [f"worker-{i}" for i in range(1, self.config.worker_count + 1)]
        self._workers: dict[str, _Worker] = {}
        self._lock = threading.RLock()
        self._init_slots()

    # ── Intake ──────────────────────────────────────────────────────────────

    def enqueue(self, ticket: Ticket) -> Ticket:
        return self.store.enqueue(ticket)

    def enqueue_many(self, tickets: Iterable[Ticket]) -> list[Ticket]:
        return self.store.enqueue_many(tickets)

    def cancel(self, ticket_id: str, reason: str = "cancelled") -> Ticket:
        """Cancel a ticket from any non-terminal state. Its locks are freed now."""
        ticket = cancel_ticket(self.store, self.locks, ticket_id, reason)
        with self._lock:
            for worker in self._workers.values():
                if worker.ticket_id == ticket_id:
                    worker.lifecycle.cancel(reason)
        return ticket

    # ── Tick ────────────────────────────────────────────────────────────────

    def run(self, now: datetime | None = None) -> TickReport:
        """One scheduling tick. Never waits on a worker."""
        now = now or self.clock()
        report = TickReport()
        with self._lock:
            self._reap(report)
            self._recover_dead(now, report)
            self._handle_escalations(report)
            report.skipped = [t.id for t in self.store.propagate_skips()]
            self._assign(now, report)
        if report.changed:
            logger.debug("Tick: %s", report)
        return report

    def run_until_idle(self, max_ticks: int = 1000, poll_interval: float | None = None) -> int:
        """Tick until no worker runs and a tick changes nothing. Returns the tick count."""
        poll_interval = self.config.poll_interval if poll_interval is None else poll_interval
        for tick in range(1, max_ticks + 1):
            report = self.run()
            with self._lock:
                futures = [w.future for w in self._workers.values() if w.future is not None]
            if not futures and not report.changed:
                return tick
            if futures:
                wait(futures, timeout=poll_interval, return_when=FIRST_COMPLETED)
        raise TimeoutError(f"Scheduler still busy after {max_ticks} ticks")

    def review_queue(self) -> list[Ticket]:
        return review.build(self.store.list_tickets(TicketState.COMPLETED))

    def slots(self) -> list[WorkerSlot]:
        return list_worker_slots(self.db)

    def busy(self) -> bool:
        with self._lock:
            return bool(self._workers)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work. In-flight tickets are recovered by the next orchestrator."""
        with self._lock:
            for worker in self._workers.values():
                worker.lifecycle.abandon("orchestrator shut down")
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    # ── Tick steps ──────────────────────────────────────────────────────────

    def _reap(self, report: TickReport) -> None:
        for slot_id, worker in list(self._workers.items()):
            if worker.future is None or not worker.future.done():
                continue
            del self._workers[slot_id]
            self.locks.release(worker.lease.token)
            exc = worker.future.exception()
            if exc is not None:
                logger.error(
                    "Worker %s crashed on ticket '%s'",
                    worker.worker_id, worker.ticket_id, exc_info=exc,
                )
                if self._recover(worker.ticket_id, worker.worker_id, f"worker crashed: {exc}"):
                    report.recovered.append(worker.ticket_id)
            else:
                logger.info(
                    "Worker %s finished ticket '%s': %s",
                    worker.worker_id, worker.ticket_id, worker.future.result().value,
                )
            self._save_slot(slot_id, SlotStatus.IDLE)
            report.reaped.append(worker.ticket_id)

    def _recover_dead(self, now: datetime, report: TickReport) -> None:
        for slot_id, worker in list(self._workers.items()):
            idle_for = (now - worker.last_progress).total_seconds()
            if idle_for <= self.config.slot_timeout:
                continue
            logger.warning(
                "Worker %s made no progress on ticket '%s' for %.0fs; abandoning",
                worker.worker_id, worker.ticket_id, idle_for,
            )
            del self._workers[slot_id]
            worker.lifecycle.abandon("slot timed out")
            if self._recover(worker.ticket_id, worker.worker_id, f"no progress for {idle_for:.0f}s"):
                report.recovered.append(worker.ticket_id)
            self._save_slot(slot_id, SlotStatus.IDLE)

        # Tickets held by workers this orchestrator never started (e.g. a restart).
        running = {w.worker_id for w in self._workers.values()}
        for state in (TicketState.ASSIGNED, TicketState.PLANNING,
                      TicketState.IMPLEMENTING, TicketState.GATE_CHECK):
            for ticket in self.store.list_tickets(state):
                if ticket.assigned_worker and ticket.assigned_worker not in running:
                    if self._recover(ticket.id, ticket.assigned_worker, "worker lost"):
                        report.recovered.append(ticket.id)

    def _recover(self, ticket_id: str, worker_id: str, reason: str) -> bool:
        """Send a lost worker's ticket back to the queue, or escalate it when out of attempts."""
        self.locks.release_holder(worker_id)
        ticket = self.store.get(ticket_id)
        if ticket is None or ticket.assigned_worker != worker_id or not ticket.state.is_active:
            return False

        attempts = ticket.attempt_count
        if ticket.state == TicketState.ASSIGNED:
            attempts += 1
        try:
            if attempts >= self.retry.max_attempts:
                context = f"{attempts} attempts failed; last: {reason}"
                with self.db.transaction():
                    self.escalations.record(ticket_id, TriggerType.REPEATED_FAILURE, context)
                    self.store.mark(
                        ticket_id,
                        TicketState.ESCALATED,
                        f"{TriggerType.REPEATED_FAILURE.value}: {context}",
                        owner=worker_id,
                        attempt_count=attempts,
                        context=context,
                    )
                logger.warning("Ticket '%s' escalated after losing its worker: %s", ticket_id, reason)
            else:
                self.store.mark(
                    ticket_id,
                    TicketState.QUEUED,
                    f"requeued: {reason}",
                    owner=worker_id,
                    attempt_count=attempts,
                )
                logger.info("Ticket '%s' requeued: %s", ticket_id, reason)
        except OwnershipLostError:
            # The worker moved it first.
            return False
        return True

    def _handle_escalations(self, report: TickReport) -> None:
        if self.responder is not None:
            for record in self.escalations.unnotified():
                try:
                    self.responder.notify(record)
                except Exception:
                    logger.exception("Failed to notify escalation %s", record.id)
                    continue
                self.escalations.mark_notified(record.id)
                report.notified.append(record.id)

            try:
                responses = list(self.responder.poll())
            except Exception:
                logger.exception("Failed to poll escalation responses")
                responses = []
            for escalation_id, resolution, note in responses:
                try:
                    self.escalations.resolve(escalation_id, resolution, note)
                except ValueError as e:
                    logger.warning("Ignoring response for escalation %s: %s", escalation_id, e)

        for record in self.escalations.pending_resolutions():
            self._apply_resolution(record)
            report.applied.append(record.id)

    def _apply_resolution(self, record: EscalationRecord) -> None:
        note = f": {record.note}" if record.note else ""
        with self.db.transaction():
            ticket = self.store.get(record.ticket_id)
            if ticket and ticket.state == TicketState.ESCALATED:
                if record.resolution == Resolution.APPROVED_CONTINUE:
                    self.store.mark(
                        ticket.id, TicketState.QUEUED, f"escalation {record.id} approved{note}"
                    )
                else:
                    self.store.mark(
                        ticket.id, TicketState.FAILED, f"escalation {record.id} rejected{note}"
                    )
            self.escalations.mark_applied(record.id)
        logger.info(
            "Applied escalation %s (%s) to ticket '%s'",
            record.id, record.resolution.value, record.ticket_id,
        )

    def _assign(self, now: datetime, report: TickReport) -> None:
        for slot_id in self.slot_ids:
            if slot_id in self._workers:
                continue
            worker_id = f"{slot_id}-{uuid.uuid4().hex[:8]}"
            assignment = self.policy.next_for(worker_id, self.store.candidates(), now=now)
            if assignment is None:
                break

            lifecycle = TicketLifecycle(
                self.store,
                self.locks,
                self.escalations,
                self.agent,
                self.gate,
                worker_id=worker_id,
                lease=assignment.lease,
                triggers=self.triggers,
                retry=self.retry,
                strict_gate_threshold=self.config.strict_gate_threshold,
                on_progress=self._on_progress,
                heartbeat_interval=self.heartbeat_interval,
            )
            worker = _Worker(
                slot_id=slot_id,
                worker_id=worker_id,
                ticket_id=assignment.ticket.id,
                lifecycle=lifecycle,
                lease=assignment.lease,
                last_progress=now,
            )
            self._workers[slot_id] = worker
            self._save_slot(slot_id, SlotStatus.BUSY, worker.ticket_id, now)
            report.assigned.append(worker.ticket_id)
            worker.future = self.executor.submit(lifecycle.run, worker.ticket_id)

    # ── Slots ───────────────────────────────────────────────────────────────

    def _on_progress(self, worker_id: str) -> None:
        now = self.clock()
        with self._lock:
            for worker in self._workers.values():
                if worker.worker_id == worker_id:
                    worker.last_progress = now
                    self._save_slot(worker.slot_id, SlotStatus.BUSY, worker.ticket_id, now)

    def _init_slots(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                f"DELETE FROM worker_slots WHERE id NOT IN ({', '.join('?' for _ in self.slot_ids)})",
                self.slot_ids,
            )
            for slot_id in self.slot_ids:
                self._save_slot(slot_id, SlotStatus.IDLE)

    def _save_slot(
        self,
        slot_id: str,
        status: SlotStatus,
        ticket_id: str | None = None,
        progress: datetime | None = None,
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO worker_slots (id, status, current_ticket, last_progress_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       status = excluded.status,
                       current_ticket = excluded.current_ticket,
                       last_progress_at = excluded.last_progress_at,
                       updated_at = excluded.updated_at""",
                (slot_id, status.value, ticket_id, format_ts(progress), format_ts(self.clock())),
            )


def create_orchestrator(
    db: Database,
    config: Config,
    executor: Executor | None = None,
) -> Orchestrator:
    """Wire an orchestrator from configuration: command runners, default
    triggers, audit sinks and, when configured, the Slack responder."""
    if not config.agent_command or not config.gate_command:
        raise ValueError("TIX_AGENT_COMMAND and TIX_GATE_COMMAND must both be set to run tickets")

    sinks: list[AuditSink] = [LoggingAuditSink()]
    if config.audit_log:
        sinks.append(JsonlAuditSink(config.audit_log))

    responder = None
    if config.slack_bot_token and config.slack_channel:
        responder = SlackResponder(
            config.slack_bot_token,
            config.slack_channel,
            ticket_lookup=TicketStore(db).get,
            is_open=EscalationStore(db).is_open,
        )

    return Orchestrator(
        db,
        CommandAgentRunner(config.agent_command, cwd=config.repo_path, timeout=config.command_timeout),
        CommandGateRunner(config.gate_command, cwd=config.repo_path, timeout=config.command_timeout),
        config,
        triggers=TriggerRegistry.from_config(config),
        audit_sinks=sinks,
        responder=responder,
        executor=executor,
    )


# ── Background loop ─────────────────────────────────────────────────────────


class OrchestratorLoop:
    """Background thread that ticks an orchestrator every ``poll_interval`` seconds."""

    def __init__(self, orchestrator: Orchestrator, poll_interval: float | None = None):
        self.orchestrator = orchestrator
        self.poll_interval = (
            orchestrator.config.poll_interval if poll_interval is None else poll_interval
        )
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the loop thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="tix-orchestrator", daemon=True)
        self._thread.start()
        logger.info("Orchestrator loop started (%d slots)", len(self.orchestrator.slot_ids))

    def stop(self):
        """Signal the loop to stop and wait for the current tick."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Orchestrator loop stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.orchestrator.run()
            except Exception:
                logger.exception("Error in orchestrator tick")
            self._stop_event.wait(self.poll_interval)
