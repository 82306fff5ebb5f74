"""Worker lifecycle: drives one assigned ticket to a terminal or escalated state.

    assigned -> planning -> implementing -> gate-check -> completed
                   (trivial tickets skip planning; large ones run a strict
                    second gate-check)

Escalation triggers are checked on entry to every state. Recoverable faults
re-enter planning or implementing after an exponential backoff until the
attempt bound is hit, at which point the ticket escalates as
``repeated_failure``. A hard block fails the ticket outright, from any execution stage.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from ticket_orchestrator.config import Config
from ticket_orchestrator.core.escalations import EscalationStore
from ticket_orchestrator.core.locks import LockManager
from ticket_orchestrator.core.tickets import OwnershipLostError, TicketStore
from ticket_orchestrator.core.triggers import TriggerContext, TriggerRegistry
from ticket_orchestrator.db.models import (
    Complexity,
    GateResult,
    Lease,
    Ticket,
    TicketState,
    TriggerType,
)

logger = logging.getLogger(__name__)


class RecoverableExecutionFault(Exception):
    """Transient failure while planning, implementing or gating. Retried."""


class NonRecoverableGateFailure(Exception):
    """Hard gate block, e.g. a critical security finding. Never retried."""


class AgentRunner(Protocol):
    def plan(self, ticket: Ticket) -> str: ...

    def implement(self, ticket: Ticket, plan: str) -> str: ...


class GateRunner(Protocol):
    def check(self, ticket: Ticket, artifact: str, strict: bool = False) -> GateResult: ...


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 60.0

    def delay(self, attempt_count: int) -> float:
        """Seconds to wait before the next attempt."""
        return min(self.backoff_base * 2 ** attempt_count, self.backoff_cap)

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        return cls(config.max_attempts, config.backoff_base, config.backoff_cap)


class _Escalated(Exception):
    pass


class _Stopped(Exception):
    pass


class TicketLifecycle:
    """One worker's run over one ticket.

    ``run`` returns the state the ticket was left in. The lease is released
    whenever the run ends, however it ends. ``cancel`` is cooperative: it is
    honoured at the next transition boundary and interrupts backoff waits.

    With ``heartbeat_interval`` set, a background thread renews the lease and
    reports progress while the agent or gate is busy, so a long phase does not
    look like a dead slot.
    """

    def __init__(
        self,
        store: TicketStore,
        locks: LockManager,
        escalations: EscalationStore,
        agent: AgentRunner,
        gate: GateRunner,
        *,
        worker_id: str,
        lease: Lease | None = None,
        triggers: TriggerRegistry | None = None,
        retry: RetryPolicy | None = None,
        strict_gate_threshold: float = 80.0,
        on_progress: Callable[[str], None] | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.store = store
        self.locks = locks
        self.escalations = escalations
        self.agent = agent
        self.gate = gate
        self.worker_id = worker_id
        self.lease = lease
        self.triggers = triggers or TriggerRegistry()
        self.retry = retry or RetryPolicy()
        self.strict_gate_threshold = strict_gate_threshold
        self.on_progress = on_progress
        self.heartbeat_interval = heartbeat_interval

        self.ticket_id: str | None = None
        self.state: TicketState | None = None
        self.cancel_reason = ""
        self._cancelled = threading.Event()
        self._abandoned = False
        self._waived: set[TriggerType] = set()
        self._output = ""

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop at the next boundary and skip the ticket."""
        self.cancel_reason = reason
        self._cancelled.set()

    def abandon(self, reason: str = "abandoned") -> None:
        """Stop at the next boundary without touching the ticket.

        Used once the orchestrator has already recovered the ticket elsewhere.
        """
        self._abandoned = True
        self.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, ticket_id: str) -> TicketState:
        self.ticket_id = ticket_id
        try:
            return self._drive()
        except _Escalated:
            return TicketState.ESCALATED
        except _Stopped as stop:
            logger.info("Worker %s stopped on ticket '%s': %s", self.worker_id, ticket_id, stop)
            ticket = self.store.get(ticket_id)
            return ticket.state if ticket else TicketState.SKIPPED
        finally:
            if self.lease is not None:
                self.locks.release(self.lease.token)

    # ── Driving ─────────────────────────────────────────────────────────────

    def _drive(self) -> TicketState:
        ticket = self.store.get(self.ticket_id)
        if ticket is None:
            raise ValueError(f"Ticket not found: {self.ticket_id}")
        if ticket.state != TicketState.ASSIGNED or ticket.assigned_worker != self.worker_id:
            raise _Stopped(f"ticket is {ticket.state.value}, held by {ticket.assigned_worker}")

        self.state = TicketState.ASSIGNED
        self._waived = self.escalations.waived_triggers(ticket.id)
        self._check_triggers(ticket)

        stage = TicketState.IMPLEMENTING if ticket.complexity == Complexity.TRIVIAL else TicketState.PLANNING
        reason = "started by " + self.worker_id
        fields: dict = {}
        plan = ""

        while True:
            ticket = self._enter(stage, reason, attempt_count=ticket.attempt_count + 1, **fields)
            fields = {}
            try:
                if self.state == TicketState.PLANNING:
                    with self._beating():
                        plan = self.agent.plan(ticket)
                    self._output = plan
                    ticket = self._enter(TicketState.IMPLEMENTING, "plan ready")

                with self._beating():
                    artifact = self.agent.implement(ticket, plan)
                self._output = artifact
                ticket = self._enter(TicketState.GATE_CHECK, "implementation ready")

                with self._beating():
                    result = self.gate.check(ticket, artifact, strict=False)
                passed = result.passed
                if passed and ticket.complexity == Complexity.LARGE:
                    ticket = self._enter(
                        TicketState.GATE_CHECK,
                        f"standard gate passed ({result.quality_score:g}); strict gate",
                        **_result_fields(result),
                    )
                    with self._beating():
                        result = self.gate.check(ticket, artifact, strict=True)
                    passed = result.passed and result.quality_score >= self.strict_gate_threshold

                if passed:
                    self._finish(
                        TicketState.COMPLETED,
                        f"gate passed ({result.quality_score:g})",
                        **_result_fields(result),
                    )
                    return TicketState.COMPLETED

                fields = _result_fields(result)
                fault = f"gate rejected ({result.quality_score:g})"
            except RecoverableExecutionFault as exc:
                fault = str(exc) or type(exc).__name__
            except NonRecoverableGateFailure as exc:
                self._finish(TicketState.FAILED, f"hard gate block: {exc}")
                return TicketState.FAILED

            ticket = self.store.get(self.ticket_id)
            logger.warning(
                "Ticket '%s' attempt %d/%d failed in %s: %s",
                ticket.id, ticket.attempt_count, self.retry.max_attempts, self.state.value, fault,
            )
            if ticket.attempt_count >= self.retry.max_attempts:
                self._escalate(
                    TriggerType.REPEATED_FAILURE,
                    f"{ticket.attempt_count} attempts failed; last: {fault}",
                    **fields,
                )

            delay = self.retry.delay(ticket.attempt_count)
            self._wait(delay)
            stage = TicketState.PLANNING if self.state == TicketState.PLANNING else TicketState.IMPLEMENTING
            reason = f"retry {ticket.attempt_count + 1}/{self.retry.max_attempts} after {delay:g}s: {fault}"

    # ── Transitions ─────────────────────────────────────────────────────────

    def _enter(self, state: TicketState, reason: str, **fields) -> Ticket:
        ticket = self._mark(state, reason, **fields)
        self._check_triggers(ticket)
        return ticket

    def _finish(self, state: TicketState, reason: str, **fields) -> None:
        self._mark(state, reason, **fields)
        logger.info("Ticket '%s' %s: %s", self.ticket_id, state.value, reason)

    def _mark(self, state: TicketState, reason: str, **fields) -> Ticket:
        self._check_cancelled()
        try:
            ticket = self.store.mark(self.ticket_id, state, reason, owner=self.worker_id, **fields)
        except OwnershipLostError as exc:
            raise _Stopped(str(exc)) from exc
        self.state = state
        self._heartbeat()
        return ticket

    def _check_triggers(self, ticket: Ticket) -> None:
        match = self.triggers.detect(
            TriggerContext(ticket=ticket, state=self.state, output=self._output),
            waived=self._waived,
        )
        if match:
            trigger_type, message = match
            self._escalate(trigger_type, message)

    def _escalate(self, trigger_type: TriggerType, context: str, **fields) -> None:
        self._check_cancelled()
        try:
            with self.store.db.transaction():
                self.escalations.record(self.ticket_id, trigger_type, context)
                self.store.mark(
                    self.ticket_id,
                    TicketState.ESCALATED,
                    f"{trigger_type.value}: {context}",
                    owner=self.worker_id,
                    context=context,
                    **fields,
                )
        except OwnershipLostError as exc:
            raise _Stopped(str(exc)) from exc
        self.state = TicketState.ESCALATED
        if self.lease is not None:
            self.locks.release(self.lease.token)
        self._heartbeat()
        logger.warning("Ticket '%s' escalated (%s): %s", self.ticket_id, trigger_type.value, context)
        raise _Escalated()

    def _check_cancelled(self) -> None:
        if not self._cancelled.is_set():
            return
        if self._abandoned:
            raise _Stopped(self.cancel_reason)
        try:
            self.store.mark(
                self.ticket_id, TicketState.SKIPPED, self.cancel_reason, owner=self.worker_id
            )
        except OwnershipLostError:
            pass  # The canceller already moved it.
        raise _Stopped(self.cancel_reason)

    def _wait(self, delay: float) -> None:
        if self._cancelled.wait(delay):
            self._check_cancelled()

    def _heartbeat(self) -> None:
        if self.lease is not None and not self.locks.renew(self.lease.token):
            logger.warning(
                "Lease for ticket '%s' expired and was reclaimed; files may be contended",
                self.ticket_id,
            )
        if self.on_progress is not None:
            self.on_progress(self.worker_id)

    @contextmanager
    def _beating(self) -> Iterator[None]:
        """Keep heartbeating in the background while an agent or gate call runs."""
        if not self.heartbeat_interval:
            yield
            return

        done = threading.Event()

        def beat() -> None:
            while not done.wait(self.heartbeat_interval):
                if self._cancelled.is_set():
                    return
                try:
                    self._heartbeat()
                except Exception:
                    logger.exception("Heartbeat failed for ticket '%s'", self.ticket_id)

        thread = threading.Thread(target=beat, name=f"{self.worker_id}-heartbeat", daemon=True)
        thread.start()
        try:
            yield
        finally:
            # Not joined: the beat may be waiting on the orchestrator lock held by this thread.
            done.set()


def _result_fields(result: GateResult) -> dict:
    return {"quality_score": result.quality_score, "security_flagged": result.security_flagged}
