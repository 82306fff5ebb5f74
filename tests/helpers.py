"""Test doubles for the scheduler: clock, executors, agent and gate."""

from concurrent.futures import Executor, Future
from datetime import datetime, timedelta

from ticket_orchestrator.core.lifecycle import NonRecoverableGateFailure
from ticket_orchestrator.db.models import GateResult, Ticket


def make_ticket(ticket_id: str, **kwargs) -> Ticket:
    kwargs.setdefault("title", ticket_id.replace("-", " ").capitalize())
    for key in ("estimated_files", "dependencies"):
        if key in kwargs:
            kwargs[key] = set(kwargs[key])
    return Ticket(id=ticket_id, **kwargs)


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InlineExecutor(Executor):
    """Runs each submitted callable immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Holds submitted callables until the test runs them."""

    def __init__(self):
        self.pending: list[tuple[Future, object, tuple, dict]] = []

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_next(self):
        future, fn, args, kwargs = self.pending.pop(0)
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def run_all(self):
        while self.pending:
            self.run_next()


class ScriptedAgent:
    """Agent that raises scripted faults, one entry consumed per call.

    ``implement_faults`` / ``plan_faults`` map ticket id to a list whose
    entries are an exception to raise or None for a clean run.
    """

    def __init__(self, implement_faults=None, plan_faults=None, output=""):
        self.implement_faults = {k: list(v) for k, v in (implement_faults or {}).items()}
        self.plan_faults = {k: list(v) for k, v in (plan_faults or {}).items()}
        self.output = output
        self.calls: list[tuple[str, str]] = []

    def plan(self, ticket: Ticket) -> str:
        self.calls.append(("plan", ticket.id))
        self._consume(self.plan_faults, ticket.id)
        return f"plan for {ticket.id}"

    def implement(self, ticket: Ticket, plan: str) -> str:
        self.calls.append(("implement", ticket.id))
        self._consume(self.implement_faults, ticket.id)
        return self.output or f"changes for {ticket.id}"

    def _consume(self, script, ticket_id):
        outcomes = script.get(ticket_id)
        if outcomes:
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome


class FixedGate:
    """Gate with a fixed score per ticket."""

    def __init__(self, scores=None, default=90.0, flagged=(), blocked=(), failing=()):
        self.scores = dict(scores or {})
        self.default = default
        self.flagged = set(flagged)
        self.blocked = set(blocked)
        self.failing = set(failing)
        self.calls: list[tuple[str, bool]] = []

    def check(self, ticket: Ticket, artifact: str, strict: bool = False) -> GateResult:
        self.calls.append((ticket.id, strict))
        if ticket.id in self.blocked:
            raise NonRecoverableGateFailure("critical security finding")
        return GateResult(
            quality_score=self.scores.get(ticket.id, self.default),
            security_flagged=ticket.id in self.flagged,
            passed=ticket.id not in self.failing,
        )
