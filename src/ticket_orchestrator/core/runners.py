"""Subprocess adapters for the agent and the quality gate.

Both commands receive a JSON document on stdin. The agent command gets the
phase as its last argument (``plan`` or ``implement``) and answers with plain
text on stdout. The gate command gets ``--strict`` on the strict pass and
answers with a JSON object::

    {"quality_score": 91.5, "security_flagged": false, "pass": true, "block": false}

A gate exit code of 2, or ``"block": true``, is a hard block.
"""

import json
import logging
import shlex
import subprocess
from pathlib import Path

from ticket_orchestrator.core.lifecycle import NonRecoverableGateFailure, RecoverableExecutionFault
from ticket_orchestrator.db.models import GateResult, Ticket

logger = logging.getLogger(__name__)

GATE_BLOCK_EXIT_CODE = 2


def ticket_payload(ticket: Ticket) -> dict:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "description": ticket.description,
        "priority": ticket.priority.value,
        "complexity": ticket.complexity.value,
        "estimated_files": sorted(ticket.estimated_files),
        "dependencies": sorted(ticket.dependencies),
        "attempt_count": ticket.attempt_count,
        "context": ticket.context,
    }


def run_command(
    command: str,
    args: list[str],
    payload: dict,
    cwd: str | Path | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """Run a configured command with ``payload`` as JSON on stdin."""
    cmd = shlex.split(command) + args
    try:
        return subprocess.run(
            cmd,
            cwd=cwd,
            input=json.dumps(payload),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise RecoverableExecutionFault(f"{cmd[0]} timed out after {timeout:g}s") from e
    except OSError as e:
        raise RecoverableExecutionFault(f"{cmd[0]} could not be started: {e}") from e


class CommandAgentRunner:
    def __init__(self, command: str, cwd: str | Path | None = None, timeout: float | None = None):
        self.command = command
        self.cwd = cwd
        self.timeout = timeout

    def plan(self, ticket: Ticket) -> str:
        return self._run("plan", {"ticket": ticket_payload(ticket)})

    def implement(self, ticket: Ticket, plan: str) -> str:
        return self._run("implement", {"ticket": ticket_payload(ticket), "plan": plan})

    def _run(self, phase: str, payload: dict) -> str:
        result = run_command(self.command, [phase], payload, cwd=self.cwd, timeout=self.timeout)
        if result.returncode != 0:
            raise RecoverableExecutionFault(
                f"agent {phase} exited {result.returncode}: {result.stderr.strip()[:200]}"
            )
        return result.stdout


class CommandGateRunner:
    def __init__(self, command: str, cwd: str | Path | None = None, timeout: float | None = None):
        self.command = command
        self.cwd = cwd
        self.timeout = timeout

    def check(self, ticket: Ticket, artifact: str, strict: bool = False) -> GateResult:
        payload = {"ticket": ticket_payload(ticket), "artifact": artifact, "strict": strict}
        args = ["--strict"] if strict else []
        result = run_command(self.command, args, payload, cwd=self.cwd, timeout=self.timeout)

        if result.returncode == GATE_BLOCK_EXIT_CODE:
            raise NonRecoverableGateFailure(result.stderr.strip()[:200] or "blocked by gate")
        if result.returncode != 0:
            raise RecoverableExecutionFault(
                f"gate exited {result.returncode}: {result.stderr.strip()[:200]}"
            )

        try:
            data = json.loads(result.stdout)
            score = float(data["quality_score"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise RecoverableExecutionFault(f"unreadable gate output: {e}") from e

        if data.get("block"):
            raise NonRecoverableGateFailure(data.get("reason") or "blocked by gate")

        logger.debug("Gate for '%s' (strict=%s): %s", ticket.id, strict, data)
        return GateResult(
            quality_score=score,
            security_flagged=bool(data.get("security_flagged", False)),
            passed=bool(data.get("pass", True)),
        )
