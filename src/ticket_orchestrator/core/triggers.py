"""Escalation triggers.

Each trigger category holds a list of predicates. A predicate looks at the
ticket, the state being entered and the latest agent output, and returns a
short context message when the ticket must go to a human. ``repeated_failure``
is raised by the lifecycle itself and cannot be registered.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from fnmatch import fnmatchcase

from ticket_orchestrator.config import Config
from ticket_orchestrator.db.models import Ticket, TicketState, TriggerType


@dataclass
class TriggerContext:
    ticket: Ticket
    state: TicketState
    output: str = ""


Predicate = Callable[[TriggerContext], str | None]


class TriggerRegistry:
    def __init__(self):
        self._predicates: dict[TriggerType, list[Predicate]] = {}

    def register(self, trigger_type: TriggerType, predicate: Predicate) -> Predicate:
        trigger_type = TriggerType(trigger_type)
        if trigger_type == TriggerType.REPEATED_FAILURE:
            raise ValueError("repeated_failure is raised by the retry policy, not by predicates")
        self._predicates.setdefault(trigger_type, []).append(predicate)
        return predicate

    def categories(self) -> list[TriggerType]:
        return [t for t in TriggerType if self._predicates.get(t)]

    def detect(
        self,
        context: TriggerContext,
        waived: Iterable[TriggerType] = (),
    ) -> tuple[TriggerType, str] | None:
        """First matching category, in TriggerType order, skipping waived ones."""
        waived = set(waived)
        for trigger_type in TriggerType:
            if trigger_type in waived:
                continue
            for predicate in self._predicates.get(trigger_type, ()):
                message = predicate(context)
                if message:
                    return trigger_type, message
        return None

    @classmethod
    def from_config(cls, config: Config) -> "TriggerRegistry":
        registry = cls()
        registry.register(TriggerType.ARCHITECTURE, keyword_predicate(config.architecture_keywords))
        registry.register(TriggerType.SECURITY, path_predicate(config.security_paths))
        registry.register(TriggerType.SECURITY, keyword_predicate(config.security_keywords))
        registry.register(TriggerType.DATA, path_predicate(config.data_paths))
        registry.register(
            TriggerType.BREAKING_CHANGE, keyword_predicate(config.breaking_change_keywords)
        )
        registry.register(TriggerType.AMBIGUITY, keyword_predicate(config.ambiguity_keywords))
        return registry


def keyword_predicate(keywords: Iterable[str], include_output: bool = True) -> Predicate:
    """Match any keyword, case-insensitively, in the title, description or output."""
    lowered = [k.lower() for k in keywords if k]

    def predicate(context: TriggerContext) -> str | None:
        parts = [context.ticket.title, context.ticket.description]
        if include_output:
            parts.append(context.output)
        text = "\n".join(p for p in parts if p).lower()
        for keyword in lowered:
            if keyword in text:
                return f"matched '{keyword}' entering {context.state.value}"
        return None

    return predicate


def path_predicate(patterns: Iterable[str]) -> Predicate:
    """Match any estimated file against glob patterns."""
    patterns = list(patterns)

    def predicate(context: TriggerContext) -> str | None:
        for path in sorted(context.ticket.estimated_files):
            for pattern in patterns:
                # "/" prefix lets "*/secrets/*" match a top-level "secrets/x".
                if fnmatchcase(path, pattern) or fnmatchcase("/" + path, pattern):
                    return f"touches '{path}' (matches '{pattern}')"
        return None

    return predicate
