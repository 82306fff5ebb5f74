"""Slack Web API integration: escalation notices and run summaries."""

import logging
import re
from dataclasses import dataclass

from ticket_orchestrator.db.models import EscalationRecord, Resolution, Ticket

logger = logging.getLogger(__name__)

_REPLY_PATTERN = re.compile(r"^\s*(approve|approved|reject|rejected)\b[\s:,-]*(.*)$", re.I | re.S)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    thread_ts: str | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
        thread_ts=thread_ts,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_escalation(record: EscalationRecord, ticket: Ticket | None = None) -> list[dict]:
    """Format an escalation as Slack blocks."""
    title = f"*{ticket.title}* (`{record.ticket_id}`)" if ticket else f"`{record.ticket_id}`"
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Escalation #{record.id}: {record.trigger_type.value}*\n"
                    f"{title}\n{record.context}"
                ),
            },
        },
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": "Reply in thread with `approve <note>` or `reject <note>`."}
            ],
        },
    ]


def format_run_summary(counts: dict[str, int], review: list[Ticket]) -> list[dict]:
    """Format a scheduler run summary as Slack blocks."""
    lines = [
        ":bar_chart: *Ticket run summary*",
        f":white_check_mark: Completed: {counts.get('completed', 0)} | "
        f":x: Failed: {counts.get('failed', 0)} | "
        f":fast_forward: Skipped: {counts.get('skipped', 0)} | "
        f":rotating_light: Escalated: {counts.get('escalated', 0)} | "
        f":hourglass: Queued: {counts.get('queued', 0)}",
    ]
    for ticket in review[:10]:
        flag = ":lock: " if ticket.security_flagged else ""
        score = f"{ticket.quality_score:g}" if ticket.quality_score is not None else "-"
        lines.append(f"{flag}`{ticket.id}` {ticket.title} (score {score})")
    return [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}]


def parse_reply(text: str) -> tuple[Resolution, str] | None:
    """Read ``approve <note>`` / ``reject <note>`` from a thread reply."""
    match = _REPLY_PATTERN.match(text or "")
    if not match:
        return None
    verb, note = match.groups()
    resolution = (
        Resolution.APPROVED_CONTINUE if verb.lower().startswith("approve") else Resolution.REJECTED
    )
    return resolution, note.strip()


class SlackResponder:
    """Human review responder backed by a Slack channel.

    Each escalation is posted to ``channel``; the first thread reply that
    reads ``approve ...`` or ``reject ...`` becomes its resolution. Threads
    whose escalation ``is_open`` reports as settled (e.g. resolved from the
    CLI) are dropped without another Slack call.
    """

    def __init__(self, token: str, channel: str, ticket_lookup=None, is_open=None):
        self.token = token
        self.channel = channel
        self.ticket_lookup = ticket_lookup
        self.is_open = is_open
        self._threads: dict[int, SlackMessage] = {}

    def notify(self, record: EscalationRecord) -> None:
        ticket = self.ticket_lookup(record.ticket_id) if self.ticket_lookup else None
        text = f"Escalation #{record.id} ({record.trigger_type.value}) on {record.ticket_id}"
        message = send_message(
            self.token, self.channel, text, blocks=format_escalation(record, ticket)
        )
        self._threads[record.id] = message

    @property
    def pending(self) -> list[int]:
        """Escalation ids still waiting on a Slack reply."""
        return list(self._threads)

    def poll(self) -> list[tuple[int, Resolution, str]]:
        client = get_client(self.token)
        if not client:
            return []
        from slack_sdk.errors import SlackApiError

        answers: list[tuple[int, Resolution, str]] = []
        for escalation_id, message in list(self._threads.items()):
            if self.is_open is not None and not self.is_open(escalation_id):
                logger.debug("Escalation %s settled elsewhere; no longer watching Slack", escalation_id)
                del self._threads[escalation_id]
                continue
            try:
                response = client.conversations_replies(channel=message.channel, ts=message.ts)
            except (SlackApiError, OSError) as e:
                logger.warning("Could not read Slack thread for escalation %s: %s", escalation_id, e)
                continue
            for reply in response.get("messages", [])[1:]:
                parsed = parse_reply(reply.get("text", ""))
                if parsed:
                    logger.info("Escalation %s answered in Slack: %s", escalation_id, parsed[0].value)
                    answers.append((escalation_id, parsed[0], parsed[1]))
                    break

        for escalation_id, _, _ in answers:
            del self._threads[escalation_id]
        return answers
