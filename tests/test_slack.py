"""Tests for the Slack integration."""

from unittest.mock import MagicMock, patch

import pytest
from slack_sdk.errors import SlackApiError

from helpers import make_ticket
from ticket_orchestrator.db.models import EscalationRecord, Resolution, TriggerType
from ticket_orchestrator.integrations import slack


@pytest.fixture
def record():
    return EscalationRecord(
        id=7, ticket_id="T1", trigger_type=TriggerType.SECURITY, context="touches auth"
    )


class TestParseReply:
    @pytest.mark.parametrize("text,expected", [
        ("approve", (Resolution.APPROVED_CONTINUE, "")),
        ("Approved: looks fine", (Resolution.APPROVED_CONTINUE, "looks fine")),
        ("reject - needs a design doc", (Resolution.REJECTED, "needs a design doc")),
        ("REJECTED", (Resolution.REJECTED, "")),
    ])
    def test_decisions(self, text, expected):
        assert slack.parse_reply(text) == expected

    @pytest.mark.parametrize("text", ["", "lgtm", "I approve", "approvedish"])
    def test_not_a_decision(self, text):
        assert slack.parse_reply(text) is None


class TestFormatting:
    def test_escalation_blocks(self, record):
        blocks = slack.format_escalation(record, make_ticket("T1", title="Rotate keys"))
        text = blocks[0]["text"]["text"]
        assert "Escalation #7: security" in text
        assert "*Rotate keys*" in text
        assert "touches auth" in text

    def test_run_summary(self):
        ticket = make_ticket("T1", quality_score=91.5, security_flagged=True)
        blocks = slack.format_run_summary({"completed": 1, "failed": 2}, [ticket])
        text = blocks[0]["text"]["text"]
        assert "Completed: 1" in text
        assert "Failed: 2" in text
        assert ":lock: `T1`" in text
        assert "score 91.5" in text


class TestSendMessage:
    def test_requires_token(self):
        with pytest.raises(slack.SlackError, match="SLACK_BOT_TOKEN"):
            slack.send_message(None, "#ops", "hello")

    @patch("ticket_orchestrator.integrations.slack.get_client")
    def test_posts(self, mock_get_client):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "111.222"}
        mock_get_client.return_value = client

        message = slack.send_message("xoxb-token", "#ops", "hello")
        assert message == slack.SlackMessage(channel="C1", ts="111.222", text="hello")
        client.chat_postMessage.assert_called_once_with(
            channel="#ops", text="hello", blocks=None, thread_ts=None
        )


class TestResponder:
    @patch("ticket_orchestrator.integrations.slack.get_client")
    def test_notify_then_poll(self, mock_get_client, record):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "111.222"}
        client.conversations_replies.return_value = {
            "messages": [
                {"text": "Escalation #7"},
                {"text": "who owns this?"},
                {"text": "approve rotated already"},
                {"text": "reject"},
            ]
        }
        mock_get_client.return_value = client

        lookup = MagicMock(return_value=make_ticket("T1"))
        responder = slack.SlackResponder("xoxb-token", "#ops", ticket_lookup=lookup)
        responder.notify(record)
        lookup.assert_called_once_with("T1")

        assert responder.poll() == [(7, Resolution.APPROVED_CONTINUE, "rotated already")]
        client.conversations_replies.assert_called_once_with(channel="C1", ts="111.222")
        # Answered threads are not polled again.
        assert responder.poll() == []

    @patch("ticket_orchestrator.integrations.slack.get_client")
    def test_unanswered_thread_stays_open(self, mock_get_client, record):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "111.222"}
        client.conversations_replies.return_value = {"messages": [{"text": "Escalation #7"}]}
        mock_get_client.return_value = client

        responder = slack.SlackResponder("xoxb-token", "#ops")
        responder.notify(record)
        assert responder.poll() == []
        assert responder.poll() == []
        assert client.conversations_replies.call_count == 2

    @patch("ticket_orchestrator.integrations.slack.get_client")
    def test_failed_thread_read_keeps_other_answers(self, mock_get_client):
        client = MagicMock()
        client.chat_postMessage.side_effect = [
            {"channel": "C1", "ts": "1.1"},
            {"channel": "C1", "ts": "2.2"},
        ]
        client.conversations_replies.side_effect = [
            {"messages": [{"text": "Escalation #1"}, {"text": "approve ok"}]},
            SlackApiError("ratelimited", {"ok": False, "error": "ratelimited"}),
            {"messages": [{"text": "Escalation #2"}, {"text": "reject"}]},
        ]
        mock_get_client.return_value = client

        responder = slack.SlackResponder("xoxb-token", "#ops")
        for escalation_id in (1, 2):
            responder.notify(EscalationRecord(
                id=escalation_id, ticket_id=f"T{escalation_id}", trigger_type=TriggerType.SECURITY
            ))

        assert responder.poll() == [(1, Resolution.APPROVED_CONTINUE, "ok")]
        assert responder.pending == [2]
        assert responder.poll() == [(2, Resolution.REJECTED, "")]
        assert responder.pending == []

    @patch("ticket_orchestrator.integrations.slack.get_client")
    def test_threads_settled_elsewhere_are_dropped(self, mock_get_client, record):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "111.222"}
        mock_get_client.return_value = client
        settled = set()

        responder = slack.SlackResponder("xoxb-token", "#ops", is_open=lambda eid: eid not in settled)
        responder.notify(record)
        settled.add(record.id)

        assert responder.poll() == []
        assert responder.pending == []
        client.conversations_replies.assert_not_called()
