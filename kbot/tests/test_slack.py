"""Tests for the Slack adapter and event handler."""

import hashlib
import hmac
import time

import pytest
from unittest.mock import AsyncMock, Mock

from slack_sdk.errors import SlackApiError

from kbot.messaging.base import DedupeWindow, Message, looks_like_question
from kbot.messaging.slack import SlackEventHandler, SlackMessaging


def _sign(secret, body, timestamp):
    base = f"v0:{timestamp}:{body.decode('utf-8')}"
    return "v0=" + hmac.new(secret.encode(), base.encode(), hashlib.sha256).hexdigest()


def _event(**event):
    return {"type": "event_callback", "event": {"type": "message", "channel": "C1", "user": "U1", "ts": "1.0", **event}}


class TestVerifySignature:
    def test_valid_signature(self):
        handler = SlackEventHandler(signing_secret="shh")
        body = b'{"type":"event_callback"}'
        ts = str(int(time.time()))
        assert handler.verify_signature(body, _sign("shh", body, ts), ts)

    def test_wrong_secret(self):
        handler = SlackEventHandler(signing_secret="shh")
        body = b"{}"
        ts = str(int(time.time()))
        assert not handler.verify_signature(body, _sign("other", body, ts), ts)

    def test_replayed_request_rejected(self):
        handler = SlackEventHandler(signing_secret="shh")
        body = b"{}"
        ts = str(int(time.time()) - 600)
        assert not handler.verify_signature(body, _sign("shh", body, ts), ts)

    def test_missing_headers(self):
        assert not SlackEventHandler(signing_secret="shh").verify_signature(b"{}", "", "")

    def test_no_secret_skips_verification(self):
        assert SlackEventHandler().verify_signature(b"{}", "", "")


class TestParseEvent:
    @pytest.mark.asyncio
    async def test_channel_message(self):
        message = await SlackEventHandler().parse_event(
            _event(text="How do refunds work? <@UBOT>", thread_ts="0.5", channel_type="channel")
        )
        assert message.text.startswith("How do refunds")
        assert message.thread_id == "0.5"
        assert message.is_thread_reply
        assert message.mentions == ["UBOT"]
        assert not message.is_direct

    @pytest.mark.asyncio
    async def test_direct_message(self):
        message = await SlackEventHandler().parse_event(_event(text="yes", channel_type="im"))
        assert message.is_direct

    @pytest.mark.asyncio
    async def test_bot_and_edit_events_ignored(self):
        handler = SlackEventHandler()
        assert await handler.parse_event(_event(text="hi", bot_id="B1")) is None
        assert await handler.parse_event(_event(text="hi", subtype="message_changed")) is None

    @pytest.mark.asyncio
    async def test_other_payloads_ignored(self):
        handler = SlackEventHandler()
        assert await handler.parse_event({"type": "url_verification", "challenge": "c"}) is None
        assert await handler.parse_event({"type": "event_callback", "event": {"type": "reaction_added"}}) is None

    def test_url_verification(self):
        handler = SlackEventHandler()
        payload = {"type": "url_verification", "challenge": "abc"}
        assert handler.is_url_verification(payload)
        assert handler.get_challenge(payload) == "abc"


class TestSlackMessaging:
    @pytest.mark.asyncio
    async def test_fetch_replies_after_since_id(self):
        client = Mock()
        client.conversations_replies = AsyncMock(return_value={
            "messages": [
                {"ts": "1.0", "user": "UASK", "text": "question"},
                {"ts": "2.0", "bot_id": "B1", "text": "bot answer"},
                {"ts": "3.0", "user": "U1", "text": "owner reply"},
            ],
            "has_more": False,
        })
        messaging = SlackMessaging(client=client)

        replies = await messaging.fetch_replies("C1", "1.0", "1.0")

        assert [r.id for r in replies] == ["2.0", "3.0"]
        assert replies[0].is_automated
        assert not replies[1].is_automated

    @pytest.mark.asyncio
    async def test_fetch_replies_follows_cursor(self):
        client = Mock()
        client.conversations_replies = AsyncMock(side_effect=[
            {"messages": [{"ts": "2.0", "user": "U1", "text": "a"}], "has_more": True,
             "response_metadata": {"next_cursor": "next"}},
            {"messages": [{"ts": "3.0", "user": "U2", "text": "b"}], "has_more": False},
        ])
        replies = await SlackMessaging(client=client).fetch_replies("C1", "1.0", "1.0")
        assert [r.user_id for r in replies] == ["U1", "U2"]
        assert client.conversations_replies.call_args_list[1].kwargs["cursor"] == "next"

    @pytest.mark.asyncio
    async def test_post_reply_in_thread(self):
        client = Mock()
        client.chat_postMessage = AsyncMock(return_value={"ts": "9.9"})
        ts = await SlackMessaging(client=client).post_reply("C1", "1.0", "hello")
        assert ts == "9.9"
        assert client.chat_postMessage.call_args.kwargs["thread_ts"] == "1.0"

    @pytest.mark.asyncio
    async def test_send_direct(self):
        client = Mock()
        client.conversations_open = AsyncMock(return_value={"channel": {"id": "D1"}})
        client.chat_postMessage = AsyncMock(return_value={"ts": "1"})
        assert await SlackMessaging(client=client).send_direct("U1", "hi") is True
        assert client.chat_postMessage.call_args.kwargs["channel"] == "D1"

    @pytest.mark.asyncio
    async def test_send_direct_failure_returns_false(self):
        client = Mock()
        client.conversations_open = AsyncMock(
            side_effect=SlackApiError("failed", {"ok": False, "error": "user_not_found"})
        )
        assert await SlackMessaging(client=client).send_direct("U1", "hi") is False

    @pytest.mark.asyncio
    async def test_resolve_channels(self):
        client = Mock()
        client.conversations_list = AsyncMock(return_value={
            "channels": [{"id": "C1", "name": "support"}, {"id": "C2", "name": "random"}],
            "response_metadata": {"next_cursor": ""},
        })
        found = await SlackMessaging(client=client).resolve_channels(["#support", "missing"])
        assert found == {"C1": "support"}

    @pytest.mark.asyncio
    async def test_thread_context_skips_top_level(self):
        client = Mock()
        client.conversations_replies = AsyncMock()
        assert await SlackMessaging(client=client).thread_context("C1", "1.0", "1.0") == ""
        client.conversations_replies.assert_not_called()


class TestHelpers:
    def test_looks_like_question(self):
        assert looks_like_question("How do refunds work")
        assert looks_like_question("refunds?")
        assert not looks_like_question("thanks all")
        assert not looks_like_question("")

    def test_dedupe_window(self):
        now = [0.0]
        window = DedupeWindow(ttl_seconds=300, clock=lambda: now[0])
        assert window.seen("C1:1.0") is False
        assert window.seen("C1:1.0") is True
        now[0] = 301
        assert window.seen("C1:1.0") is False

    def test_message_without_text_invalid(self):
        assert not Message(text="   ", user="U1", channel="C1", timestamp="1").is_valid
