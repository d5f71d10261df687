"""
Slack Messaging

- SlackMessaging: outbound Web API calls via ``slack_sdk``'s AsyncWebClient
- SlackEventHandler: Events API webhooks converted to Messages
"""

import hmac
import hashlib
import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from .base import BaseHandler, Message, MessagingClient, Reply

logger = logging.getLogger("kbot.messaging.slack")

_MENTION = re.compile(r"<@(U[A-Z0-9]+)>")


def _ts_after(ts: str, since: str) -> bool:
    try:
        return float(ts) > float(since)
    except (TypeError, ValueError):
        return False


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


class SlackMessaging(MessagingClient):
    """Slack Web API adapter."""

    def __init__(self, token: str = "", client: Optional[AsyncWebClient] = None):
        self._client = client or AsyncWebClient(token=token)
        self.bot_user_id: Optional[str] = None

    @property
    def client(self) -> AsyncWebClient:
        return self._client

    async def identify(self) -> Optional[str]:
        """Look up and remember the bot's own user id"""
        try:
            auth = await self._client.auth_test()
            self.bot_user_id = auth.get("user_id")
        except SlackApiError as e:
            logger.warning("auth.test failed: %s", e.response.get("error"))
        return self.bot_user_id

    async def _thread_messages(self, channel: str, thread_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        cursor = None
        while True:
            kwargs = {"channel": channel, "ts": thread_id, "limit": limit}
            if cursor:
                kwargs["cursor"] = cursor
            response = await self._client.conversations_replies(**kwargs)
            messages.extend(response.get("messages") or [])
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not response.get("has_more") or not cursor:
                return messages

    async def fetch_replies(self, channel: str, thread_id: str, since_id: str) -> List[Reply]:
        messages = await self._thread_messages(channel, thread_id)
        replies = [
            Reply(
                user_id=m.get("user", ""),
                text=m.get("text", ""),
                id=m.get("ts", ""),
                is_automated=bool(m.get("bot_id")) or m.get("subtype") == "bot_message",
            )
            for m in messages
            if _ts_after(m.get("ts", ""), since_id)
        ]
        logger.debug("Thread %s/%s: %d replies after %s", channel, thread_id, len(replies), since_id)
        return replies

    async def post_reply(self, channel: str, thread_id: str, text: str) -> Optional[str]:
        response = await self._client.chat_postMessage(
            channel=channel,
            thread_ts=thread_id,
            text=text,
            mrkdwn=True,
            unfurl_links=False,
        )
        return response.get("ts")

    async def send_direct(self, user_id: str, text: str) -> bool:
        try:
            opened = await self._client.conversations_open(users=user_id)
            dm_channel = (opened.get("channel") or {}).get("id")
            if not dm_channel:
                logger.warning("Could not open DM with %s", user_id)
                return False
            await self._client.chat_postMessage(channel=dm_channel, text=text, mrkdwn=True)
        except SlackApiError as e:
            logger.error("DM to %s failed: %s", user_id, e.response.get("error"))
            return False
        logger.info("Sent DM to %s", user_id)
        return True

    async def thread_context(self, channel: str, thread_id: str, message_id: str) -> str:
        """Last few messages of a thread as ``<@user>: text`` lines"""
        if not thread_id or thread_id == message_id:
            return ""
        try:
            response = await self._client.conversations_replies(channel=channel, ts=thread_id, limit=6, inclusive=True)
        except SlackApiError as e:
            logger.warning("Failed to fetch thread context: %s", e.response.get("error"))
            return ""

        lines = []
        for m in (response.get("messages") or [])[-6:]:
            text = (m.get("text") or "").strip()
            if not text:
                continue
            who = f"<@{m['user']}>" if m.get("user") else "(bot)" if m.get("bot_id") else "(unknown)"
            lines.append(f"{who}: {_truncate(text, 500)}")
        return "\n".join(lines)

    async def channel_name(self, channel_id: str) -> Optional[str]:
        try:
            info = await self._client.conversations_info(channel=channel_id)
        except SlackApiError:
            return None
        return (info.get("channel") or {}).get("name")

    async def resolve_channels(self, names: Iterable[str]) -> Dict[str, str]:
        """Map channel ids to names for the watched channel names"""
        wanted = {n.lstrip("#") for n in names if n}
        found: Dict[str, str] = {}
        if not wanted:
            return found

        cursor = None
        while True:
            kwargs = {"limit": 500, "types": "public_channel,private_channel", "exclude_archived": True}
            if cursor:
                kwargs["cursor"] = cursor
            response = await self._client.conversations_list(**kwargs)
            for channel in response.get("channels") or []:
                if channel.get("name") in wanted and channel.get("id"):
                    found[channel["id"]] = channel["name"]
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

        missing = wanted - set(found.values())
        if missing:
            logger.warning("Could not resolve channels (is the bot a member?): %s", ", ".join(sorted(missing)))
        return found


class SlackEventHandler(BaseHandler):
    """
    Handler for Slack Events API webhooks.

    Processes:
    - message events in channels and DMs
    - app_mention events

    Ignores:
    - Bot messages
    - Edits, deletions and membership notices
    """

    IGNORED_SUBTYPES = {
        "bot_message", "channel_join", "channel_leave", "channel_topic",
        "channel_purpose", "channel_name", "message_changed", "message_deleted",
        "thread_broadcast",
    }

    def __init__(self, signing_secret: str = ""):
        super().__init__("slack")
        self._signing_secret = signing_secret

    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        if raw_data.get("type") != "event_callback":
            return None

        event = raw_data.get("event", {})
        if event.get("type") not in ("message", "app_mention"):
            return None
        if event.get("bot_id") or event.get("subtype") in self.IGNORED_SUBTYPES:
            return None

        text = event.get("text", "")
        return Message(
            text=text,
            user=event.get("user", ""),
            channel=event.get("channel", ""),
            timestamp=event.get("ts", ""),
            channel_type=event.get("channel_type", "channel"),
            thread_ts=event.get("thread_ts"),
            is_bot=False,
            mentions=_MENTION.findall(text),
            raw_data=event,
        )

    def verify_signature(self, body: bytes, signature: str, timestamp: str) -> bool:
        """
        Verify Slack request signature (v0 HMAC-SHA256).

        Requests older than five minutes are rejected.
        """
        if not self._signing_secret:
            # Skip verification if no secret configured
            return True

        if not signature or not timestamp:
            return False

        try:
            ts = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - ts) > 300:
            return False

        basestring = f"v0:{timestamp}:{body.decode('utf-8')}"
        expected = "v0=" + hmac.new(
            self._signing_secret.encode("utf-8"),
            basestring.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def is_url_verification(self, raw_data: Dict[str, Any]) -> bool:
        return raw_data.get("type") == "url_verification"

    def get_challenge(self, raw_data: Dict[str, Any]) -> Optional[str]:
        if self.is_url_verification(raw_data):
            return raw_data.get("challenge")
        return None

    @staticmethod
    def event_key(message: Message) -> str:
        """Dedupe key; message and app_mention events share one"""
        return f"{message.channel}:{message.timestamp}"
