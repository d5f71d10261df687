"""
Messaging Base

Common message format, the outbound messaging contract, and the inbound
event-handler contract.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class Message:
    """
    Inbound message in a source-independent shape.

    ``channel_type`` is "im" for direct messages and "channel"/"group" for
    conversation channels.
    """
    text: str
    user: str
    channel: str
    timestamp: str
    channel_type: str = "channel"
    thread_ts: Optional[str] = None
    is_bot: bool = False
    mentions: List[str] = field(default_factory=list)
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def is_direct(self) -> bool:
        return self.channel_type == "im"

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.timestamp

    @property
    def thread_id(self) -> str:
        """Thread this message lives in, or starts"""
        return self.thread_ts or self.timestamp

    @property
    def is_valid(self) -> bool:
        return bool(self.text and self.text.strip())


@dataclass
class Reply:
    """A message in a thread, as returned by ``fetch_replies``"""
    user_id: str
    text: str
    id: str
    is_automated: bool = False


class MessagingClient(ABC):
    """Outbound messaging operations the lifecycle depends on."""

    @abstractmethod
    async def fetch_replies(self, channel: str, thread_id: str, since_id: str) -> List[Reply]:
        """Thread replies strictly after ``since_id``, oldest first"""
        pass

    @abstractmethod
    async def post_reply(self, channel: str, thread_id: str, text: str) -> Optional[str]:
        """Post into a thread; returns the new message id"""
        pass

    @abstractmethod
    async def send_direct(self, user_id: str, text: str) -> bool:
        """Send a direct message; returns whether delivery succeeded"""
        pass

    async def thread_context(self, channel: str, thread_id: str, message_id: str) -> str:
        return ""


class BaseHandler(ABC):
    """
    Abstract base class for inbound event handlers.

    Each handler must implement:
    - parse_event: Convert raw event to Message
    - verify_signature: Verify webhook signature
    """

    def __init__(self, source_name: str):
        self.source_name = source_name

    @abstractmethod
    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        pass

    @abstractmethod
    def verify_signature(self, body: bytes, signature: str, timestamp: str) -> bool:
        pass

    def should_process(self, message: Message) -> bool:
        """Skip bot and empty messages"""
        return message.is_valid and not message.is_bot


_QUESTION_STARTERS = (
    "how", "what", "when", "where", "who", "why",
    "can ", "could ", "would ", "does ", "do ", "is ", "are ", "should ",
    "anyone know", "any idea",
)


def looks_like_question(text: Optional[str]) -> bool:
    """Cheap lexical pre-check before asking the oracle"""
    t = (text or "").strip().lower()
    if not t:
        return False
    return "?" in t or t.startswith(_QUESTION_STARTERS)


class DedupeWindow:
    """Remembers keys for ``ttl_seconds`` so retried events are handled once."""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: Dict[str, float] = {}

    def seen(self, key: str) -> bool:
        """True if ``key`` was seen within the window; records it otherwise."""
        now = self._clock()
        self._seen = {k: ts for k, ts in self._seen.items() if now - ts <= self._ttl}
        if key in self._seen:
            return True
        self._seen[key] = now
        return False
