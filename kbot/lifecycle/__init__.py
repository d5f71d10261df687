"""
Lifecycle

Question intake, the periodic synthesis/correction sweep, and the
direct-message approval flows.
"""

from .approvals import ConversationHandler, classify_reply
from .channel_router import ChannelRouter
from .jobs import SynthesisJob

__all__ = [
    "ConversationHandler",
    "classify_reply",
    "ChannelRouter",
    "SynthesisJob",
]
