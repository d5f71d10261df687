"""
Messaging

Inbound event parsing and outbound Slack calls.
"""

from .base import BaseHandler, Message, MessagingClient, Reply, DedupeWindow, looks_like_question
from .slack import SlackEventHandler, SlackMessaging

__all__ = [
    "BaseHandler",
    "Message",
    "MessagingClient",
    "Reply",
    "DedupeWindow",
    "looks_like_question",
    "SlackEventHandler",
    "SlackMessaging",
]
