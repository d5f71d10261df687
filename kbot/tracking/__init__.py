"""
Tracking

Durable record stores for the question lifecycle.
"""

from .repository import RecordRepository, JsonRecordRepository
from .escalations import EscalationStore
from .answers import TrackedAnswerStore
from .pending_actions import PendingActionStore
from .corrections_ledger import CorrectionLedger

__all__ = [
    "RecordRepository",
    "JsonRecordRepository",
    "EscalationStore",
    "TrackedAnswerStore",
    "PendingActionStore",
    "CorrectionLedger",
]
