"""
Knowledge Bot Schemas

Durable tracking records and validated oracle results.
"""

from .records import (
    Escalation,
    EscalationStatus,
    TrackedAnswer,
    AnswerStatus,
    PendingAction,
    PendingIntent,
    AppliedCorrection,
    CorrectionState,
    new_record_id,
    utc_now,
)
from .oracle import (
    Classification,
    AnswerResult,
    SubstantiveCheck,
    Synthesis,
    CorrectionCheck,
    DirectRequest,
)

__all__ = [
    "Escalation",
    "EscalationStatus",
    "TrackedAnswer",
    "AnswerStatus",
    "PendingAction",
    "PendingIntent",
    "AppliedCorrection",
    "CorrectionState",
    "new_record_id",
    "utc_now",
    "Classification",
    "AnswerResult",
    "SubstantiveCheck",
    "Synthesis",
    "CorrectionCheck",
    "DirectRequest",
]
