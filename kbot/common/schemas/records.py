"""
Tracking Record Schemas

Durable records for the question lifecycle:
- Escalation: a question the bot could not answer, routed to owners
- TrackedAnswer: an answer the bot gave, watched for owner corrections
- PendingAction: one in-flight multi-turn exchange per user
- AppliedCorrection: ledger entry guaranteeing one document write per correction

Status fields only move forward; terminal records are pruned by age.
"""

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_record_id(prefix: str) -> str:
    """Generate ``<prefix>_<epoch-ms>_<8 hex>``"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


# ============================================================================
# Enums
# ============================================================================

class EscalationStatus(str, Enum):
    """Escalation lifecycle"""
    AWAITING_RESPONSE = "awaiting_response"
    READY_TO_SYNTHESIZE = "ready_to_synthesize"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class AnswerStatus(str, Enum):
    """Tracked answer lifecycle"""
    ACTIVE = "active"
    PENDING_CORRECTION = "pending_correction"
    CORRECTED = "corrected"
    PROCESSED = "processed"


class PendingIntent(str, Enum):
    """Multi-turn conversation intents"""
    ADD_DOMAIN = "add_domain"
    CORRECTION_APPROVAL = "correction_approval"


class CorrectionState(str, Enum):
    """Applied-correction ledger states"""
    APPLYING = "applying"
    APPLIED = "applied"


ESCALATION_TERMINAL = frozenset({EscalationStatus.COMPLETED, EscalationStatus.SKIPPED})
ANSWER_TERMINAL = frozenset({AnswerStatus.CORRECTED, AnswerStatus.PROCESSED})


# ============================================================================
# Records
# ============================================================================

class Escalation(BaseModel):
    """An unanswered question waiting on its owners."""
    id: str = Field(default_factory=lambda: new_record_id("esc"))
    channel: str
    thread_id: str
    origin_message_id: str
    domain_id: str
    original_question: str
    owner_user_ids: Set[str] = Field(default_factory=set)
    status: EscalationStatus = EscalationStatus.AWAITING_RESPONSE
    escalated_at: datetime = Field(default_factory=utc_now)
    first_response_at: Optional[datetime] = None
    synthesize_after: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skipped_at: Optional[datetime] = None
    document_url: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ESCALATION_TERMINAL

    @property
    def terminal_at(self) -> datetime:
        return self.completed_at or self.skipped_at or self.escalated_at


class TrackedAnswer(BaseModel):
    """A bot answer that owners may still correct."""
    id: str = Field(default_factory=lambda: new_record_id("ans"))
    channel: str
    thread_id: str
    answer_message_id: str
    domain_id: str
    original_question: str
    bot_answer: str
    evidence: List[str] = Field(default_factory=list)
    owner_user_ids: Set[str] = Field(default_factory=set)
    document_source_ids: List[str] = Field(default_factory=list)
    status: AnswerStatus = AnswerStatus.ACTIVE
    responding_owner_ids: Set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=utc_now)
    first_response_at: Optional[datetime] = None
    process_after: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    corrected_at: Optional[datetime] = None
    outcome: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in ANSWER_TERMINAL

    @property
    def terminal_at(self) -> datetime:
        return self.corrected_at or self.processed_at or self.created_at


class PendingAction(BaseModel):
    """Per-user conversation state, valid until ``expires_at``."""
    user_id: str
    intent: PendingIntent
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    @property
    def correction_id(self) -> Optional[str]:
        if self.intent != PendingIntent.CORRECTION_APPROVAL:
            return None
        return self.payload.get("correction_id")


class AppliedCorrection(BaseModel):
    """Ledger entry for a correction that is being or has been written."""
    correction_id: str
    state: CorrectionState = CorrectionState.APPLYING
    claimed_by: Optional[str] = None
    claimed_at: datetime = Field(default_factory=utc_now)
    applied_at: Optional[datetime] = None
    url: Optional[str] = None
