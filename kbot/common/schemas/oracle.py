"""
Oracle Result Schemas

Every LLM judgment is validated into one of these models before the
lifecycle acts on it. List fields are capped so that a verbose model
cannot bloat a stored record.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_EVIDENCE = 3
MAX_FOLLOWUPS = 2
MAX_EVIDENCE_CHARS = 400


def _string_list(value, limit: int, max_chars: Optional[int] = None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    items = [str(v).strip() for v in value if v is not None and str(v).strip()]
    if max_chars:
        items = [item[:max_chars] for item in items]
    return items[:limit]


class Classification(BaseModel):
    """Whether a message is a question, and which knowledge area it belongs to"""
    is_question: bool
    domain_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        try:
            return min(max(float(v), 0.0), 1.0)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("domain_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None or (isinstance(v, str) and v.strip().lower() in ("", "null", "none")):
            return None
        return v


class AnswerResult(BaseModel):
    """Answer drafted from the knowledge document"""
    found: bool
    text: str = ""
    evidence: List[str] = Field(default_factory=list)
    followups: List[str] = Field(default_factory=list)
    needs_escalation: bool = False

    @field_validator("evidence", mode="before")
    @classmethod
    def _cap_evidence(cls, v):
        return _string_list(v, MAX_EVIDENCE, MAX_EVIDENCE_CHARS)

    @field_validator("followups", mode="before")
    @classmethod
    def _cap_followups(cls, v):
        return _string_list(v, MAX_FOLLOWUPS)

    @model_validator(mode="after")
    def _found_needs_text(self):
        if self.found and not self.text.strip():
            raise ValueError("found answer must carry text")
        return self


class SubstantiveCheck(BaseModel):
    """Whether owner replies contain a reusable answer"""
    has_substantive_answer: bool
    rationale: str = ""


class Synthesis(BaseModel):
    """Q&A entry distilled from owner replies"""
    question: str = ""
    answer: str = ""
    should_publish: bool = False

    @model_validator(mode="after")
    def _published_entry_needs_text(self):
        if self.should_publish and not (self.question.strip() and self.answer.strip()):
            raise ValueError("published entry must carry question and answer")
        return self


class CorrectionCheck(BaseModel):
    """Whether owner replies correct a prior bot answer"""
    is_correction: bool
    corrected_aspect: str = ""
    proposed_text: str = ""
    rationale: str = ""

    @model_validator(mode="after")
    def _correction_needs_text(self):
        if self.is_correction and not self.proposed_text.strip():
            raise ValueError("correction must carry proposed_text")
        return self


DIRECT_INTENTS = ("add_domain", "modify_roster", "self_register", "view_roster", "help")
ROSTER_ACTIONS = ("add_member", "remove_member", "promote", "demote", "update_description")


class DirectRequest(BaseModel):
    """Intent parsed from a direct message to the bot"""
    intent: Literal["add_domain", "modify_roster", "self_register", "view_roster", "help"] = "help"
    name: str = ""
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    lead_user_ids: List[str] = Field(default_factory=list)
    document_ref: str = ""
    action: str = ""
    domain_id: str = ""
    target_user_ids: List[str] = Field(default_factory=list)
    member_description: str = ""
    self_register_domain_ids: List[str] = Field(default_factory=list)
    response_message: str = ""

    @field_validator("intent", mode="before")
    @classmethod
    def _unknown_intent_is_help(cls, v):
        return v if v in DIRECT_INTENTS else "help"

    @field_validator("action", mode="before")
    @classmethod
    def _known_action(cls, v):
        return v if v in ROSTER_ACTIONS else ""

    @field_validator("keywords", "lead_user_ids", "target_user_ids", "self_register_domain_ids", mode="before")
    @classmethod
    def _lists(cls, v):
        return _string_list(v, 20)
