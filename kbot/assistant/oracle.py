"""
Oracle

LLM judgments for the FAQ lifecycle.

Each call renders a prompt, asks the configured LLM for a JSON object, and
validates it into a result model. Anything unusable raises OracleError so
callers can leave the record untouched and retry on the next sweep.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..common.llm_client import LLMClient
from ..common.llm_utils import clip, format_replies, parse_llm_json
from ..common.schemas.oracle import (
    AnswerResult,
    Classification,
    CorrectionCheck,
    DirectRequest,
    SubstantiveCheck,
    Synthesis,
)

logger = logging.getLogger("kbot.assistant.oracle")

M = TypeVar("M", bound=BaseModel)

MAX_DOCUMENT_CHARS = 60000


class OracleError(Exception):
    """LLM unavailable or returned an unusable result."""
    pass


CLASSIFY_POLICY = """You classify Slack messages for an internal FAQ bot.

Set is_question=true only when the message genuinely seeks information about the substance of a knowledge area (how things work, features, integrations, processes).

Set is_question=false for:
- Meta-conversation, greetings, testing the bot, questions about the bot itself
- Requests for someone to PERFORM an action on an account, grant access, or investigate a specific customer issue
- Bug or incident reports
- Messages that merely contain a keyword
"How do I do X?" is a process question (is_question=true).

Pick domain_id from the listed knowledge areas. If it is a genuine question that fits none, use "general". If it is not a question, use null.
{channel_hint}
Knowledge areas:
{areas}

Respond with JSON only: {{"is_question": true/false, "domain_id": "<id>|general|null", "confidence": 0.0-1.0}}"""

ANSWER_POLICY = """You are FAQ Helper, an internal Slack bot for the "{domain_name}" knowledge area.

Rules:
- Use ONLY the FAQ content in the user message. No outside knowledge.
- found=true if the FAQ has relevant, helpful information, even if worded differently or only covering the general case.
- found=false only if the FAQ has NO relevant information; then text is "".
- evidence: 1-3 short verbatim snippets copied from the FAQ (25 words max each) that justify the answer.
- followups: up to 2 clarifying questions, or [].
- needs_escalation=true when the FAQ covers PART of the question but has gaps an owner should fill.

Write text in concise Slack mrkdwn.

Respond with JSON only: {{"found": bool, "text": "...", "evidence": ["..."], "followups": ["..."], "needs_escalation": bool}}"""

SUBSTANTIVE_POLICY = """You decide whether owner replies in a Slack thread justify an FAQ update.

NON-SUBSTANTIVE: acknowledgments ("got it", "looking into it"), pure clarifying questions, deflections ("not sure", "ask X"), replies that never answer the question.
SUBSTANTIVE: a clear explanation, policy, limitation or set of steps that directly answers the question and would help the next person who asks.

Be strict.

Respond with JSON only: {"has_substantive_answer": bool, "rationale": "one sentence"}"""

SYNTHESIZE_POLICY = """You write FAQ entries. Given a question and owner responses, produce one Q&A entry.

Rules:
- Generalize the question (not specific to one person's situation)
- The answer is comprehensive but concise
- should_publish=true only for generally useful knowledge, not one-off edge cases
- Do not add "Q:" or "A:" prefixes
{layout_hint}

Respond with JSON only: {{"question": "...", "answer": "...", "should_publish": bool}}"""

TOGGLE_HINT = "The FAQ uses toggles: write a single-line question and an answer that reads naturally as the toggle body."
FLAT_HINT = "The FAQ uses question headings followed by a paragraph: write a single-line question and an answer paragraph."

CORRECTION_POLICY = """You detect when knowledge-area owners correct an FAQ-based answer from a bot.

Read ALL owner replies together.

A correction: an owner says the answer is wrong, outdated or incomplete; provides contradicting information; or gives an updated policy or fact.
Not a correction: follow-up questions, agreement, extra context that contradicts nothing, thanks, side discussion.

If it is a correction:
- corrected_aspect: which part of the answer or FAQ is wrong
- proposed_text: a complete, standalone replacement FAQ answer incorporating all corrections (prefer the most recent authoritative reply on disagreement)
Otherwise both are "".

Respond with JSON only: {"is_correction": bool, "corrected_aspect": "...", "proposed_text": "...", "rationale": "one sentence"}"""

REVISE_POLICY = """You revise a proposed FAQ update based on owner feedback.
Apply the feedback precisely. Keep the tone, detail and format of the current text.
Return only the revised FAQ answer text, no commentary."""

DIRECT_REQUEST_POLICY = """You interpret direct messages sent to an internal FAQ bot.

Intents:
- add_domain: the sender wants to create a new knowledge area
- modify_roster: the sender wants to add, remove, promote or demote people on a knowledge area, or change what someone is listed as knowing
- self_register: the sender describes their own role or expertise and wants to be listed on matching knowledge areas
- view_roster: the sender wants to see knowledge areas and who owns them
- help: anything else

For add_domain extract: name, description, keywords, lead_user_ids (from <@U...> mentions), document_ref (a Notion URL or id).
For modify_roster extract: action (add_member, remove_member, promote, demote, update_description), domain_id (the ID of the area meant), target_user_ids (from <@U...> mentions), member_description (what the person knows, if given).
For self_register extract: self_register_domain_ids (IDs of the areas matching the sender's expertise), member_description (a one-line summary of that expertise).
Use "" or [] when absent.
response_message: a short, friendly reply written like a teammate.
{lead_note}
Existing knowledge areas:
{areas}

Respond with JSON only: {{"intent": "add_domain|modify_roster|self_register|view_roster|help", "name": "", "description": "", "keywords": [], "lead_user_ids": [], "document_ref": "", "action": "", "domain_id": "", "target_user_ids": [], "member_description": "", "self_register_domain_ids": [], "response_message": ""}}"""


def _describe_domains(domains: Iterable) -> str:
    lines = []
    for d in domains:
        line = f'- ID: "{d.id}"\n  Name: "{d.name}"'
        if getattr(d, "description", ""):
            line += f"\n  Description: {d.description}"
        if getattr(d, "keywords", None):
            line += f"\n  Keywords: {', '.join(d.keywords)}"
        lines.append(line)
    return "\n\n".join(lines) or "(none)"


class Oracle:
    """LLM-backed classification, answering, synthesis and correction checks."""

    def __init__(self, llm: LLMClient):
        self._llm = llm

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    async def _generate(self, system: str, prompt: str, max_tokens: int) -> str:
        try:
            return await self._llm.generate(prompt, system=system, max_tokens=max_tokens)
        except Exception as e:
            raise OracleError(f"LLM call failed: {e}") from e

    async def _ask(self, model: Type[M], system: str, prompt: str, max_tokens: int = 600) -> M:
        raw = await self._generate(system, prompt, max_tokens)
        data = parse_llm_json(raw)
        if not data:
            raise OracleError(f"{model.__name__}: no JSON object in response")
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise OracleError(f"{model.__name__}: invalid result: {e.errors()[0].get('msg')}") from e

    async def classify(self, text: str, domains: Sequence, channel_name: Optional[str] = None) -> Classification:
        channel_hint = ""
        if channel_name:
            channel_hint = (
                f'\nThe message was posted in "#{channel_name}". A channel name that relates to a '
                "knowledge area is a strong signal for that area.\n"
            )
        system = CLASSIFY_POLICY.format(areas=_describe_domains(domains), channel_hint=channel_hint)
        result = await self._ask(Classification, system, clip(text, 4000), max_tokens=200)

        known = {d.id for d in domains} | {"general"}
        if result.domain_id and result.domain_id not in known:
            logger.info("Classifier returned unknown domain %r, treating as general", result.domain_id)
            result.domain_id = "general"
        return result

    async def answer(self, question: str, thread_context: str, document: str, domain_name: str) -> AnswerResult:
        system = ANSWER_POLICY.format(domain_name=domain_name)
        prompt = (
            f"SLACK QUESTION:\n{question}\n\n"
            f"THREAD CONTEXT (may be empty):\n{thread_context or '(none)'}\n\n"
            f"FAQ (source of truth):\n{clip(document, MAX_DOCUMENT_CHARS)}"
        )
        return await self._ask(AnswerResult, system, prompt, max_tokens=900)

    async def check_substantive(self, question: str, replies: Sequence) -> SubstantiveCheck:
        prompt = f"ORIGINAL QUESTION:\n{question}\n\nOWNER RESPONSES:\n{format_replies(replies)}"
        return await self._ask(SubstantiveCheck, SUBSTANTIVE_POLICY, prompt, max_tokens=300)

    async def synthesize(self, question: str, replies: Sequence, style=None) -> Synthesis:
        layout = getattr(style, "layout", "flat")
        system = SYNTHESIZE_POLICY.format(layout_hint=TOGGLE_HINT if layout == "toggle" else FLAT_HINT)
        prompt = f"ORIGINAL QUESTION:\n{question}\n\nOWNER RESPONSES:\n{format_replies(replies)}"
        return await self._ask(Synthesis, system, prompt, max_tokens=800)

    async def check_correction(
        self,
        question: str,
        prior_answer: str,
        evidence: List[str],
        replies: Sequence,
    ) -> CorrectionCheck:
        evidence_block = "\n".join(f"{i}. {e}" for i, e in enumerate(evidence or [], 1)) or "(none)"
        prompt = (
            f"ORIGINAL QUESTION:\n{question}\n\n"
            f"BOT'S ANSWER (based on FAQ):\n{prior_answer}\n\n"
            f"FAQ EVIDENCE USED:\n{evidence_block}\n\n"
            f"OWNER REPLIES (chronological):\n{format_replies(replies) or '(none)'}"
        )
        return await self._ask(CorrectionCheck, CORRECTION_POLICY, prompt, max_tokens=900)

    async def revise_proposal(self, question: str, current_text: str, feedback: str) -> str:
        prompt = (
            f"ORIGINAL QUESTION (for context):\n{question}\n\n"
            f"CURRENT PROPOSED FAQ UPDATE:\n{current_text}\n\n"
            f"OWNER FEEDBACK:\n{feedback}"
        )
        return (await self._generate(REVISE_POLICY, prompt, max_tokens=1000)).strip()

    async def parse_direct_request(self, text: str, domains: Sequence, sender_is_lead: bool) -> DirectRequest:
        lead_note = "" if sender_is_lead else "The sender is not a lead and cannot add knowledge areas or change rosters.\n"
        system = DIRECT_REQUEST_POLICY.format(lead_note=lead_note, areas=_describe_domains(domains))
        return await self._ask(DirectRequest, system, clip(text, 4000), max_tokens=700)
