"""
Channel Router

Turns channel messages into lifecycle records:

- Owner replies in a tracked thread start the escalation or correction timer
- New questions are classified, answered from the FAQ when possible, and
  escalated to the knowledge area's owners when not
"""

import logging
import re
from typing import Dict, List, Optional

from ..assistant.oracle import Oracle
from ..common.config import GENERAL_FAQ_ID, TimingConfig
from ..knowledge.cache import DocumentCache
from ..knowledge.directory import KnowledgeDirectory, KnowledgeDomain
from ..knowledge.notion import extract_page_id, page_url
from ..messaging.base import DedupeWindow, Message, MessagingClient, looks_like_question
from ..tracking.answers import TrackedAnswerStore
from ..tracking.escalations import EscalationStore
from . import formatting

logger = logging.getLogger("kbot.lifecycle.channel_router")

# Outcomes returned by handle_channel_message
IGNORED = "ignored"
RESPONSE_RECORDED = "response_recorded"
NOT_A_QUESTION = "not_a_question"
ANSWERED = "answered"
PARTIAL = "partial"
ESCALATED = "escalated"
SILENT = "silent"


class ChannelRouter:
    """Question intake and thread-reply tracking for watched channels."""

    def __init__(
        self,
        escalations: EscalationStore,
        answers: TrackedAnswerStore,
        directory: KnowledgeDirectory,
        cache: DocumentCache,
        messaging: MessagingClient,
        oracle: Oracle,
        timing: Optional[TimingConfig] = None,
        watch_channels: Optional[Dict[str, str]] = None,
        bot_user_id: Optional[str] = None,
        dedupe: Optional[DedupeWindow] = None,
    ):
        """
        Args:
            watch_channels: Channel id to name for the channels to serve;
                None serves every channel the bot receives events for
            bot_user_id: Bot's own user id, for mention detection
        """
        self._escalations = escalations
        self._answers = answers
        self._directory = directory
        self._cache = cache
        self._messaging = messaging
        self._oracle = oracle
        self._timing = timing or TimingConfig()
        self._watch = watch_channels
        self.bot_user_id = bot_user_id
        self._dedupe = dedupe or DedupeWindow()

    def _mention_pattern(self) -> Optional[re.Pattern]:
        if not self.bot_user_id:
            return None
        return re.compile(rf"<@{re.escape(self.bot_user_id)}>")

    async def handle_channel_message(self, message: Message) -> str:
        if message.is_bot or message.is_direct or not message.is_valid:
            return IGNORED
        if self.bot_user_id and message.user == self.bot_user_id:
            return IGNORED
        if self._watch is not None and message.channel not in self._watch:
            return IGNORED
        if self._dedupe.seen(f"{message.channel}:{message.timestamp}"):
            logger.debug("Duplicate event %s ignored", message.timestamp)
            return IGNORED

        if message.is_thread_reply and self._record_owner_reply(message):
            return RESPONSE_RECORDED

        text = message.text.strip()
        mention = self._mention_pattern()
        is_mention = bool(mention and mention.search(text))
        if is_mention:
            text = re.sub(r"\s{2,}", " ", mention.sub("", text)).strip()
            if not text:
                return IGNORED

        if not is_mention and not looks_like_question(text):
            return IGNORED

        return await self._handle_question(message, text, is_mention)

    # =========================================================================
    # Thread replies
    # =========================================================================

    def _record_owner_reply(self, message: Message) -> bool:
        """Start timers for an owner reply; True if the reply belonged to a tracked thread owner."""
        recorded = False

        escalation = self._escalations.active_for_thread(message.channel, message.thread_id)
        if escalation and message.user in escalation.owner_user_ids:
            self._escalations.record_response(escalation.id, self._timing.synthesis_delay_seconds)
            recorded = True

        answer = self._answers.active_for_thread(message.channel, message.thread_id)
        if answer:
            responders = set(self._directory.responders_for(answer.domain_id))
            if message.user in responders:
                self._answers.record_response(answer.id, message.user, self._timing.correction_check_delay_seconds)
                recorded = True

        if recorded:
            logger.info("Owner %s replied in tracked thread %s", message.user, message.thread_id)
        return recorded

    # =========================================================================
    # Questions
    # =========================================================================

    async def _handle_question(self, message: Message, text: str, is_mention: bool) -> str:
        domains = self._directory.all()
        channel_name = (self._watch or {}).get(message.channel)

        classification = await self._oracle.classify(text, domains, channel_name)
        logger.info(
            "Classified message %s: question=%s domain=%s confidence=%.2f",
            message.timestamp, classification.is_question, classification.domain_id, classification.confidence,
        )

        domain_id = classification.domain_id
        if not classification.is_question or not domain_id:
            if not is_mention:
                return NOT_A_QUESTION
            domain_id = "general"
        if domain_id == "general":
            domain_id = GENERAL_FAQ_ID

        domain = self._directory.resolve(domain_id)
        if domain is None:
            logger.info("Domain %s unavailable, not answering", domain_id)
            return NOT_A_QUESTION

        if not is_mention and not domain.is_general and message.user in domain.owner_user_ids:
            logger.info("%s owns %r, not answering their question", message.user, domain.name)
            return IGNORED

        return await self._answer(message, text, domain)

    async def _load_document(self, domain: KnowledgeDomain) -> str:
        sections = [await self._cache.get(domain.document_ref)]
        for ref in domain.source_refs:
            try:
                sections.append(await self._cache.get(ref))
            except Exception as e:
                logger.warning("Source page %s unavailable: %s", ref, e)
        return "\n\n".join(s for s in sections if s)

    def _escalation_targets(self, domain: KnowledgeDomain) -> List[str]:
        return list(domain.lead_user_ids) or domain.owner_user_ids

    async def _answer(self, message: Message, text: str, domain: KnowledgeDomain) -> str:
        thread_id = message.thread_id
        already_tracked = bool(
            self._escalations.active_for_thread(message.channel, thread_id)
            or self._answers.active_for_thread(message.channel, thread_id)
        )

        document = await self._load_document(domain)
        context = await self._messaging.thread_context(message.channel, thread_id, message.timestamp)
        result = await self._oracle.answer(text, context, document, domain.name)
        logger.info(
            "Answer for %s: found=%s needs_escalation=%s", message.timestamp, result.found, result.needs_escalation
        )

        owners = self._directory.responders_for(domain.id)
        page_id = extract_page_id(domain.document_ref)
        faq_url = page_url(page_id) if page_id else None

        if result.found:
            partial = result.needs_escalation and not domain.is_general
            if partial:
                reply = formatting.format_partial_answer(result, domain.name, self._escalation_targets(domain), faq_url)
            else:
                reply = formatting.format_answer(result)

            posted_id = await self._messaging.post_reply(message.channel, thread_id, reply) or message.timestamp
            self._answers.create(
                message.channel,
                thread_id,
                posted_id,
                domain.id,
                text,
                result.text,
                evidence=result.evidence,
                owners=owners,
                document_source_ids=domain.source_refs,
            )
            if not partial:
                return ANSWERED

            self._escalations.create(message.channel, thread_id, posted_id, domain.id, text, owners)
            return PARTIAL

        if already_tracked:
            logger.info("FAQ miss on a follow-up in tracked thread %s, staying silent", thread_id)
            return SILENT

        if domain.is_general:
            # General questions are watched without pinging anyone
            self._escalations.create(message.channel, thread_id, message.timestamp, domain.id, text, owners)
            return ESCALATED

        reply = formatting.format_escalation(text, result.followups, self._escalation_targets(domain), domain.name, faq_url)
        posted_id = await self._messaging.post_reply(message.channel, thread_id, reply) or message.timestamp
        self._escalations.create(message.channel, thread_id, posted_id, domain.id, text, owners)
        return ESCALATED
