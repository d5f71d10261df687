"""
Periodic Synthesis & Correction Job

Sweeps the record stores for items whose deadline has passed:

1. Escalations with owner replies are checked for a substantive answer,
   synthesized into a Q&A entry and appended to the domain's FAQ.
2. Tracked answers with owner replies are checked for a correction; a
   correction becomes an approval request DM'd to each candidate approver.
3. Old terminal records are pruned and stuck ones expired.

Every item is processed independently. A failure is logged and the item
stays as it was, so the next sweep retries it.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..assistant.oracle import Oracle
from ..common.config import FeaturesConfig, TimingConfig
from ..common.schemas.records import Escalation, PendingIntent, TrackedAnswer
from ..knowledge.cache import DocumentCache
from ..knowledge.directory import KnowledgeDirectory, KnowledgeDomain
from ..knowledge.notion import BlockLocation, DocumentStoreError, NotionDocumentStore, extract_page_id, page_url
from ..messaging.base import MessagingClient
from ..tracking.answers import TrackedAnswerStore
from ..tracking.escalations import EscalationStore
from ..tracking.pending_actions import PendingActionStore
from . import formatting

logger = logging.getLogger("kbot.lifecycle.jobs")


class SynthesisJob:
    """Deadline-driven sweep over escalations and tracked answers."""

    def __init__(
        self,
        escalations: EscalationStore,
        answers: TrackedAnswerStore,
        pending: PendingActionStore,
        directory: KnowledgeDirectory,
        documents: NotionDocumentStore,
        cache: Optional[DocumentCache],
        messaging: MessagingClient,
        oracle: Oracle,
        timing: Optional[TimingConfig] = None,
        features: Optional[FeaturesConfig] = None,
        channel_names: Optional[Dict[str, str]] = None,
    ):
        self._escalations = escalations
        self._answers = answers
        self._pending = pending
        self._directory = directory
        self._documents = documents
        self._cache = cache
        self._messaging = messaging
        self._oracle = oracle
        self._timing = timing or TimingConfig()
        self._features = features or FeaturesConfig()
        self._channel_names = channel_names if channel_names is not None else {}

    # =========================================================================
    # Sweep
    # =========================================================================

    async def run_once(self) -> Dict[str, int]:
        """One full sweep; returns how many items of each kind were handled."""
        summary = {"escalations": 0, "answers": 0, "pruned": 0, "expired": 0}

        summary["escalations"] = await self.process_escalations()
        if self._features.faq_correction:
            summary["answers"] = await self.process_answers()

        try:
            summary["pruned"] = (
                self._escalations.prune_older_than(self._timing.retention_days)
                + self._answers.prune_older_than(self._timing.retention_days)
            )
            summary["expired"] = (
                self._escalations.expire_stale(self._timing.stale_after_days)
                + self._answers.expire_stale(self._timing.stale_after_days)
            )
        except Exception:
            logger.exception("Housekeeping failed")

        return summary

    async def run_forever(self) -> None:
        """Sweep shortly after startup, then on a fixed interval until cancelled."""
        await asyncio.sleep(self._timing.initial_check_delay_seconds)
        while True:
            try:
                summary = await self.run_once()
                if summary["escalations"] or summary["answers"]:
                    logger.info("Sweep done: %s", summary)
            except Exception:
                logger.exception("Periodic sweep failed")
            await asyncio.sleep(self._timing.check_interval_seconds)

    # =========================================================================
    # Escalations
    # =========================================================================

    async def process_escalations(self) -> int:
        ready = self._escalations.ready_to_synthesize()
        if ready:
            logger.info("%d escalation(s) ready for synthesis", len(ready))

        handled = 0
        for escalation in ready:
            try:
                await self._synthesize(escalation)
                handled += 1
            except Exception:
                logger.exception("Synthesis of %s failed, will retry next sweep", escalation.id)
        return handled

    async def _synthesize(self, escalation: Escalation) -> None:
        domain = self._directory.resolve(escalation.domain_id)
        if domain is None:
            self._escalations.skip(escalation.id, "domain_not_found")
            return

        replies = await self._messaging.fetch_replies(
            escalation.channel, escalation.thread_id, escalation.origin_message_id
        )
        owner_replies = [
            r for r in replies if r.user_id in escalation.owner_user_ids and not r.is_automated
        ]
        if not owner_replies:
            self._escalations.skip(escalation.id, "no_responses_found")
            return

        check = await self._oracle.check_substantive(escalation.original_question, owner_replies)
        if not check.has_substantive_answer:
            logger.info("Replies on %s not substantive: %s", escalation.id, check.rationale)
            self._escalations.skip(escalation.id, "non_substantive_responses")
            return

        style = await self._documents.analyze_format(domain.document_ref)
        synthesis = await self._oracle.synthesize(escalation.original_question, owner_replies, style)
        if not synthesis.should_publish:
            self._escalations.complete(escalation.id)
            if not domain.is_general:
                await self._notify(escalation.channel, escalation.thread_id, formatting.NOT_PUBLISHED)
            return

        url = await self._documents.append_entry(domain.document_ref, synthesis.question, synthesis.answer, style)
        if self._cache is not None:
            self._cache.invalidate(domain.document_ref)
        self._escalations.complete(escalation.id, url)

        text = formatting.format_published(
            synthesis.question,
            url,
            domain.name,
            sorted(escalation.owner_user_ids),
            general=domain.is_general,
        )
        await self._notify(escalation.channel, escalation.thread_id, text)

    async def _notify(self, channel: str, thread_id: str, text: str) -> None:
        # The record is already final here; a lost notice must not undo it
        try:
            await self._messaging.post_reply(channel, thread_id, text)
        except Exception as e:
            logger.warning("Thread notice in %s failed: %s", channel, e)

    # =========================================================================
    # Tracked answers
    # =========================================================================

    async def process_answers(self) -> int:
        ready = self._answers.ready_to_process()
        if ready:
            logger.info("%d tracked answer(s) ready for correction check", len(ready))

        handled = 0
        for answer in ready:
            try:
                await self._check_correction(answer)
                handled += 1
            except Exception:
                logger.exception("Correction check of %s failed, will retry next sweep", answer.id)
        return handled

    async def _check_correction(self, answer: TrackedAnswer) -> None:
        domain = self._directory.resolve(answer.domain_id)
        if domain is None:
            self._answers.mark_processed(answer.id, {"reason": "domain_not_found"})
            return

        authorized = set(self._directory.responders_for(answer.domain_id)) | answer.owner_user_ids
        replies = await self._messaging.fetch_replies(answer.channel, answer.thread_id, answer.answer_message_id)
        owner_replies = [r for r in replies if r.user_id in authorized and not r.is_automated]
        if not owner_replies:
            self._answers.mark_processed(answer.id, {"reason": "no_owner_replies_found"})
            return

        check = await self._oracle.check_correction(
            answer.original_question, answer.bot_answer, answer.evidence, owner_replies
        )
        if not check.is_correction:
            self._answers.mark_processed(
                answer.id, {"reason": "no_correction_detected", "rationale": check.rationale}
            )
            return

        responders = sorted({r.user_id for r in owner_replies} | answer.responding_owner_ids)
        location, source_ref = await self._locate(answer, domain)
        await self._request_approval(answer, domain, responders, check.proposed_text, location, source_ref)

        self._answers.mark_corrected(
            answer.id,
            {
                "corrected_by": responders,
                "corrected_aspect": check.corrected_aspect,
                "proposed_text": check.proposed_text,
                "rationale": check.rationale,
                "block_id": location.block_id if location else None,
            },
        )

    async def _locate(
        self, answer: TrackedAnswer, domain: KnowledgeDomain
    ) -> Tuple[Optional[BlockLocation], Optional[str]]:
        """Find the block behind the answer, alternate sources first."""
        refs: List[str] = []
        for ref in [*answer.document_source_ids, domain.document_ref]:
            if ref and ref not in refs:
                refs.append(ref)

        for ref in refs:
            try:
                location = await self._documents.find_block(ref, answer.evidence)
            except DocumentStoreError as e:
                logger.warning("Block search in %s failed: %s", ref, e)
                continue
            if location is not None:
                return location, ref

        logger.info("No block located for answer %s", answer.id)
        return None, None

    def approvers_for(self, domain: KnowledgeDomain, responders: Iterable[str]) -> List[str]:
        """Responders, else the domain leads, else the general FAQ admins"""
        responders = sorted(set(responders))
        return responders or list(domain.lead_user_ids) or self._directory.general_admin_ids

    async def _request_approval(
        self,
        answer: TrackedAnswer,
        domain: KnowledgeDomain,
        responders: List[str],
        proposed_text: str,
        location: Optional[BlockLocation],
        source_ref: Optional[str],
    ) -> int:
        channel_name = self._channel_names.get(answer.channel)
        page_id = extract_page_id(domain.document_ref)
        text = formatting.format_correction_request(
            domain.name,
            channel_name,
            proposed_text,
            location.block_url if location else None,
            page_url(page_id) if page_id else None,
        )
        payload = {
            "correction_id": answer.id,
            "block_id": location.block_id if location else None,
            "block_url": location.block_url if location else None,
            "document_ref": domain.document_ref,
            "source_ref": source_ref if source_ref and source_ref != domain.document_ref else None,
            "proposed_text": proposed_text,
            "original_question": answer.original_question,
            "domain_name": domain.name,
            "channel_name": channel_name,
        }

        approvers = self.approvers_for(domain, responders)
        if not approvers:
            logger.warning("No approvers for correction %s", answer.id)

        delivered = 0
        for user_id in approvers:
            if await self._messaging.send_direct(user_id, text):
                self._pending.put(user_id, PendingIntent.CORRECTION_APPROVAL, payload)
                delivered += 1

        logger.info("Correction %s sent to %d/%d approver(s)", answer.id, delivered, len(approvers))
        return delivered
