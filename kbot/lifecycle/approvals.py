"""
Conversation / Approval Handler

Multi-turn direct-message flows on top of the pending-action store:

- correction_approval: an approver answers a correction request with
  approve, reject, or free-text feedback that revises the proposal
- add_domain: a lead registers a knowledge area, supplying the FAQ page
  URL in a follow-up message when it was missing

Single-turn requests cover the roster: leads add, remove, promote and
demote people on their area, and anyone can join an area by describing
their expertise.

A correction is written at most once: the applied-correction ledger is
claimed before the document is touched, and the other approvers' pending
requests are cleared once the write succeeds.
"""

import logging
import re
from typing import Any, Dict, Optional

from ..assistant.oracle import Oracle
from ..common.schemas.oracle import DirectRequest
from ..common.schemas.records import PendingAction, PendingIntent
from ..knowledge.cache import DocumentCache
from ..knowledge.directory import DirectoryError, KnowledgeDirectory, KnowledgeDomain
from ..knowledge.notion import NotionDocumentStore, extract_page_id
from ..messaging.base import DedupeWindow, Message, MessagingClient
from ..tracking.corrections_ledger import CorrectionLedger
from ..tracking.pending_actions import PendingActionStore
from . import formatting

logger = logging.getLogger("kbot.lifecycle.approvals")

APPROVE_PATTERN = re.compile(
    r"^(yes|yep|yeah|yea|sure|approved?|lgtm|go for it|do it|go ahead|ship it|looks good|ok|okay)\b",
    re.IGNORECASE,
)
REJECT_PATTERN = re.compile(
    r"^(no|nope|cancel|nevermind|never mind|don'?t update|stop|reject|skip)\b",
    re.IGNORECASE,
)
CANCEL_PATTERN = re.compile(r"\b(cancel|nevermind|never mind|stop|abort)\b", re.IGNORECASE)
DOCUMENT_REF_PATTERN = re.compile(r"https?://[^\s>|]+|\b[a-f0-9]{32}\b", re.IGNORECASE)

APPROVE = "approve"
REJECT = "reject"
REVISE = "revise"


def classify_reply(text: str) -> str:
    """Map an approver's reply to approve, reject or revise."""
    cleaned = (text or "").strip()
    if APPROVE_PATTERN.match(cleaned):
        return APPROVE
    if REJECT_PATTERN.match(cleaned):
        return REJECT
    return REVISE


class ConversationHandler:
    """Handles direct messages sent to the bot."""

    def __init__(
        self,
        pending: PendingActionStore,
        ledger: CorrectionLedger,
        directory: KnowledgeDirectory,
        documents: NotionDocumentStore,
        cache: Optional[DocumentCache],
        messaging: MessagingClient,
        oracle: Oracle,
        dedupe: Optional[DedupeWindow] = None,
    ):
        self._pending = pending
        self._ledger = ledger
        self._directory = directory
        self._documents = documents
        self._cache = cache
        self._messaging = messaging
        self._oracle = oracle
        self._dedupe = dedupe or DedupeWindow()

    async def handle_direct_message(self, message: Message) -> Optional[str]:
        """
        Process one direct message and send the reply.

        Returns:
            The reply text, or None when the message was ignored
        """
        if message.is_bot or not message.is_valid:
            return None
        if self._dedupe.seen(f"dm:{message.channel}:{message.timestamp}"):
            logger.debug("Duplicate DM %s ignored", message.timestamp)
            return None

        text = message.text.strip()
        logger.info("DM from %s: %r", message.user, text[:100])

        try:
            reply = await self._dispatch(message.user, text)
        except Exception:
            logger.exception("Error handling DM from %s", message.user)
            reply = formatting.GENERIC_APOLOGY

        if reply:
            await self._messaging.send_direct(message.user, reply)
        return reply

    async def _dispatch(self, user_id: str, text: str) -> str:
        pending = self._pending.get(user_id)
        if pending is not None:
            logger.info("Continuing pending %s for %s", pending.intent.value, user_id)
            if pending.intent == PendingIntent.CORRECTION_APPROVAL:
                return await self._continue_approval(user_id, pending, text)
            return self._continue_add_domain(user_id, pending, text)

        return await self._handle_request(user_id, text)

    # =========================================================================
    # Correction approval
    # =========================================================================

    async def _continue_approval(self, user_id: str, pending: PendingAction, text: str) -> str:
        payload = pending.payload
        correction_id = payload.get("correction_id")

        if correction_id and self._ledger.is_applied(correction_id):
            self._pending.clear(user_id)
            return formatting.ALREADY_APPLIED

        decision = classify_reply(text)
        if decision == REJECT:
            self._pending.clear(user_id)
            logger.info("Correction %s rejected by %s", correction_id, user_id)
            return formatting.REJECTED
        if decision == REVISE:
            return await self._revise(user_id, payload, text)
        return await self._apply(user_id, payload)

    async def _apply(self, user_id: str, payload: Dict[str, Any]) -> str:
        correction_id = payload.get("correction_id")
        block_id = payload.get("block_id")

        if not block_id:
            self._pending.clear(user_id)
            return formatting.CANNOT_AUTO_APPLY

        if not self._ledger.claim(correction_id, user_id):
            self._pending.clear(user_id)
            return formatting.ALREADY_APPLIED

        try:
            url = await self._documents.update_block(block_id, payload.get("proposed_text", ""))
        except Exception as e:
            self._ledger.release(correction_id)
            logger.error("Applying correction %s failed: %s", correction_id, e)
            return formatting.format_apply_failed(e)

        if self._cache is not None:
            self._cache.invalidate(payload.get("document_ref"))
            source_ref = payload.get("source_ref")
            if source_ref and source_ref != payload.get("document_ref"):
                self._cache.invalidate(source_ref)

        try:
            await self._documents.annotate(block_id, formatting.audit_note(payload.get("original_question", "")))
        except Exception as e:
            logger.warning("Audit comment on %s failed: %s", block_id, e)

        self._ledger.mark_applied(correction_id, url)
        self._pending.clear(user_id)
        others = self._pending.clear_for_correction(correction_id)
        logger.info("Correction %s applied by %s (%d other request(s) closed)", correction_id, user_id, len(others))

        return formatting.format_applied(payload.get("domain_name", "FAQ"), url or payload.get("block_url", ""))

    async def _revise(self, user_id: str, payload: Dict[str, Any], feedback: str) -> str:
        revised = await self._oracle.revise_proposal(
            payload.get("original_question", ""),
            payload.get("proposed_text", ""),
            feedback,
        )
        if not revised:
            return formatting.REVISION_FAILED

        self._pending.put(user_id, PendingIntent.CORRECTION_APPROVAL, {**payload, "proposed_text": revised})
        logger.info("Correction %s revised by %s", payload.get("correction_id"), user_id)
        return formatting.format_revision(revised)

    # =========================================================================
    # Direct requests
    # =========================================================================

    def _sender_is_lead(self, user_id: str) -> bool:
        return self._directory.is_lead_for_any(user_id) or user_id in self._directory.general_admin_ids

    async def _handle_request(self, user_id: str, text: str) -> str:
        sender_is_lead = self._sender_is_lead(user_id)
        request = await self._oracle.parse_direct_request(text, self._directory.all(), sender_is_lead)
        logger.info("DM intent from %s: %s", user_id, request.intent)

        if request.intent == "view_roster":
            return formatting.format_roster(self._directory.all())
        if request.intent == "add_domain":
            return self._start_add_domain(user_id, request, sender_is_lead)
        if request.intent == "modify_roster":
            return self._modify_roster(user_id, request)
        if request.intent == "self_register":
            return self._self_register(user_id, request)
        return request.response_message or formatting.HELP_TEXT

    # =========================================================================
    # Roster
    # =========================================================================

    def _target_domain(self, request: DirectRequest) -> Optional[KnowledgeDomain]:
        domain = self._directory.resolve(request.domain_id.strip())
        if domain is None and request.name.strip():
            domain = self._directory.get_by_name(request.name)
        return domain

    def _modify_roster(self, user_id: str, request: DirectRequest) -> str:
        domain = self._target_domain(request)
        if domain is None or domain.is_general:
            return formatting.ROSTER_NEEDS_AREA
        if user_id not in domain.lead_user_ids and user_id not in self._directory.general_admin_ids:
            return formatting.ROSTER_LEADS_ONLY

        targets = list(dict.fromkeys(request.target_user_ids))
        if not targets:
            return formatting.ROSTER_NEEDS_USERS

        lines = [self._apply_roster_change(user_id, request, domain, target) for target in targets]
        if request.response_message:
            lines.insert(0, request.response_message + "\n")
        return "\n".join(lines)

    def _apply_roster_change(self, user_id: str, request: DirectRequest, domain: KnowledgeDomain, target: str) -> str:
        action = request.action
        description = request.member_description.strip()
        try:
            if action == "add_member":
                changed = self._directory.add_member(domain.id, target, description)
            elif action == "remove_member":
                changed = self._directory.remove_member(domain.id, target)
            elif action == "promote":
                changed = self._directory.promote_to_lead(domain.id, target)
            elif action == "demote":
                changed = self._directory.demote_to_member(domain.id, target)
            elif action == "update_description":
                if not description:
                    return f"No description provided for <@{target}>"
                changed = self._directory.set_member_description(domain.id, target, description)
            else:
                changed = False
        except DirectoryError as e:
            logger.warning("Roster %s of %s on %s by %s failed: %s", action, target, domain.id, user_id, e)
            return f"Couldn't update <@{target}>: {e}"

        logger.info("Roster %s of %s on %s by %s (changed=%s)", action or "-", target, domain.id, user_id, changed)
        return formatting.format_roster_change(action, target, domain.name, changed, description)

    def _self_register(self, user_id: str, request: DirectRequest) -> str:
        expertise = request.member_description.strip()
        joined, updated = [], []

        for domain_id in request.self_register_domain_ids:
            domain = self._directory.resolve(domain_id)
            if domain is None or domain.is_general:
                logger.warning("Self-registration matched unknown area %s", domain_id)
                continue
            if user_id in domain.owner_user_ids:
                if expertise:
                    self._directory.set_member_description(domain.id, user_id, expertise)
                    updated.append(domain.name)
                continue
            self._directory.add_member(domain.id, user_id, expertise)
            joined.append(domain.name)

        if not joined and not updated:
            return request.response_message or formatting.SELF_REGISTER_NO_MATCH
        logger.info("%s self-registered (joined=%s, updated=%s)", user_id, joined, updated)
        return formatting.format_self_registration(joined, updated)

    # =========================================================================
    # Knowledge-area registration
    # =========================================================================

    def _start_add_domain(self, user_id: str, request: DirectRequest, sender_is_lead: bool) -> str:
        if not sender_is_lead:
            return formatting.ADD_DOMAIN_LEADS_ONLY

        name = request.name.strip()
        if not name:
            return formatting.ADD_DOMAIN_NEEDS_NAME
        if self._directory.get_by_name(name):
            return f'A knowledge area called "{name}" already exists.'

        partial = {
            "name": name,
            "description": request.description.strip(),
            "keywords": list(request.keywords),
            "lead_user_ids": list(request.lead_user_ids),
        }
        ref = request.document_ref.strip()

        if not ref:
            self._pending.put(user_id, PendingIntent.ADD_DOMAIN, partial)
            return f"Got it, I'll set up *{name}*. What's the Notion page URL for this area's FAQ?"
        if not extract_page_id(ref):
            self._pending.put(user_id, PendingIntent.ADD_DOMAIN, partial)
            return formatting.ADD_DOMAIN_BAD_URL

        return self._create_domain(user_id, partial, ref)

    def _continue_add_domain(self, user_id: str, pending: PendingAction, text: str) -> str:
        if CANCEL_PATTERN.search(text):
            self._pending.clear(user_id)
            return formatting.ADD_DOMAIN_CANCELLED

        match = DOCUMENT_REF_PATTERN.search(text)
        if not match:
            return formatting.ADD_DOMAIN_NEEDS_URL
        ref = match.group(0)
        if not extract_page_id(ref):
            return formatting.ADD_DOMAIN_BAD_URL

        return self._create_domain(user_id, pending.payload, ref)

    def _create_domain(self, user_id: str, partial: Dict[str, Any], ref: str) -> str:
        try:
            domain = self._directory.add_domain(
                name=partial.get("name", ""),
                document_ref=ref,
                lead_user_ids=partial.get("lead_user_ids") or [],
                description=partial.get("description", ""),
                keywords=partial.get("keywords") or [],
            )
        except DirectoryError as e:
            self._pending.clear(user_id)
            return f"I couldn't create that knowledge area: {e}"

        self._pending.clear(user_id)
        return formatting.format_domain_created(domain)
