"""Tests for the direct-message approval and registration flows."""

import asyncio

import pytest

from kbot.common.schemas.oracle import DirectRequest
from kbot.common.schemas.records import PendingIntent
from kbot.knowledge.cache import DocumentCache
from kbot.lifecycle import formatting
from kbot.lifecycle.approvals import ConversationHandler, classify_reply
from kbot.messaging.base import Message
from kbot.tracking.corrections_ledger import CorrectionLedger

PAGE_ID = "0123456789abcdef0123456789abcdef"
NEW_PAGE_ID = "aaaabbbbccccddddeeeeffff00001111"

PAYLOAD = {
    "correction_id": "ans_1",
    "block_id": "blk1",
    "block_url": f"https://notion.so/{PAGE_ID}#blk1",
    "document_ref": PAGE_ID,
    "source_ref": None,
    "proposed_text": "Refunds take 10 days.",
    "original_question": "How long do refunds take?",
    "domain_name": "Billing",
    "channel_name": "billing-help",
}


@pytest.fixture
def cache(documents):
    return DocumentCache(documents.fetch_content, ttl_seconds=600)


@pytest.fixture
def handler(pending, ledger, directory, documents, cache, messaging, oracle):
    return ConversationHandler(pending, ledger, directory, documents, cache, messaging, oracle)


_counter = iter(range(1, 10_000))


def _dm(user, text):
    return Message(text=text, user=user, channel=f"D{user}", timestamp=f"{next(_counter)}.0", channel_type="im")


def _request_approval(pending, *users, **overrides):
    for user in users:
        pending.put(user, PendingIntent.CORRECTION_APPROVAL, {**PAYLOAD, **overrides})


class TestClassifyReply:
    @pytest.mark.parametrize("text", ["yes", "Yes please", "LGTM", "go ahead", "ok", "approved", "ship it!"])
    def test_approve(self, text):
        assert classify_reply(text) == "approve"

    @pytest.mark.parametrize("text", ["no", "Nope", "don't update", "dont update it", "cancel", "skip this"])
    def test_reject(self, text):
        assert classify_reply(text) == "reject"

    @pytest.mark.parametrize("text", ["make it 7 days", "yesterday it changed", "notably, mention fees", ""])
    def test_revise(self, text):
        assert classify_reply(text) == "revise"


class TestApproval:
    @pytest.mark.asyncio
    async def test_approve_applies_once(self, handler, pending, ledger, documents, cache, messaging):
        _request_approval(pending, "ULEAD", "UOTHER")
        await cache.get(PAGE_ID)

        reply = await handler.handle_direct_message(_dm("ULEAD", "yes"))

        assert reply.startswith("Done! I've updated the *Billing* FAQ entry.")
        documents.update_block.assert_awaited_once_with("blk1", "Refunds take 10 days.")
        assert "Original question: How long do refunds take?" in documents.annotate.call_args.args[1]
        assert ledger.is_applied("ans_1")
        assert pending.count() == 0
        assert len(cache) == 0
        messaging.send_direct.assert_awaited_with("ULEAD", reply)

    @pytest.mark.asyncio
    async def test_second_approver_told_already_applied(self, handler, pending, documents):
        _request_approval(pending, "ULEAD", "UOTHER")
        await handler.handle_direct_message(_dm("ULEAD", "yes"))
        _request_approval(pending, "UOTHER")

        reply = await handler.handle_direct_message(_dm("UOTHER", "yes"))

        assert reply == formatting.ALREADY_APPLIED
        documents.update_block.assert_awaited_once()
        assert pending.get("UOTHER") is None

    @pytest.mark.asyncio
    async def test_unconfirmed_write_not_repeated_after_restart(
        self, pending, directory, documents, cache, messaging, oracle, ledger, tmp_path, clock
    ):
        _request_approval(pending, "ULEAD")
        ledger.claim("ans_1", "ULEAD")
        restarted = ConversationHandler(
            pending,
            CorrectionLedger(path=tmp_path / "applied_corrections.json", clock=clock),
            directory, documents, cache, messaging, oracle,
        )

        reply = await restarted.handle_direct_message(_dm("ULEAD", "yes"))

        assert reply == formatting.ALREADY_APPLIED
        documents.update_block.assert_not_awaited()
        assert pending.get("ULEAD") is None

    @pytest.mark.asyncio
    async def test_concurrent_approvals_write_once(self, handler, pending, documents):
        _request_approval(pending, "ULEAD", "UOTHER")

        async def slow_update(block_id, text):
            await asyncio.sleep(0.01)
            return f"https://notion.so/{PAGE_ID}#blk1"

        documents.update_block.side_effect = slow_update

        replies = await asyncio.gather(
            handler.handle_direct_message(_dm("ULEAD", "yes")),
            handler.handle_direct_message(_dm("UOTHER", "approved")),
        )

        assert documents.update_block.await_count == 1
        assert sum(r.startswith("Done!") for r in replies) == 1
        assert formatting.ALREADY_APPLIED in replies

    @pytest.mark.asyncio
    async def test_reject(self, handler, pending, documents):
        _request_approval(pending, "ULEAD")

        assert await handler.handle_direct_message(_dm("ULEAD", "nope")) == formatting.REJECTED
        assert pending.get("ULEAD") is None
        documents.update_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revise_keeps_request_open(self, handler, pending, oracle):
        _request_approval(pending, "ULEAD")
        oracle.revise_proposal.return_value = "Refunds take 7 days."

        reply = await handler.handle_direct_message(_dm("ULEAD", "make it 7 days"))

        assert "Refunds take 7 days." in reply
        oracle.revise_proposal.assert_awaited_once_with(
            "How long do refunds take?", "Refunds take 10 days.", "make it 7 days"
        )
        assert pending.get("ULEAD").payload["proposed_text"] == "Refunds take 7 days."

    @pytest.mark.asyncio
    async def test_empty_revision(self, handler, pending, oracle):
        _request_approval(pending, "ULEAD")
        oracle.revise_proposal.return_value = ""

        assert await handler.handle_direct_message(_dm("ULEAD", "hmm, shorter")) == formatting.REVISION_FAILED
        assert pending.get("ULEAD").payload["proposed_text"] == "Refunds take 10 days."

    @pytest.mark.asyncio
    async def test_revised_text_is_applied(self, handler, pending, oracle, documents):
        _request_approval(pending, "ULEAD")
        oracle.revise_proposal.return_value = "Refunds take 7 days."

        await handler.handle_direct_message(_dm("ULEAD", "make it 7 days"))
        await handler.handle_direct_message(_dm("ULEAD", "yes"))

        documents.update_block.assert_awaited_once_with("blk1", "Refunds take 7 days.")

    @pytest.mark.asyncio
    async def test_without_block_cannot_apply(self, handler, pending, ledger, documents):
        _request_approval(pending, "ULEAD", block_id=None)

        assert await handler.handle_direct_message(_dm("ULEAD", "yes")) == formatting.CANNOT_AUTO_APPLY
        documents.update_block.assert_not_awaited()
        assert not ledger.is_applied("ans_1")

    @pytest.mark.asyncio
    async def test_write_failure_releases_claim(self, handler, pending, ledger, documents):
        _request_approval(pending, "ULEAD")
        documents.update_block.side_effect = RuntimeError("conflict_error")

        reply = await handler.handle_direct_message(_dm("ULEAD", "yes"))

        assert "conflict_error" in reply
        assert not ledger.is_applied("ans_1")
        assert pending.get("ULEAD") is not None

        documents.update_block.side_effect = None
        reply = await handler.handle_direct_message(_dm("ULEAD", "yes"))
        assert reply.startswith("Done!")

    @pytest.mark.asyncio
    async def test_annotation_failure_still_applies(self, handler, pending, ledger, documents):
        _request_approval(pending, "ULEAD")
        documents.annotate.side_effect = RuntimeError("comments disabled")

        reply = await handler.handle_direct_message(_dm("ULEAD", "yes"))

        assert reply.startswith("Done!")
        assert ledger.is_applied("ans_1")

    @pytest.mark.asyncio
    async def test_alternate_source_invalidated(self, handler, pending, documents, cache):
        _request_approval(pending, "ULEAD", source_ref=NEW_PAGE_ID)
        await cache.get(PAGE_ID)
        await cache.get(NEW_PAGE_ID)

        await handler.handle_direct_message(_dm("ULEAD", "yes"))

        assert len(cache) == 0


class TestAddDomain:
    @pytest.mark.asyncio
    async def test_lead_adds_domain_with_url(self, handler, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="add_domain",
            name="Security",
            description="SSO and access",
            keywords=["SSO"],
            lead_user_ids=["USEC"],
            document_ref=f"https://www.notion.so/Security-FAQ-{NEW_PAGE_ID}",
        )

        reply = await handler.handle_direct_message(_dm("ULEAD", "add a Security area"))

        assert reply.startswith("Done! Created knowledge area *Security*")
        created = directory.get_by_name("Security")
        assert created.lead_user_ids == ["USEC"]
        assert created.keywords == ["sso"]
        assert oracle.parse_direct_request.call_args.args[2] is True

    @pytest.mark.asyncio
    async def test_non_lead_refused(self, handler, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="add_domain", name="Security")

        assert await handler.handle_direct_message(_dm("URANDOM", "add Security")) == formatting.ADD_DOMAIN_LEADS_ONLY
        assert directory.get_by_name("Security") is None

    @pytest.mark.asyncio
    async def test_general_admin_can_bootstrap(self, handler, directory, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="add_domain", name="Billing", document_ref=PAGE_ID
        )

        reply = await handler.handle_direct_message(_dm("UADMIN", "create Billing"))

        assert reply.startswith("Done!")
        assert directory.get_by_name("Billing") is not None

    @pytest.mark.asyncio
    async def test_missing_name(self, handler, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="add_domain")
        assert await handler.handle_direct_message(_dm("ULEAD", "add one")) == formatting.ADD_DOMAIN_NEEDS_NAME

    @pytest.mark.asyncio
    async def test_duplicate_name(self, handler, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="add_domain", name="billing", document_ref=PAGE_ID)
        reply = await handler.handle_direct_message(_dm("ULEAD", "add billing"))
        assert "already exists" in reply

    @pytest.mark.asyncio
    async def test_url_asked_for_then_supplied(self, handler, pending, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="add_domain", name="Security")

        first = await handler.handle_direct_message(_dm("ULEAD", "add Security"))
        assert "What's the Notion page URL" in first
        assert pending.get("ULEAD").intent == PendingIntent.ADD_DOMAIN

        assert await handler.handle_direct_message(_dm("ULEAD", "one sec")) == formatting.ADD_DOMAIN_NEEDS_URL
        assert await handler.handle_direct_message(_dm("ULEAD", "https://example.com/page")) == formatting.ADD_DOMAIN_BAD_URL

        done = await handler.handle_direct_message(_dm("ULEAD", f"<https://notion.so/Sec-{NEW_PAGE_ID}>"))

        assert done.startswith("Done! Created knowledge area *Security*")
        assert directory.get_by_name("Security").document_ref.endswith(NEW_PAGE_ID)
        assert pending.get("ULEAD") is None
        oracle.parse_direct_request.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel(self, handler, pending, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="add_domain", name="Security")
        await handler.handle_direct_message(_dm("ULEAD", "add Security"))

        assert await handler.handle_direct_message(_dm("ULEAD", "never mind")) == formatting.ADD_DOMAIN_CANCELLED
        assert pending.get("ULEAD") is None
        assert directory.get_by_name("Security") is None

    @pytest.mark.asyncio
    async def test_bad_url_up_front(self, handler, pending, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="add_domain", name="Security", document_ref="https://example.com"
        )
        assert await handler.handle_direct_message(_dm("ULEAD", "add Security")) == formatting.ADD_DOMAIN_BAD_URL
        assert pending.get("ULEAD").payload["name"] == "Security"


class TestRoster:
    @pytest.mark.asyncio
    async def test_lead_adds_members(self, handler, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster",
            action="add_member",
            domain_id=billing.id,
            target_user_ids=["U2", "U3"],
            member_description="refunds",
        )

        reply = await handler.handle_direct_message(_dm("ULEAD", "add <@U2> and <@U3> to Billing"))

        assert "Added <@U2> to *Billing* _(refunds)_" in reply
        assert "Added <@U3> to *Billing*" in reply
        assert directory.responders_for(billing.id) == ["ULEAD", "U2", "U3"]

    @pytest.mark.asyncio
    async def test_area_found_by_name(self, handler, directory, billing, oracle):
        directory.add_member(billing.id, "U2")
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster", action="promote", name="billing", target_user_ids=["U2"]
        )

        reply = await handler.handle_direct_message(_dm("ULEAD", "make <@U2> a lead for billing"))

        assert reply == "Promoted <@U2> to lead for *Billing*"
        assert directory.resolve(billing.id).lead_user_ids == ["ULEAD", "U2"]

    @pytest.mark.asyncio
    async def test_non_lead_refused(self, handler, directory, billing, oracle):
        directory.add_member(billing.id, "U2")
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster", action="remove_member", domain_id=billing.id, target_user_ids=["ULEAD"]
        )

        reply = await handler.handle_direct_message(_dm("U2", "remove <@ULEAD>"))

        assert reply == formatting.ROSTER_LEADS_ONLY
        assert directory.resolve(billing.id).lead_user_ids == ["ULEAD"]

    @pytest.mark.asyncio
    async def test_lead_of_other_area_refused(self, handler, directory, billing, oracle):
        directory.add_domain("Security", NEW_PAGE_ID, ["USEC"])
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster", action="add_member", domain_id=billing.id, target_user_ids=["USEC"]
        )

        assert await handler.handle_direct_message(_dm("USEC", "add me")) == formatting.ROSTER_LEADS_ONLY

    @pytest.mark.asyncio
    async def test_unknown_area_and_missing_users(self, handler, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster", action="add_member", domain_id="nope", target_user_ids=["U2"]
        )
        assert await handler.handle_direct_message(_dm("ULEAD", "add someone")) == formatting.ROSTER_NEEDS_AREA

        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster", action="add_member", domain_id=billing.id
        )
        assert await handler.handle_direct_message(_dm("ULEAD", "add Alex")) == formatting.ROSTER_NEEDS_USERS

    @pytest.mark.asyncio
    async def test_rejected_change_reported_per_user(self, handler, directory, billing, oracle):
        directory.add_member(billing.id, "U2")
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster",
            action="demote",
            domain_id=billing.id,
            target_user_ids=["U2", "ULEAD"],
            response_message="On it!",
        )

        reply = await handler.handle_direct_message(_dm("ULEAD", "demote them"))

        assert reply.startswith("On it!")
        assert "Couldn't update <@U2>" in reply
        assert "Demoted <@ULEAD> from lead to team member on *Billing*" in reply
        assert directory.resolve(billing.id).member_user_ids == ["U2", "ULEAD"]

    @pytest.mark.asyncio
    async def test_general_admin_manages_any_area(self, handler, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="modify_roster", action="remove_member", domain_id=billing.id, target_user_ids=["ULEAD"]
        )

        reply = await handler.handle_direct_message(_dm("UADMIN", "remove <@ULEAD> from billing"))

        assert reply == "Removed <@ULEAD> from *Billing*"
        assert directory.resolve(billing.id).owner_user_ids == []


class TestSelfRegistration:
    @pytest.mark.asyncio
    async def test_joins_matching_area(self, handler, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="self_register",
            self_register_domain_ids=[billing.id, "gone-area"],
            member_description="handles chargebacks",
        )

        reply = await handler.handle_direct_message(_dm("UNEW", "I work on chargebacks"))

        assert "You're now listed on *Billing*." in reply
        stored = directory.resolve(billing.id)
        assert stored.member_user_ids == ["UNEW"]
        assert stored.member_descriptions["UNEW"] == "handles chargebacks"
        assert directory.is_owner("UNEW", billing.id)

    @pytest.mark.asyncio
    async def test_existing_owner_updates_expertise(self, handler, directory, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(
            intent="self_register", self_register_domain_ids=[billing.id], member_description="invoicing too"
        )

        reply = await handler.handle_direct_message(_dm("ULEAD", "I also cover invoicing"))

        assert "Updated your expertise on *Billing*." in reply
        stored = directory.resolve(billing.id)
        assert stored.lead_user_ids == ["ULEAD"]
        assert stored.member_user_ids == []
        assert stored.member_descriptions["ULEAD"] == "invoicing too"

    @pytest.mark.asyncio
    async def test_no_match(self, handler, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="self_register")
        assert await handler.handle_direct_message(_dm("UNEW", "I like lunch")) == formatting.SELF_REGISTER_NO_MATCH


class TestOtherRequests:
    @pytest.mark.asyncio
    async def test_roster(self, handler, billing, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="view_roster")
        reply = await handler.handle_direct_message(_dm("URANDOM", "who owns what?"))
        assert "*Billing*" in reply and "<@ULEAD>" in reply

    @pytest.mark.asyncio
    async def test_help_uses_model_reply(self, handler, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="help", response_message="Hi there!")
        assert await handler.handle_direct_message(_dm("URANDOM", "hello")) == "Hi there!"

    @pytest.mark.asyncio
    async def test_help_fallback(self, handler, oracle):
        oracle.parse_direct_request.return_value = DirectRequest(intent="help")
        assert await handler.handle_direct_message(_dm("URANDOM", "hello")) == formatting.HELP_TEXT

    @pytest.mark.asyncio
    async def test_error_apologizes(self, handler, oracle, messaging):
        oracle.parse_direct_request.side_effect = RuntimeError("LLM down")

        reply = await handler.handle_direct_message(_dm("URANDOM", "hello"))

        assert reply == formatting.GENERIC_APOLOGY
        messaging.send_direct.assert_awaited_once_with("URANDOM", formatting.GENERIC_APOLOGY)

    @pytest.mark.asyncio
    async def test_duplicate_event_handled_once(self, handler, oracle, messaging):
        oracle.parse_direct_request.return_value = DirectRequest(intent="help")
        message = _dm("URANDOM", "hello")

        await handler.handle_direct_message(message)
        assert await handler.handle_direct_message(message) is None
        messaging.send_direct.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bot_messages_ignored(self, handler, messaging):
        message = _dm("UBOT", "yes")
        message.is_bot = True
        assert await handler.handle_direct_message(message) is None
        messaging.send_direct.assert_not_awaited()
