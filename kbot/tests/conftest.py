"""Shared fixtures: a controllable clock and in-memory collaborators."""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, Mock

from kbot.common.config import GeneralFaqConfig, TimingConfig
from kbot.knowledge.directory import KnowledgeDirectory
from kbot.knowledge.notion import FormatStyle
from kbot.tracking.answers import TrackedAnswerStore
from kbot.tracking.corrections_ledger import CorrectionLedger
from kbot.tracking.escalations import EscalationStore
from kbot.tracking.pending_actions import PendingActionStore

PAGE_ID = "0123456789abcdef0123456789abcdef"
GENERAL_PAGE_ID = "fedcba9876543210fedcba9876543210"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timing():
    return TimingConfig(synthesis_delay_seconds=60, correction_check_delay_seconds=10)


@pytest.fixture
def escalations(tmp_path, clock):
    return EscalationStore(path=tmp_path / "escalations.json", clock=clock)


@pytest.fixture
def answers(tmp_path, clock):
    return TrackedAnswerStore(path=tmp_path / "tracked_answers.json", clock=clock)


@pytest.fixture
def pending(tmp_path, clock):
    return PendingActionStore(path=tmp_path / "pending_actions.json", clock=clock)


@pytest.fixture
def ledger(tmp_path, clock):
    return CorrectionLedger(path=tmp_path / "applied_corrections.json", clock=clock)


@pytest.fixture
def directory(tmp_path):
    general = GeneralFaqConfig(enabled=True, notion_page_id=GENERAL_PAGE_ID, admin_user_ids=["UADMIN"])
    return KnowledgeDirectory(path=tmp_path / "domains.json", general_faq=general)


@pytest.fixture
def billing(directory):
    return directory.add_domain("Billing", PAGE_ID, ["ULEAD"], "Payments and refunds", ["refund"])


@pytest.fixture
def messaging():
    client = Mock()
    client.fetch_replies = AsyncMock(return_value=[])
    client.post_reply = AsyncMock(return_value="999.1")
    client.send_direct = AsyncMock(return_value=True)
    client.thread_context = AsyncMock(return_value="")
    return client


@pytest.fixture
def documents():
    store = Mock()
    store.fetch_content = AsyncMock(return_value="Q: How long do refunds take?\nA: Refunds take 5 days.")
    store.analyze_format = AsyncMock(return_value=FormatStyle())
    store.append_entry = AsyncMock(return_value=f"https://notion.so/{PAGE_ID}#newblock")
    store.find_block = AsyncMock(return_value=None)
    store.update_block = AsyncMock(return_value=f"https://notion.so/{PAGE_ID}#blk1")
    store.annotate = AsyncMock(return_value="comment-1")
    return store


@pytest.fixture
def oracle():
    fake = Mock()
    fake.is_available = True
    fake.classify = AsyncMock()
    fake.answer = AsyncMock()
    fake.check_substantive = AsyncMock()
    fake.synthesize = AsyncMock()
    fake.check_correction = AsyncMock()
    fake.revise_proposal = AsyncMock()
    fake.parse_direct_request = AsyncMock()
    return fake
