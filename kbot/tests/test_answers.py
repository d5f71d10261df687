"""Tests for the tracked-answer store."""

from datetime import timedelta

import pytest

from kbot.common.schemas.records import AnswerStatus
from kbot.tracking.answers import TrackedAnswerStore


@pytest.fixture
def store(tmp_path, clock):
    return TrackedAnswerStore(path=tmp_path / "tracked_answers.json", clock=clock)


def _create(store, thread_id="200.1"):
    return store.create(
        "C1",
        thread_id,
        "200.2",
        "billing",
        "Can I get a refund after 30 days?",
        "Refunds are available within 30 days.",
        evidence=["Refunds are available within 30 days of purchase"],
        owners=["U1", "U2"],
        document_source_ids=["src-page"],
    )


class TestCreate:
    def test_fields(self, store, clock):
        answer = _create(store)
        assert answer.id.startswith("ans_")
        assert answer.status == AnswerStatus.ACTIVE
        assert answer.evidence == ["Refunds are available within 30 days of purchase"]
        assert answer.document_source_ids == ["src-page"]
        assert answer.created_at == clock.now

    def test_same_thread_returns_existing(self, store):
        assert _create(store).id == _create(store).id


class TestRecordResponse:
    def test_two_owners_one_timer(self, store, clock):
        answer = _create(store)

        assert store.record_response(answer.id, "U1", timedelta(seconds=10)) is True
        first_deadline = store.get(answer.id).process_after

        clock.advance(seconds=5)
        assert store.record_response(answer.id, "U2", timedelta(seconds=10)) is True

        updated = store.get(answer.id)
        assert updated.status == AnswerStatus.PENDING_CORRECTION
        assert updated.responding_owner_ids == {"U1", "U2"}
        assert updated.process_after == first_deadline

    def test_same_owner_twice(self, store):
        answer = _create(store)
        store.record_response(answer.id, "U1")
        store.record_response(answer.id, "U1")
        assert store.get(answer.id).responding_owner_ids == {"U1"}

    def test_terminal_ignores_responses(self, store):
        answer = _create(store)
        store.mark_processed(answer.id, {"reason": "no_correction_detected"})
        assert store.record_response(answer.id, "U1") is False

    def test_unknown_id(self, store):
        assert store.record_response("ans_missing", "U1") is False


class TestReadyToProcess:
    def test_deadline_respected(self, store, clock):
        answer = _create(store)
        store.record_response(answer.id, "U1", 10)

        clock.advance(seconds=9)
        assert store.ready_to_process() == []
        clock.advance(seconds=1)
        assert [a.id for a in store.ready_to_process()] == [answer.id]


class TestOutcomes:
    def test_mark_processed_records_reason(self, store):
        answer = _create(store)
        assert store.mark_processed(answer.id, {"reason": "no_owner_replies_found"}) is True
        done = store.get(answer.id)
        assert done.status == AnswerStatus.PROCESSED
        assert done.outcome == {"reason": "no_owner_replies_found"}

    def test_mark_corrected_once(self, store):
        answer = _create(store)
        assert store.mark_corrected(answer.id, {"corrected_by": ["U1"]}) is True
        assert store.mark_corrected(answer.id, {"corrected_by": ["U2"]}) is False
        assert store.get(answer.id).outcome["corrected_by"] == ["U1"]


class TestHousekeeping:
    def test_prune_never_removes_active(self, store, clock):
        active = _create(store, thread_id="1.0")
        done = _create(store, thread_id="2.0")
        store.mark_corrected(done.id)

        clock.advance(days=60)
        assert store.prune_older_than(30) == 1
        assert store.get(active.id) is not None

    def test_expire_stale(self, store, clock):
        answer = _create(store)
        clock.advance(days=15)
        assert store.expire_stale(14) == 1
        assert store.get(answer.id).outcome == {"reason": "expired"}
