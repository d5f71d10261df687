"""Tests for the pending-action store."""

from datetime import timedelta

import pytest

from kbot.common.schemas.records import PendingIntent
from kbot.tracking.pending_actions import PendingActionStore


@pytest.fixture
def store(tmp_path, clock):
    return PendingActionStore(path=tmp_path / "pending_actions.json", clock=clock)


class TestExpiry:
    def test_read_before_expiry(self, store):
        store.put("U1", PendingIntent.ADD_DOMAIN, {"name": "Billing"})
        action = store.get("U1")
        assert action.intent == PendingIntent.ADD_DOMAIN
        assert action.payload == {"name": "Billing"}

    def test_expired_read_is_absent_for_good(self, store, clock):
        store.put("U1", PendingIntent.ADD_DOMAIN, {"name": "Billing"})
        clock.advance(minutes=10)

        assert store.get("U1") is None
        clock.now -= timedelta(minutes=5)
        assert store.get("U1") is None
        assert store.count() == 0

    def test_put_refreshes_expiry(self, store, clock):
        store.put("U1", PendingIntent.ADD_DOMAIN, {})
        clock.advance(minutes=8)
        store.put("U1", PendingIntent.ADD_DOMAIN, {"name": "x"})
        clock.advance(minutes=8)
        assert store.get("U1").payload == {"name": "x"}

    def test_expired_entries_dropped_on_load(self, tmp_path, clock):
        path = tmp_path / "pending_actions.json"
        PendingActionStore(path=path, clock=clock).put("U1", PendingIntent.ADD_DOMAIN, {})

        clock.advance(minutes=11)
        reloaded = PendingActionStore(path=path, clock=clock)
        assert reloaded.count() == 0

    def test_custom_ttl_seconds(self, tmp_path, clock):
        store = PendingActionStore(path=tmp_path / "p.json", ttl=30, clock=clock)
        store.put("U1", PendingIntent.ADD_DOMAIN, {})
        clock.advance(seconds=31)
        assert store.get("U1") is None


class TestOnePerUser:
    def test_put_overwrites(self, store):
        store.put("U1", PendingIntent.ADD_DOMAIN, {"name": "a"})
        store.put("U1", PendingIntent.CORRECTION_APPROVAL, {"correction_id": "ans_1"})
        assert store.get("U1").intent == PendingIntent.CORRECTION_APPROVAL
        assert store.count() == 1


class TestClearForCorrection:
    def test_clears_only_matching_correction(self, store):
        store.put("U1", PendingIntent.CORRECTION_APPROVAL, {"correction_id": "ans_1"})
        store.put("U2", PendingIntent.CORRECTION_APPROVAL, {"correction_id": "ans_1"})
        store.put("U3", PendingIntent.CORRECTION_APPROVAL, {"correction_id": "ans_2"})
        store.put("U4", PendingIntent.ADD_DOMAIN, {"correction_id": "ans_1"})

        cleared = store.clear_for_correction("ans_1")

        assert sorted(cleared) == ["U1", "U2"]
        assert store.get("U3") is not None
        assert store.get("U4") is not None

    def test_clear_single_user(self, store):
        store.put("U1", PendingIntent.ADD_DOMAIN, {})
        assert store.clear("U1") is True
        assert store.clear("U1") is False
