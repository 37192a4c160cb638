"""
Tests for sap_gw.webhook.replay.
"""

import threading
from datetime import datetime, timezone

import pytest

from sap_gw.webhook.replay import ReplayConfig, ReplayProtectionManager, parse_timestamp


@pytest.fixture
def replay(clock):
    manager = ReplayProtectionManager(ReplayConfig(nonce_ttl=300, max_nonces=3), clock=clock, start_cleanup=False)
    yield manager
    manager.destroy()


class TestParseTimestamp:
    """Tests for timestamp formats."""

    def test_unix_seconds(self):
        assert parse_timestamp("1700000000") == 1_700_000_000.0
        assert parse_timestamp(1_700_000_000) == 1_700_000_000.0

    def test_unix_milliseconds(self):
        assert parse_timestamp("1700000000500") == 1_700_000_000.5

    def test_iso(self):
        expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc).timestamp()
        assert parse_timestamp("2023-11-14T22:13:20Z") == expected

    @pytest.mark.parametrize("value", ["yesterday", "2023-13-99T00:00:00Z", True])
    def test_invalid(self, value):
        assert parse_timestamp(value) is None


class TestCheckNonce:
    """Tests for nonce checks."""

    def test_unseen_nonce(self, replay):
        assert not replay.check_nonce("n1").is_replay

    def test_check_does_not_store(self, replay):
        replay.check_nonce("n1")
        assert not replay.check_nonce("n1").is_replay

    def test_stored_nonce_is_replay(self, replay, clock):
        replay.store_nonce("n1")
        clock.advance(10)
        result = replay.check_nonce("n1")
        assert result.is_replay
        assert result.error == "Nonce already used"
        assert result.age == 10

    def test_expired_nonce_is_accepted(self, replay, clock):
        replay.store_nonce("n1")
        clock.advance(301)
        result = replay.check_nonce("n1")
        assert not result.is_replay
        assert result.is_expired

    def test_empty_nonce(self, replay):
        result = replay.check_nonce("")
        assert result.is_replay
        assert result.error == "Nonce is required"


class TestCheckNonceWithTimestamp:
    """Tests for the timestamp window."""

    def test_fresh_timestamp(self, replay, clock):
        assert not replay.check_nonce_with_timestamp("n1", str(int(clock.now) - 10)).is_replay

    def test_old_timestamp(self, replay, clock):
        result = replay.check_nonce_with_timestamp("n1", str(int(clock.now) - 301))
        assert result.is_replay
        assert result.error.startswith("Timestamp too old")

    def test_custom_tolerance(self, replay, clock):
        result = replay.check_nonce_with_timestamp("n1", int(clock.now) - 61, tolerance=60)
        assert result.is_replay

    def test_future_timestamp(self, replay, clock):
        result = replay.check_nonce_with_timestamp("n1", str(int(clock.now) + 120))
        assert result.is_replay
        assert "future" in result.error

    def test_small_clock_skew_allowed(self, replay, clock):
        assert not replay.check_nonce_with_timestamp("n1", str(int(clock.now) + 30)).is_replay

    def test_invalid_timestamp(self, replay):
        result = replay.check_nonce_with_timestamp("n1", "garbage")
        assert result.is_replay
        assert result.error == "Invalid timestamp format"

    def test_timestamp_checked_before_nonce(self, replay, clock):
        replay.store_nonce("n1")
        result = replay.check_nonce_with_timestamp("n1", "garbage")
        assert result.error == "Invalid timestamp format"

    def test_replayed_nonce_with_valid_timestamp(self, replay, clock):
        replay.store_nonce("n1")
        result = replay.check_nonce_with_timestamp("n1", int(clock.now * 1000))
        assert result.is_replay
        assert result.error == "Nonce already used"


class TestStoreNonce:
    """Tests for the bounded store."""

    def test_store_and_stats(self, replay):
        assert replay.store_nonce("n1", signature="sig")
        stats = replay.get_stats()
        assert stats.size == 1
        assert stats.max_size == 3
        assert stats.utilization_percent == 33.33

    def test_empty_nonce_rejected(self, replay):
        assert replay.store_nonce("") is False

    def test_custom_ttl(self, replay, clock):
        replay.store_nonce("n1", ttl=5)
        clock.advance(6)
        assert not replay.check_nonce("n1").is_replay

    def test_full_store_fails_closed(self, replay):
        for nonce in ("a", "b", "c"):
            assert replay.store_nonce(nonce)
        assert replay.store_nonce("d") is False
        assert replay.get_stats().size == 3

    def test_full_store_sweeps_expired_first(self, replay, clock):
        replay.store_nonce("a")
        replay.store_nonce("b")
        clock.advance(200)
        replay.store_nonce("c")
        clock.advance(101)
        assert replay.store_nonce("d")
        assert replay.get_stats().size == 2

    def test_restoring_existing_nonce_when_full(self, replay):
        for nonce in ("a", "b", "c"):
            replay.store_nonce(nonce)
        assert replay.store_nonce("a")


class TestCleanup:
    """Tests for expiry sweeps and lifecycle."""

    def test_cleanup_removes_expired(self, replay, clock):
        replay.store_nonce("a")
        clock.advance(100)
        replay.store_nonce("b")
        clock.advance(250)
        assert replay.cleanup() == 1
        assert replay.get_stats().size == 1

    def test_clear_all(self, replay):
        replay.store_nonce("a")
        replay.clear_all()
        assert replay.get_stats().size == 0

    def test_background_cleanup_lifecycle(self, clock):
        manager = ReplayProtectionManager(ReplayConfig(cleanup_interval=0.01), clock=clock)
        try:
            assert manager.cleanup_running
            manager.store_nonce("a")
            clock.advance(1000)
            swept = threading.Event()
            original = manager.cleanup

            def tracked_cleanup():
                removed = original()
                swept.set()
                return removed

            manager.cleanup = tracked_cleanup
            assert swept.wait(timeout=2)
            assert manager.get_stats().size == 0
        finally:
            manager.destroy()
        assert not manager.cleanup_running

    def test_stop_is_idempotent(self, replay):
        replay.stop_cleanup()
        replay.stop_cleanup()
        assert not replay.cleanup_running


class TestGenerateNonce:
    """Tests for nonce generation."""

    @pytest.mark.parametrize("length", [1, 16, 31, 32, 64])
    def test_length(self, length):
        nonce = ReplayProtectionManager.generate_nonce(length)
        assert len(nonce) == length
        int(nonce, 16)

    def test_unique(self):
        assert ReplayProtectionManager.generate_nonce() != ReplayProtectionManager.generate_nonce()

    def test_invalid_length(self):
        with pytest.raises(ValueError):
            ReplayProtectionManager.generate_nonce(0)
