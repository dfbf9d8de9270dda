"""
Tests for notification rate limiting

Tests token bucket refill and the chained per-camera limiter.
"""

import pytest

from camwatch.ratelimit import NotificationLimiter, TokenBucket

from conftest import FakeClock


class TestTokenBucket:
    """Test the quantum token bucket"""

    def test_starts_full(self, clock):
        bucket = TokenBucket(1.0, 3, 1, clock=clock)
        assert bucket.available() == 3

    def test_take_available_never_exceeds_tokens(self, clock):
        bucket = TokenBucket(1.0, 3, 1, clock=clock)
        assert bucket.take_available(5) == 3
        assert bucket.take_available(1) == 0

    def test_refills_in_whole_intervals(self, clock):
        bucket = TokenBucket(60.0, 20, 20, clock=clock)
        assert bucket.take_available(20) == 20
        clock.advance(59.5)
        assert bucket.available() == 0
        clock.advance(0.5)
        assert bucket.available() == 20

    def test_capped_at_capacity(self, clock):
        bucket = TokenBucket(1.0, 3, 1, clock=clock)
        bucket.take_available(1)
        clock.advance(100)
        assert bucket.available() == 3

    def test_refill_counts_from_creation(self, clock):
        """A take midway through an interval does not push the next refill back"""
        bucket = TokenBucket(1.0, 3, 1, clock=clock)
        clock.advance(0.5)
        bucket.take_available(3)
        clock.advance(0.5)
        assert bucket.available() == 1

    @pytest.mark.parametrize("args", [(0, 1, 1), (1, 0, 1), (1, 1, 0)])
    def test_invalid_arguments(self, args):
        with pytest.raises(ValueError):
            TokenBucket(*args, clock=FakeClock())


class TestNotificationLimiter:
    """Test the chained frame/burst/pace limiter"""

    def test_burst_of_three_then_refill(self, clock):
        limiter = NotificationLimiter(clock)
        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        clock.advance(1.0)
        assert limiter.try_acquire()

    def test_pace_limits_to_six_per_fifteen_seconds(self, clock):
        limiter = NotificationLimiter(clock)
        sent = 0
        for _ in range(14):
            if limiter.try_acquire():
                sent += 1
            clock.advance(1.0)
        assert sent == 6

    def test_frame_limit_per_minute(self, clock):
        limiter = NotificationLimiter(clock)
        sent = 0
        # 2.5s spacing keeps burst and pace satisfied, so only the minute cap binds.
        for _ in range(24):
            if limiter.try_acquire():
                sent += 1
            clock.advance(2.5)
        assert sent == 20

    def test_denied_attempt_does_not_refund(self, clock):
        limiter = NotificationLimiter(clock)
        for _ in range(3):
            assert limiter.try_acquire()
        frame_before = limiter.frame.available()
        assert not limiter.try_acquire()
        assert limiter.frame.available() == frame_before - 1

    def test_overview_ready_at_start(self, clock):
        limiter = NotificationLimiter(clock)
        assert limiter.overview_ready()
        assert limiter.try_acquire_overview()

    def test_overview_cooldown(self, clock):
        limiter = NotificationLimiter(clock)
        assert limiter.try_acquire_overview()
        clock.advance(9.5)
        assert not limiter.try_acquire_overview()
        clock.advance(0.5)
        assert limiter.try_acquire_overview()

    def test_overview_cooldown_not_reset_when_buckets_deny(self, clock):
        limiter = NotificationLimiter(clock)
        for _ in range(3):
            limiter.try_acquire()
        assert not limiter.try_acquire_overview()
        clock.advance(1.0)
        assert limiter.try_acquire_overview()

    def test_tokens_remaining(self, clock):
        limiter = NotificationLimiter(clock)
        limiter.try_acquire()
        text = limiter.tokens_remaining()
        assert "frame: 19" in text
        assert "burst: 2" in text
        assert "pace: 5" in text
