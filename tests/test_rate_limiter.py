import threading

import pytest

from rate_limiter import SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:

    @pytest.fixture
    def limiter(self, clock):
        return SlidingWindowRateLimiter(10, 60.0, clock=clock)

    def test_eleventh_call_in_window_rejected(self, limiter):
        assert all(limiter.allow() for _ in range(10))
        assert limiter.allow() is False

    def test_admits_again_after_window(self, limiter, clock):
        for _ in range(10):
            limiter.allow()
        clock.advance(59.9)
        assert limiter.allow() is False
        clock.advance(0.2)
        assert limiter.allow() is True

    def test_window_slides(self, limiter, clock):
        for _ in range(5):
            limiter.allow()
        clock.advance(30)
        for _ in range(5):
            limiter.allow()
        assert limiter.allow() is False

        # The first five fall out of the window; the later five remain
        clock.advance(30)
        assert sum(limiter.allow() for _ in range(10)) == 5

    def test_rejected_calls_are_not_recorded(self, limiter, clock):
        for _ in range(10):
            limiter.allow()
        for _ in range(100):
            limiter.allow()
        clock.advance(60.1)
        assert sum(limiter.allow() for _ in range(20)) == 10

    def test_reset(self, limiter):
        for _ in range(10):
            limiter.allow()
        limiter.reset()
        assert limiter.allow() is True

    def test_concurrent_callers_never_exceed_limit(self):
        limiter = SlidingWindowRateLimiter(10, 60.0)
        results = []
        results_lock = threading.Lock()

        def worker():
            allowed = limiter.allow()
            with results_lock:
                results.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 50
        assert results.count(True) == 10

    @pytest.mark.parametrize("max_requests,window", [(0, 60.0), (10, 0), (10, -1)])
    def test_invalid_configuration(self, max_requests, window):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests, window)
