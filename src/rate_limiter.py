import logging
import threading
import time
from collections import deque
from typing import Callable, Deque

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Global sliding-window admission gate.

    Admits at most ``max_requests`` calls in any ``window`` seconds. Not per
    client: stream management is already gated by the API key.
    """

    def __init__(self, max_requests: int, window: float, clock: Callable[[], float] = time.monotonic):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: Deque[float] = deque()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Record and admit the call if the window has room, otherwise reject it."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.window
            while self._requests and self._requests[0] <= cutoff:
                self._requests.popleft()

            if len(self._requests) >= self.max_requests:
                return False

            self._requests.append(now)
            return True

    def reset(self):
        with self._lock:
            self._requests.clear()
