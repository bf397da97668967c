"""
Per-account request rate limiting.

Fixed-window counter standing in for a sliding window. Within one window at
most ``max_requests`` are admitted, but a burst straddling a window boundary
can admit up to ``2 * max_requests`` inside ``window_seconds`` of real time.
The limiter exists for coarse abuse prevention, not precise quotas.

The read-then-write is not atomic. Concurrent requests for one account can
read the same count and both be admitted; a lone request is never wrongly
rejected.
"""

import logging
import time
from typing import Callable

from token_meter.storage.kv import KeyValueStore, StoreError
from token_meter.storage.models import RateWindow, rate_key

logger = logging.getLogger(__name__)

# Extra seconds a window record outlives its window
TTL_GRACE_SECONDS = 5


class RateLimiter:
    """Fixed-window request limiter backed by the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the limiter.

        Args:
            store: Backing key-value store
            max_requests: Requests admitted per window
            window_seconds: Window length in seconds
            clock: Time source returning epoch seconds

        Raises:
            ValueError: If limits are not positive
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    def allow(self, account: str) -> bool:
        """Record one request for ``account`` and report whether it is admitted.

        Raises:
            StoreError: If the window cannot be read, or an increment
                cannot be written
        """
        key = rate_key(account)
        now = int(self._clock())
        window = RateWindow.from_json(self.store.get(key))

        if window is None or now - window.start >= self.window_seconds:
            fresh = RateWindow(count=1, start=now)
            try:
                self.store.put(
                    key,
                    fresh.to_json(),
                    ttl=self.window_seconds + TTL_GRACE_SECONDS
                )
            except StoreError as e:
                # First request of a window is admitted even if bookkeeping fails
                logger.warning(f"Rate window reset for {account} not persisted: {e}")
            return True

        if window.count >= self.max_requests:
            return False

        elapsed = now - window.start
        self.store.put(
            key,
            RateWindow(count=window.count + 1, start=window.start).to_json(),
            ttl=self.window_seconds - elapsed + TTL_GRACE_SECONDS
        )
        return True
