"""
Owner notifications.

Notifications (escalations, timeouts, owner alerts) are best-effort side
effects: a failed or rate-limited notification is logged and dropped, and
never rolls back the state transition that triggered it.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RateLimiter(ABC):
    @abstractmethod
    def try_acquire(self, key: str) -> bool:
        """Consumes one slot for key. Returns False when the key is over its limit."""
        pass

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        """Clears the counter for key, or for every key when key is None."""
        pass


class FixedWindowRateLimiter(RateLimiter):
    """
    Allows `limit` acquisitions per key per window of `window_seconds`.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def try_acquire(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.limit:
                self._windows[key] = (started, count)
                return False
            self._windows[key] = (started, count + 1)
            return True

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


class OwnerNotifier(ABC):
    @abstractmethod
    async def notify(self, account_id: str, title: str, body: str) -> bool:
        """Delivers a notification to the account owner. Returns True if delivered."""
        pass


class LoggingOwnerNotifier(OwnerNotifier):
    async def notify(self, account_id: str, title: str, body: str) -> bool:
        logger.info(f"[owner:{account_id}] {title}: {body}")
        return True


class RateLimitedNotifier(OwnerNotifier):
    """Wraps another notifier and drops notifications over the per-account limit."""

    def __init__(self, inner: OwnerNotifier, rate_limiter: RateLimiter):
        self.inner = inner
        self.rate_limiter = rate_limiter

    async def notify(self, account_id: str, title: str, body: str) -> bool:
        if not self.rate_limiter.try_acquire(account_id):
            logger.warning(f"Notification rate limit reached for account {account_id}; dropped '{title}'")
            return False
        return await self.inner.notify(account_id, title, body)


async def notify_best_effort(notifier: OwnerNotifier, account_id: str, title: str, body: str) -> bool:
    try:
        return await notifier.notify(account_id, title, body)
    except Exception:
        logger.exception(f"Owner notification '{title}' failed for account {account_id}")
        return False
