"""
Rate limiter shared by the backend adapter, the session gate and the stats refresher.

Supports different time windows, request categories and strategies, plus a
non-blocking try_acquire()/release() pair with an optional concurrency cap.
The clock and sleep functions are injectable so limits can be tested without
real timers.
"""

from __future__ import annotations

import threading
import time
import logging
from typing import Callable, Dict, List, Optional, Literal
from dataclasses import dataclass
from collections import defaultdict

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for a specific rate limit."""
    requests_per_window: int
    window_seconds: int
    strategy: Literal["sliding_window", "fixed_window", "token_bucket"] = "sliding_window"
    max_concurrent: Optional[int] = None


class RateLimiter:
    """
    Rate limiter supporting multiple request categories.

    Features:
    - Different limits per category (e.g., session_check vs stats_poll)
    - Configurable strategies (sliding window, fixed window, token bucket)
    - Blocking wait_if_needed() for adapters, non-blocking try_acquire() for
      background callers that should skip work instead of waiting
    - Optional cap on concurrently active acquisitions per category
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._clock = clock or time.time
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()

        # category -> request timestamps for sliding window
        self.sliding_windows: Dict[str, List[float]] = defaultdict(list)

        # category -> (window_start, count) for fixed window
        self.fixed_windows: Dict[str, tuple[int, int]] = {}

        # category -> available tokens for token bucket
        self.token_buckets: Dict[str, float] = {}

        # category -> currently active acquisitions
        self.active: Dict[str, int] = defaultdict(int)

        self.configs: Dict[str, RateLimitConfig] = {}

        self.last_refill: Dict[str, float] = {}

    def configure_limit(self, category: str, config: RateLimitConfig) -> None:
        """Configure rate limiting for a specific category."""
        self.configs[category] = config

        if config.strategy == "token_bucket":
            self.token_buckets[category] = config.requests_per_window
            self.last_refill[category] = self._clock()

        logger.info(f"Configured rate limit for {category}: {config.requests_per_window} req/{config.window_seconds}s ({config.strategy})")

    def wait_if_needed(self, category: str = "default") -> None:
        """
        Wait if the rate limit would be exceeded for the given category.

        Args:
            category: Rate limit category (e.g., "baas_write", "baas_read")
        """
        if category not in self.configs:
            logger.debug(f"No rate limit configured for category '{category}', allowing request")
            return

        config = self.configs[category]

        if config.strategy == "sliding_window":
            self._wait_sliding_window(category, config)
        elif config.strategy == "fixed_window":
            self._wait_fixed_window(category, config)
        elif config.strategy == "token_bucket":
            self._wait_token_bucket(category, config)

    def try_acquire(self, category: str) -> bool:
        """
        Acquire a slot without waiting.

        Returns False when the window is full or the concurrency cap is
        reached. Every successful acquisition must be paired with release().
        Unconfigured categories are always allowed.
        """
        config = self.configs.get(category)
        if config is None:
            return True

        with self._lock:
            if config.max_concurrent is not None and self.active[category] >= config.max_concurrent:
                logger.debug(f"Throttled {category}: {self.active[category]} calls already in flight")
                return False

            current_time = self._clock()
            if config.strategy == "token_bucket":
                self._refill_tokens(category, config, current_time)
                if self.token_buckets[category] < 1:
                    logger.debug(f"Throttled {category}: token bucket empty")
                    return False
                self.token_buckets[category] -= 1
            elif config.strategy == "fixed_window":
                window_start = int(current_time / config.window_seconds) * config.window_seconds
                stored_window, count = self.fixed_windows.get(category, (window_start, 0))
                if stored_window != window_start:
                    count = 0
                if count >= config.requests_per_window:
                    logger.debug(f"Throttled {category}: fixed window full")
                    return False
                self.fixed_windows[category] = (window_start, count + 1)
            else:
                window_times = self.sliding_windows[category]
                window_times[:] = [t for t in window_times if current_time - t < config.window_seconds]
                if len(window_times) >= config.requests_per_window:
                    logger.debug(f"Throttled {category}: {len(window_times)} calls in the last {config.window_seconds}s")
                    return False
                window_times.append(current_time)

            self.active[category] += 1
            return True

    def release(self, category: str) -> None:
        """Release a slot taken with try_acquire()."""
        with self._lock:
            if self.active[category] > 0:
                self.active[category] -= 1

    def active_count(self, category: str) -> int:
        """Number of acquisitions currently in flight for a category."""
        return self.active.get(category, 0)

    def remove_limit(self, category: str) -> None:
        """Forget a category's configuration and usage."""
        with self._lock:
            self._remove(category)

    def _remove(self, category: str) -> None:
        self.configs.pop(category, None)
        self.sliding_windows.pop(category, None)
        self.fixed_windows.pop(category, None)
        self.token_buckets.pop(category, None)
        self.last_refill.pop(category, None)
        self.active.pop(category, None)

    def prune_idle(self, prefix: str = "") -> int:
        """
        Remove categories starting with ``prefix`` that have nothing in flight
        and no requests inside their current window.

        Returns:
            Number of categories removed
        """
        current_time = self._clock()
        removed = 0
        with self._lock:
            for category, config in list(self.configs.items()):
                if not category.startswith(prefix) or self.active.get(category, 0) > 0:
                    continue
                if config.strategy == "sliding_window":
                    recent = [t for t in self.sliding_windows.get(category, []) if current_time - t < config.window_seconds]
                    if recent:
                        continue
                elif config.strategy == "fixed_window":
                    window_start = int(current_time / config.window_seconds) * config.window_seconds
                    stored_window, count = self.fixed_windows.get(category, (window_start - 1, 0))
                    if stored_window == window_start and count > 0:
                        continue
                else:
                    last = self.last_refill.get(category)
                    if last is not None and current_time - last < config.window_seconds:
                        continue
                self._remove(category)
                removed += 1

        if removed:
            logger.debug(f"Pruned {removed} idle rate limit categories with prefix '{prefix}'")
        return removed

    def _wait_sliding_window(self, category: str, config: RateLimitConfig) -> None:
        """Sliding window rate limiting."""
        current_time = self._clock()

        # Remove timestamps outside the window
        window_times = self.sliding_windows[category]
        window_times[:] = [t for t in window_times if current_time - t < config.window_seconds]

        if len(window_times) >= config.requests_per_window:
            # Wait until the oldest request is outside the window
            oldest_time = min(window_times)
            wait_time = config.window_seconds - (current_time - oldest_time)

            if wait_time > 0:
                logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds")
                self._sleep(wait_time)

                current_time = self._clock()
                window_times[:] = [t for t in window_times if current_time - t < config.window_seconds]

        window_times.append(current_time)

    def _wait_fixed_window(self, category: str, config: RateLimitConfig) -> None:
        """Fixed window rate limiting."""
        current_time = self._clock()
        window_start = int(current_time / config.window_seconds) * config.window_seconds

        if category in self.fixed_windows:
            stored_window, count = self.fixed_windows[category]
            if stored_window == window_start:
                if count >= config.requests_per_window:
                    wait_time = (stored_window + config.window_seconds) - current_time
                    if wait_time > 0:
                        logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds for next window")
                        self._sleep(wait_time)
                    window_start = int(self._clock() / config.window_seconds) * config.window_seconds
                    count = 1
                else:
                    count += 1
            else:
                count = 1
        else:
            count = 1

        self.fixed_windows[category] = (window_start, count)

    def _refill_tokens(self, category: str, config: RateLimitConfig, current_time: float) -> None:
        refill_rate = config.requests_per_window / config.window_seconds  # tokens per second
        if category in self.last_refill:
            time_passed = current_time - self.last_refill[category]
            current_tokens = self.token_buckets.get(category, config.requests_per_window)
            self.token_buckets[category] = min(config.requests_per_window, current_tokens + time_passed * refill_rate)
        else:
            self.token_buckets.setdefault(category, config.requests_per_window)
        self.last_refill[category] = current_time

    def _wait_token_bucket(self, category: str, config: RateLimitConfig) -> None:
        """Token bucket rate limiting."""
        self._refill_tokens(category, config, self._clock())

        if self.token_buckets[category] < 1:
            refill_rate = config.requests_per_window / config.window_seconds
            wait_time = (1 - self.token_buckets[category]) / refill_rate

            logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds for token")
            self._sleep(wait_time)
            self._refill_tokens(category, config, self._clock())

        self.token_buckets[category] -= 1

    def get_remaining_requests(self, category: str, time_window_seconds: Optional[int] = None) -> int:
        """
        Get estimated remaining requests for a category in the given time window.

        Args:
            category: Rate limit category
            time_window_seconds: Time window to check (defaults to category's window)

        Returns:
            Estimated number of remaining requests allowed
        """
        if category not in self.configs:
            return float('inf')

        config = self.configs[category]
        window_seconds = time_window_seconds or config.window_seconds

        if config.strategy == "sliding_window":
            current_time = self._clock()
            window_times = self.sliding_windows[category]
            recent_times = [t for t in window_times if current_time - t < window_seconds]
            return max(0, config.requests_per_window - len(recent_times))

        elif config.strategy == "token_bucket":
            return max(0, int(self.token_buckets.get(category, config.requests_per_window)))

        current_time = self._clock()
        window_start = int(current_time / config.window_seconds) * config.window_seconds
        stored_window, count = self.fixed_windows.get(category, (window_start, 0))
        if stored_window != window_start:
            return config.requests_per_window
        return max(0, config.requests_per_window - count)


# Background callers share one limiter so many mounted stores cannot flood the backend
SESSION_CHECK_LIMIT = RateLimitConfig(
    requests_per_window=10,
    window_seconds=60,
    strategy="sliding_window",
    max_concurrent=2,
)

STATS_POLL_LIMIT = RateLimitConfig(
    requests_per_window=30,
    window_seconds=60,
    strategy="sliding_window",
)


def create_client_limiter(
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> RateLimiter:
    """Create a rate limiter configured for client-side background traffic."""
    limiter = RateLimiter(clock=clock, sleep=sleep)
    limiter.configure_limit("session_check", SESSION_CHECK_LIMIT)
    limiter.configure_limit("stats_poll", STATS_POLL_LIMIT)
    return limiter
