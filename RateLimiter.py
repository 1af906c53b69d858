import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import config

logger = logging.getLogger(__name__)


@dataclass
class RateLimitCounter:
    count: int
    reset_at: float  # epoch seconds


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_ms: int = 0


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named (window, ceiling) pair. Policies share one limiter primitive."""

    name: str
    window_ms: int
    max_count: int

    @property
    def enabled(self) -> bool:
        return self.max_count > 0


class FixedWindowRateLimiter:
    """
    In-memory fixed-window request counter keyed by client identity.

    A key's counter is reset to 1 and its window moved to ``now + window``
    on the first request after the previous window expired. Requests whose
    post-increment count exceeds the ceiling are denied with the exact
    wait until the window resets.

    If the bookkeeping itself fails, the request is admitted (fail-open)
    so a limiter bug never takes the API down.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._counters: Dict[str, RateLimitCounter] = {}
        self._clock = clock

    def admit(self, key: str, window_ms: int, max_count: int) -> RateLimitDecision:
        try:
            return self._admit(key, window_ms, max_count)
        except Exception as e:
            logger.warning(f"Rate limiter error for key '{key}', admitting request: {e}")
            return RateLimitDecision(
                allowed=True,
                limit=max_count,
                remaining=max_count,
                reset_at=self._clock() + window_ms / 1000,
            )

    def admit_policy(self, policy: RateLimitPolicy, key: str) -> RateLimitDecision:
        """Apply a named policy. Counters are namespaced per policy."""
        return self.admit(f"{policy.name}:{key}", policy.window_ms, policy.max_count)

    def _admit(self, key: str, window_ms: int, max_count: int) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or now > counter.reset_at:
                counter = RateLimitCounter(count=1, reset_at=now + window_ms / 1000)
                self._counters[key] = counter
            else:
                counter.count += 1
            count, reset_at = counter.count, counter.reset_at

        remaining = max(0, max_count - count)
        if count > max_count:
            retry_after_ms = max(0, int(round((reset_at - now) * 1000)))
            return RateLimitDecision(
                allowed=False,
                limit=max_count,
                remaining=0,
                reset_at=reset_at,
                retry_after_ms=retry_after_ms,
            )
        return RateLimitDecision(
            allowed=True, limit=max_count, remaining=remaining, reset_at=reset_at
        )

    # --- Maintenance ---

    def cleanup(self) -> int:
        """Remove counters whose window has expired (call periodically)."""
        now = self._clock()
        with self._lock:
            expired = [k for k, c in self._counters.items() if now > c.reset_at]
            for k in expired:
                del self._counters[k]
        if expired:
            logger.debug(f"Rate limiter dropped {len(expired)} expired keys")
        return len(expired)

    def reset(self, key: str) -> bool:
        with self._lock:
            return self._counters.pop(key, None) is not None

    def status(self, key: str) -> Optional[RateLimitCounter]:
        with self._lock:
            counter = self._counters.get(key)
            return RateLimitCounter(counter.count, counter.reset_at) if counter else None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"active_keys": len(self._counters)}

    def __len__(self):
        with self._lock:
            return len(self._counters)


def default_policies() -> Dict[str, RateLimitPolicy]:
    """Upload allowance is wider than the OCR allowance; global is a coarse ceiling."""
    return {
        "upload": RateLimitPolicy("upload", config.RATE_LIMIT_WINDOW_MS, config.UPLOAD_RATE_LIMIT_MAX),
        "ocr": RateLimitPolicy("ocr", config.RATE_LIMIT_WINDOW_MS, config.OCR_RATE_LIMIT_MAX),
        "global": RateLimitPolicy(
            "global", config.GLOBAL_RATE_LIMIT_WINDOW_MS, config.GLOBAL_RATE_LIMIT_MAX
        ),
    }
