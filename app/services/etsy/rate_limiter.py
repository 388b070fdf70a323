"""Rate limit tracking for Etsy API (per-endpoint budget, 10/sec, 10k/day)."""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping, Optional
import logging

from app.services.etsy.errors import RateLimitedError

logger = logging.getLogger(__name__)

# Reset header values above this are absolute epoch seconds, not deltas
_EPOCH_THRESHOLD = 1_000_000_000


@dataclass
class RateLimitState:
    """Remaining quota for one endpoint in the current window."""

    remaining: int
    reset_time: float

    def is_blocked(self, now: float) -> bool:
        return self.remaining <= 0 and now < self.reset_time


def _parse_number(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value.strip())
    except (TypeError, ValueError):
        return None
    # nan, inf and overflowing literals count as missing
    if not math.isfinite(number):
        return None
    return number


class RateLimitTracker:
    """Tracks Etsy request budgets and delays requests that would exceed them.

    Enforces:
    - per-endpoint budgets reported by the provider in response headers
    - provider Retry-After windows after a 429
    - 10 requests per second (sliding window)
    - 10,000 requests per day (counter with UTC midnight reset)
    """

    MAX_PER_SECOND = 10
    MAX_PER_DAY = 10_000

    def __init__(
        self,
        max_wait_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, RateLimitState] = {}
        self._recent: deque[float] = deque()
        self._daily_count = 0
        self._daily_reset: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def get_state(self, endpoint: str) -> Optional[RateLimitState]:
        return self._states.get(endpoint)

    async def wait_for_slot(self, endpoint: str) -> float:
        """Wait until a request to ``endpoint`` may be dispatched.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitedError: If the wait would exceed ``max_wait_seconds``
                or the daily budget is exhausted.
        """
        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                delay = self._endpoint_delay(endpoint, now)
                if delay <= 0:
                    delay = self._per_second_delay(now)
                if delay <= 0:
                    self._count_daily()
                    self._recent.append(now)
                    state = self._states.get(endpoint)
                    if state is not None and now < state.reset_time:
                        state.remaining -= 1
                    return waited

            if waited + delay > self.max_wait_seconds:
                raise RateLimitedError(
                    f"Rate limit for {endpoint} resets in {delay:.1f}s",
                    retry_after=delay,
                )

            logger.info(f"Rate limit reached for {endpoint}, waiting {delay:.2f}s")
            await self._sleep(delay)
            waited += delay

    def _endpoint_delay(self, endpoint: str, now: float) -> float:
        state = self._states.get(endpoint)
        if state is None:
            return 0.0
        if state.is_blocked(now):
            return state.reset_time - now
        if now >= state.reset_time and state.remaining <= 0:
            # Window has rolled over
            del self._states[endpoint]
        return 0.0

    def _per_second_delay(self, now: float) -> float:
        while self._recent and now - self._recent[0] >= 1.0:
            self._recent.popleft()
        if len(self._recent) < self.MAX_PER_SECOND:
            return 0.0
        return 1.0 - (now - self._recent[0])

    def _count_daily(self) -> None:
        self._check_daily_reset()
        if self._daily_count >= self.MAX_PER_DAY:
            logger.warning("Etsy daily rate limit reached")
            tomorrow = (self._daily_reset + timedelta(days=1)).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            raise RateLimitedError(
                "Daily rate limit exceeded. Try again tomorrow.",
                retry_after=(tomorrow - datetime.now(timezone.utc)).total_seconds(),
            )
        self._daily_count += 1

    def _check_daily_reset(self) -> None:
        """Reset daily counter if it's a new day (UTC)."""
        now = datetime.now(timezone.utc)
        if self._daily_reset is None or now.date() > self._daily_reset.date():
            self._daily_count = 0
            self._daily_reset = now

    async def block_until(self, endpoint: str, seconds: float) -> None:
        """Hold back ``endpoint`` for ``seconds`` (provider Retry-After)."""
        async with self._lock:
            reset_time = self._clock() + max(seconds, 0.0)
            current = self._states.get(endpoint)
            if current and current.remaining <= 0 and current.reset_time > reset_time:
                return
            self._states[endpoint] = RateLimitState(remaining=0, reset_time=reset_time)
        logger.warning(f"Endpoint {endpoint} blocked for {seconds:.2f}s")

    async def update_from_headers(self, endpoint: str, headers: Mapping[str, str]) -> None:
        """Record the budget reported in response headers.

        Missing or malformed headers are treated as an unknown (generous)
        budget and clear any recorded state.
        """
        remaining = _parse_number(headers.get("x-ratelimit-remaining"))
        if remaining is None:
            remaining = _parse_number(headers.get("x-remaining-today"))
        reset = _parse_number(headers.get("x-ratelimit-reset"))

        async with self._lock:
            if remaining is None:
                self._states.pop(endpoint, None)
                return

            now = self._clock()
            if reset is None or reset < 0:
                reset_in = 0.0
            elif reset > _EPOCH_THRESHOLD:
                reset_in = max(reset - time.time(), 0.0)
            else:
                reset_in = reset
            self._states[endpoint] = RateLimitState(
                remaining=int(remaining), reset_time=now + reset_in
            )

    @property
    def daily_remaining(self) -> int:
        """Get remaining daily API calls."""
        self._check_daily_reset()
        return max(0, self.MAX_PER_DAY - self._daily_count)

    def snapshot(self) -> dict:
        """Current budgets for display."""
        now = self._clock()
        return {
            "daily_remaining": self.daily_remaining,
            "max_per_day": self.MAX_PER_DAY,
            "max_per_second": self.MAX_PER_SECOND,
            "endpoints": {
                endpoint: {
                    "remaining": state.remaining,
                    "resets_in_seconds": max(state.reset_time - now, 0.0),
                    "blocked": state.is_blocked(now),
                }
                for endpoint, state in self._states.items()
            },
        }
