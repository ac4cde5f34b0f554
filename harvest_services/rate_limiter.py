"""
Adaptive Rate Limiter with Circuit Breaker

One RateLimiter is owned by each harvester instance. It tracks the current
inter-request delay, consecutive throttle signals and requests since the last
batch rest, and sleeps accordingly:

- Throttle: delay grows by a fixed step up to a cap; 3+ consecutive signals
  sleep tens of seconds, 5+ sleep minutes, the 10th sleeps many minutes and
  resets the delay to its post-throttle floor
- Success: consecutive counter resets, delay decays toward base
- Batch rest: after a fixed number of requests, a long randomized rest caps
  sustained load regardless of observed throttling
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from harvest_config import RateLimitSettings

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class RateLimiterStats:
    """Counters reported in run summaries"""
    total_requests: int = 0
    total_throttles: int = 0
    short_cooldowns: int = 0
    medium_cooldowns: int = 0
    long_cooldowns: int = 0
    batch_rests: int = 0
    slept_seconds: float = 0.0


class RateLimiter:
    """
    Adaptive delay and circuit breaker state for one source.
    """

    def __init__(
        self,
        settings: Optional[RateLimitSettings] = None,
        sleep: Optional[Sleeper] = None,
        rng: Optional[random.Random] = None,
        name: str = 'source'
    ):
        self.settings = settings or RateLimitSettings()
        self.name = name
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self.current_delay = self.settings.base_delay
        self.consecutive_throttles = 0
        self.requests_since_rest = 0
        self.stats = RateLimiterStats()

    def next_delay(self) -> float:
        """Current delay with +/- jitter applied"""
        jitter = self.settings.jitter
        return self.current_delay * (1 - jitter + self._rng.random() * 2 * jitter)

    async def wait(self) -> None:
        """Sleep the jittered inter-request delay"""
        await self.pause(self.next_delay())

    def record_request(self) -> None:
        self.stats.total_requests += 1

    def on_success(self) -> None:
        """Record a successful (non-throttled) response"""
        self.consecutive_throttles = 0
        self.requests_since_rest += 1
        if self.current_delay > self.settings.base_delay:
            self.current_delay = max(
                self.settings.base_delay,
                self.current_delay - self.settings.delay_decay
            )

    async def on_throttle(self) -> None:
        """
        Record a throttle signal and escalate the circuit breaker.

        The long cooldown fires once, when the consecutive count reaches its
        threshold; further signals in the same run use the medium cooldown.
        """
        s = self.settings
        self.consecutive_throttles += 1
        self.stats.total_throttles += 1
        self.current_delay = min(self.current_delay + s.throttle_step, s.max_delay)
        count = self.consecutive_throttles

        if count == s.long_cooldown_after:
            logger.error(f"[{self.name}] {count} consecutive throttles, cooling down {s.long_cooldown:.0f}s")
            self.stats.long_cooldowns += 1
            await self.pause(s.long_cooldown)
            self.requests_since_rest = 0
            self.current_delay = s.post_cooldown_floor
        elif count >= s.medium_cooldown_after:
            logger.warning(f"[{self.name}] {count} consecutive throttles, cooling down {s.medium_cooldown:.0f}s")
            self.stats.medium_cooldowns += 1
            await self.pause(s.medium_cooldown)
            self.requests_since_rest = 0
        elif count >= s.short_cooldown_after:
            logger.warning(f"[{self.name}] {count} consecutive throttles, waiting {s.short_cooldown:.0f}s")
            self.stats.short_cooldowns += 1
            await self.pause(s.short_cooldown)
        else:
            logger.info(f"[{self.name}] throttled, delay now {self.current_delay:.1f}s")

    async def maybe_batch_rest(self) -> bool:
        """Take the long randomized rest once the batch size is reached"""
        s = self.settings
        if s.batch_size <= 0 or self.requests_since_rest < s.batch_size:
            return False

        rest = s.batch_rest + self._rng.random() * s.batch_rest_jitter
        logger.info(f"[{self.name}] batch rest {rest:.0f}s after {self.requests_since_rest} requests")
        self.stats.batch_rests += 1
        await self.pause(rest)
        self.requests_since_rest = 0
        self.current_delay = s.base_delay
        return True

    async def backoff_after_error(self) -> None:
        """Fixed pause after a transient (non-throttle) error"""
        await self.pause(self.settings.error_backoff)

    async def pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        self.stats.slept_seconds += seconds
        await self._sleep(seconds)

    def summary(self) -> str:
        return (f"{self.stats.total_requests} requests, {self.stats.total_throttles} throttled, "
                f"{self.stats.long_cooldowns} long cooldowns, {self.stats.batch_rests} batch rests")
