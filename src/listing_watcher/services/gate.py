"""Per-service concurrency gate and action rate limiter."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from listing_watcher.config import GateLimits, GateSettings

logger = logging.getLogger(__name__)


class ServiceGate:
    """Bounds automation load against one external service.

    Two independent limits:
    - a semaphore admitting at most ``max_concurrent`` executions;
    - a token bucket refilled at ``actions_per_minute / 60`` tokens per
      second, one token per network action (login, page load).

    The bucket holds at most ``max_concurrent`` tokens so a burst never
    exceeds one action per admitted execution.
    """

    def __init__(
        self,
        name: str,
        limits: GateLimits,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.max_concurrent = limits.max_concurrent
        self.actions_per_minute = limits.actions_per_minute
        self._clock = clock
        self._semaphore = asyncio.Semaphore(limits.max_concurrent)
        self._bucket_lock = asyncio.Lock()
        self._capacity = float(limits.max_concurrent)
        self._tokens = self._capacity
        self._refilled_at: float | None = None
        self.in_flight = 0
        self.peak_in_flight = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one of the service's concurrent execution slots."""
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    async def acquire_action(self) -> None:
        """Wait until the bucket allows one more network action."""
        if self.actions_per_minute <= 0:
            return

        rate = self.actions_per_minute / 60.0
        async with self._bucket_lock:
            while True:
                now = self._clock()
                if self._refilled_at is not None:
                    elapsed = max(0.0, now - self._refilled_at)
                    self._tokens = min(self._capacity, self._tokens + elapsed * rate)
                self._refilled_at = now

                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return

                wait_time = (1.0 - self._tokens) / rate
                logger.debug("Gate %s throttled for %.2fs", self.name, wait_time)
                await asyncio.sleep(wait_time)


class GateRegistry:
    """Lazily creates one gate per service name."""

    def __init__(
        self,
        settings: GateSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or GateSettings()
        self._clock = clock
        self._gates: dict[str, ServiceGate] = {}

    def gate_for(self, service_name: str) -> ServiceGate:
        gate = self._gates.get(service_name)
        if gate is None:
            gate = ServiceGate(service_name, self._settings.limits_for(service_name), self._clock)
            self._gates[service_name] = gate
        return gate

    def in_flight(self) -> dict[str, int]:
        return {name: gate.in_flight for name, gate in self._gates.items()}
