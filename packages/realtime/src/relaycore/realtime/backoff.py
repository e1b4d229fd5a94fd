"""Reconnect backoff policy + timer scheduling.

Learn: The policy is a pure function of the attempt number:

    delay(k) = min(cap, base * 2**(k-1)) + jitter,   jitter ∈ [0, jitter_max)

so it can be tested without a clock. Actually waiting is the
Scheduler's job. Production code uses AsyncioScheduler (a task that
sleeps, then runs the callback); tests swap in a scheduler they can
fire by hand.
"""

import asyncio
import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger()


def _uniform_jitter(jitter_max_ms: float) -> float:
    return random.random() * jitter_max_ms


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff with a cap and random jitter."""

    max_attempts: int = 5
    base_delay_ms: float = 1000
    cap_delay_ms: float = 30000
    jitter_max_ms: float = 1000
    jitter_fn: Callable[[float], float] = field(default=_uniform_jitter, compare=False)

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay_ms < 0 or self.jitter_max_ms < 0:
            raise ValueError("delays must not be negative")
        if self.cap_delay_ms < self.base_delay_ms:
            raise ValueError("cap_delay_ms must be >= base_delay_ms")

    @classmethod
    def from_settings(cls, settings) -> "ReconnectPolicy":
        return cls(
            max_attempts=settings.reconnect_max_attempts,
            base_delay_ms=settings.reconnect_base_delay_ms,
            cap_delay_ms=settings.reconnect_cap_delay_ms,
            jitter_max_ms=settings.reconnect_jitter_max_ms,
        )

    def base_delay(self, attempt: int) -> float:
        """Capped exponential part of the delay, in ms (no jitter)."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # Past ~1024 doublings the float overflows; the cap wins long before
        exponent = min(attempt - 1, 1023)
        return min(self.cap_delay_ms, self.base_delay_ms * math.pow(2, exponent))

    def jitter(self) -> float:
        """A jitter sample clamped into [0, jitter_max_ms)."""
        if self.jitter_max_ms <= 0:
            return 0.0
        value = self.jitter_fn(self.jitter_max_ms)
        upper = math.nextafter(self.jitter_max_ms, 0.0)
        return min(max(value, 0.0), upper)

    def delay_ms(self, attempt: int) -> float:
        return self.base_delay(attempt) + self.jitter()

    def schedule(self) -> list[float]:
        """Jitter-free delays for attempts 1..max_attempts (for display)."""
        return [self.base_delay(k) for k in range(1, self.max_attempts + 1)]


# ─── Scheduling ──────────────────────────────────────────


class ScheduledCall(ABC):
    """Handle for a pending delayed call."""

    @abstractmethod
    def cancel(self) -> None:
        """Prevent the call from running (no-op if it already ran)."""

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        ...


class Scheduler(ABC):
    """Runs an async callback after a delay."""

    @abstractmethod
    def schedule(
        self, delay_seconds: float, callback: Callable[[], Awaitable[None]]
    ) -> ScheduledCall:
        ...


class _TaskCall(ScheduledCall):
    def __init__(self, task: asyncio.Task):
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        if not self._task.done():
            self._cancelled = True
            self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler(Scheduler):
    """Delayed callbacks as tasks on the running event loop."""

    def schedule(
        self, delay_seconds: float, callback: Callable[[], Awaitable[None]]
    ) -> ScheduledCall:
        async def _run():
            await asyncio.sleep(delay_seconds)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("relaycore.scheduled_call_failed")

        return _TaskCall(asyncio.get_running_loop().create_task(_run()))
