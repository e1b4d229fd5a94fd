"""Work correlator — match asynchronous replies to their requests.

Learn: Every outbound call gets a correlation id and a Future. The reply
(which may arrive out of order) carries the id back, and resolve()/
reject() settles exactly that Future. Ids come from a monotonically
increasing counter, so they never repeat for the lifetime of the
correlator.

Entries leave the pending table on exactly one of:
- a matching reply (resolve / reject)
- a per-request timeout
- reject_all() on disconnect or shutdown
- the awaiting caller cancelling its Future
"""

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import structlog

from relaycore.errors import RequestTimeoutError

logger = structlog.get_logger()


@dataclass
class PendingRequest:
    """One in-flight correlated call."""
    correlation_id: str
    created_at: float
    future: asyncio.Future
    label: Optional[str] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.created_at


class WorkCorrelator:
    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._counter = itertools.count(1)
        self._pending: dict[str, PendingRequest] = {}

    def next_id(self) -> str:
        return f"{self.prefix}{next(self._counter)}"

    def register(
        self,
        correlation_id: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        label: Optional[str] = None,
    ) -> tuple[str, asyncio.Future]:
        """Create a pending entry. Must run inside the event loop."""
        cid = correlation_id or self.next_id()
        if cid in self._pending:
            raise ValueError(f"Correlation id {cid!r} is already pending")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        entry = PendingRequest(
            correlation_id=cid,
            created_at=time.monotonic(),
            future=future,
            label=label,
        )
        if timeout is not None:
            entry.timeout_handle = loop.call_later(timeout, self._expire, cid, timeout)
        self._pending[cid] = entry
        future.add_done_callback(lambda _f: self._forget(cid, entry))
        return cid, future

    def resolve(self, correlation_id: str, result: Any) -> bool:
        """Settle a pending request with ``result``.

        Returns False for unknown ids (late reply after a timeout, or a
        reply to someone else's request) — those are logged and dropped.
        """
        entry = self._pending.get(correlation_id)
        if entry is None:
            logger.debug("relaycore.correlator.unknown_id", correlation_id=correlation_id)
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, correlation_id: str, error: BaseException) -> bool:
        entry = self._pending.get(correlation_id)
        if entry is None:
            logger.debug("relaycore.correlator.unknown_id", correlation_id=correlation_id)
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def reject_all(
        self, error: Union[BaseException, Callable[[], BaseException]]
    ) -> int:
        """Reject every pending request. Returns how many were rejected.

        Pass a factory to give each Future its own exception instance.
        """
        entries = list(self._pending.values())
        for entry in entries:
            exc = error() if callable(error) else error
            if not entry.future.done():
                entry.future.set_exception(exc)
                # Nobody may be awaiting (fire-and-forget callers)
                entry.future.add_done_callback(_consume_exception)
        self._pending.clear()
        for entry in entries:
            if entry.timeout_handle:
                entry.timeout_handle.cancel()
        return len(entries)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    # ─── Internals ────────────────────────────────────────

    def _expire(self, correlation_id: str, timeout: float) -> None:
        entry = self._pending.get(correlation_id)
        if entry is None or entry.future.done():
            return
        label = f" ({entry.label})" if entry.label else ""
        entry.future.set_exception(
            RequestTimeoutError(
                f"No response for request {correlation_id}{label} after {timeout:.1f}s"
            )
        )

    def _forget(self, correlation_id: str, entry: PendingRequest) -> None:
        # Only drop the entry this callback belongs to
        if self._pending.get(correlation_id) is entry:
            del self._pending[correlation_id]
        if entry.timeout_handle:
            entry.timeout_handle.cancel()


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
