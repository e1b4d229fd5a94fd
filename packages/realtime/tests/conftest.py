"""Test fixtures — an in-memory hub, a hand-driven scheduler, JWTs.

Learn: Testing pattern for the connection state machine:

1. FakeHub stands in for the server. Every connect attempt asks it for a
   FakeTransport; the hub decides whether the handshake fails, is
   rejected with 401, or hangs until the test releases it.
2. ManualScheduler replaces wall-clock backoff. A reconnect is only
   attempted when the test calls ``scheduler.run_next()``.
3. Tokens are real JWTs signed with a throwaway key, so expiry checks
   exercise PyJWT exactly as production does.

No sockets, no sleeps longer than a loop tick.
"""

import asyncio
import json
import time
from typing import Any, Optional

import jwt
import pytest
import pytest_asyncio

from relaycore.errors import AuthenticationError, TransportError
from relaycore.events.dispatcher import EventDispatcher
from relaycore.realtime.backoff import ReconnectPolicy, ScheduledCall, Scheduler
from relaycore.realtime.connection import ConnectionConfig, ConnectionManager
from relaycore.realtime.transport import Transport

HUB_URL = "ws://hub.test/hubs/template-analytics"
SIGNING_KEY = "relaycore-test-signing-key-0123456789abcdef"

_CLOSED = object()


def make_token(expires_in: Optional[float] = 3600, **claims) -> str:
    """Signed JWT; ``expires_in=None`` omits the exp claim."""
    payload = {"sub": "user-1", **claims}
    if expires_in is not None:
        payload["exp"] = int(time.time() + expires_in)
    return jwt.encode(payload, SIGNING_KEY, algorithm="HS256")


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ─── Fake transport ─────────────────────────────────────


class FakeTransport(Transport):
    def __init__(self, hub: "FakeHub"):
        self.hub = hub
        self.url: Optional[str] = None
        self.headers: dict[str, str] = {}
        self.sent: list[str] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._open = False

    async def open(self, url: str, headers: dict[str, str]) -> None:
        self.url = url
        self.headers = dict(headers)
        if self.hub.gate is not None:
            await self.hub.gate.wait()
        if self.hub.reject_auth:
            raise AuthenticationError("Hub rejected credentials (HTTP 401)")
        if self.hub.open_crash is not None:
            raise self.hub.open_crash
        if self.hub.open_failures > 0:
            self.hub.open_failures -= 1
            raise TransportError("connection refused")
        self._open = True

    async def send(self, text: str) -> None:
        if not self._open:
            raise TransportError("Transport is not open")
        self.sent.append(text)

    async def receive(self) -> str:
        item = await self.incoming.get()
        if item is _CLOSED:
            self._open = False
            raise TransportError("Connection closed by server")
        return item

    async def close(self) -> None:
        self.closed = True
        if self._open:
            self._open = False
            self.incoming.put_nowait(_CLOSED)

    @property
    def is_open(self) -> bool:
        return self._open

    # ─── Server side ──────────────────────────────────────

    def push(self, frame: Any) -> None:
        """Deliver a frame (dict → JSON, str as-is) to the client."""
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def push_event(self, target: str, *arguments: Any) -> None:
        self.push({"type": "event", "target": target, "arguments": list(arguments)})

    def drop(self) -> None:
        """Simulate the server going away."""
        self.incoming.put_nowait(_CLOSED)

    def sent_frames(self) -> list[dict]:
        return [json.loads(text) for text in self.sent]

    def last_invocation(self) -> dict:
        frames = [f for f in self.sent_frames() if f["type"] == "invocation"]
        assert frames, "nothing was invoked"
        return frames[-1]

    def complete(self, invocation_id: str, result: Any = None, error: Optional[str] = None) -> None:
        frame = {"type": "completion", "invocationId": invocation_id, "result": result}
        if error is not None:
            frame["error"] = error
        self.push(frame)


class FakeHub:
    """Hands out FakeTransports and scripts how their handshakes go."""

    def __init__(self):
        self.transports: list[FakeTransport] = []
        self.open_failures = 0
        self.reject_auth = False
        self.open_crash: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        assert self.transports, "no transport was created"
        return self.transports[-1]


# ─── Manual scheduler ───────────────────────────────────


class ManualCall(ScheduledCall):
    def __init__(self, delay_seconds: float, callback):
        self.delay_seconds = delay_seconds
        self.callback = callback
        self._cancelled = False
        self.ran = False

    def cancel(self) -> None:
        if not self.ran:
            self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Records delayed calls; ``run_next()`` awaits the oldest pending one."""

    def __init__(self):
        self.calls: list[ManualCall] = []

    def schedule(self, delay_seconds, callback) -> ScheduledCall:
        call = ManualCall(delay_seconds, callback)
        self.calls.append(call)
        return call

    @property
    def pending(self) -> list[ManualCall]:
        return [c for c in self.calls if not c.cancelled and not c.ran]

    async def run_next(self) -> Optional[float]:
        """Run the oldest pending call. Returns its delay, or None."""
        pending = self.pending
        if not pending:
            return None
        call = pending[0]
        call.ran = True
        await call.callback()
        return call.delay_seconds


# ─── Fixtures ───────────────────────────────────────────


@pytest.fixture()
def hub():
    return FakeHub()


@pytest.fixture()
def scheduler():
    return ManualScheduler()


@pytest.fixture()
def policy():
    """Deterministic policy: 100ms base, 1s cap, no jitter, 3 attempts."""
    return ReconnectPolicy(max_attempts=3, base_delay_ms=100, cap_delay_ms=1000, jitter_max_ms=0)


@pytest.fixture()
def token():
    return make_token(expires_in=3600)


@pytest.fixture()
def statuses():
    """Collects ``connection`` lifecycle payloads."""
    return []


@pytest_asyncio.fixture()
async def manager(hub, scheduler, policy, token, statuses):
    """ConnectionManager wired to the fake hub. Disconnected after the test."""
    dispatcher = EventDispatcher()
    mgr = ConnectionManager(
        ConnectionConfig(url=HUB_URL, policy=policy, invoke_timeout_seconds=5.0),
        lambda: token,
        dispatcher=dispatcher,
        transport_factory=hub,
        scheduler=scheduler,
    )
    mgr.on_state_change(statuses.append)
    try:
        yield mgr
    finally:
        await mgr.disconnect()
