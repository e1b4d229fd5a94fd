"""Connection manager — reconnecting hub connection as a state machine.

Learn: One ConnectionManager owns one logical connection and is the only
thing that mutates its ConnectionState:

    DISCONNECTED ──connect()──▶ CONNECTING ──ok──▶ CONNECTED
          ▲                        │  auth ✗            │ transport lost
          │                        ▼                    ▼
     disconnect()               FAILED ◀──budget── RECONNECTING
                                   ▲     spent          │ timer
                                   └────────────────────┘ (back to CONNECTING)

Key design decisions:
- A credential is resolved fresh for every attempt; an expired token is
  never handed to the transport (AuthenticationError, no retry loop).
- Transport failures are absorbed while attempts < max_attempts. Each one
  schedules a delayed attempt via the Scheduler; the counter resets only
  when a connection succeeds (or connect() starts a new session).
- Every await is followed by an epoch check. disconnect() bumps the
  epoch, so an attempt that was suspended mid-flight notices and backs
  off instead of resurrecting a connection nobody wants.
- Lifecycle changes are published on the ``connection`` event, so UI
  code subscribes to them exactly like to pushed hub events.
"""

import asyncio
import enum
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import structlog

from relaycore.auth.token import AuthCredential, TokenProvider, resolve_credential
from relaycore.errors import (
    AuthenticationError,
    InvocationError,
    ReconnectExhaustedError,
    RequestCancelledError,
    TransportError,
)
from relaycore.events import types as ev
from relaycore.events.dispatcher import EventDispatcher, Subscription
from relaycore.realtime.backoff import AsyncioScheduler, ReconnectPolicy, ScheduledCall, Scheduler
from relaycore.realtime.correlator import WorkCorrelator
from relaycore.realtime.protocol import (
    ChannelFrame,
    CompletionFrame,
    EventFrame,
    InvocationFrame,
    PingFrame,
    decode_frame,
    encode_frame,
)
from relaycore.realtime.transport import Transport, WebSocketTransport

logger = structlog.get_logger()

_UNSET: Any = object()


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ConnectionConfig:
    """Configuration for one hub connection."""
    url: str
    policy: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    invoke_timeout_seconds: Optional[float] = 30.0
    open_timeout_seconds: float = 10.0
    token_leeway_seconds: int = 0
    token_query_param: Optional[str] = "access_token"  # None → header only

    @classmethod
    def from_settings(cls, settings) -> "ConnectionConfig":
        return cls(
            url=settings.hub_url,
            policy=ReconnectPolicy.from_settings(settings),
            invoke_timeout_seconds=settings.invoke_timeout_seconds,
            open_timeout_seconds=settings.open_timeout_seconds,
            token_leeway_seconds=settings.token_leeway_seconds,
        )


@dataclass
class ConnectionStats:
    """Runtime statistics for monitoring."""
    connects: int = 0
    reconnects: int = 0
    failed_attempts: int = 0
    messages_received: int = 0
    events_published: int = 0
    malformed_frames: int = 0
    invocations: int = 0
    last_error: Optional[str] = None
    connected_at: Optional[datetime] = None


class ConnectionManager:
    """Owns the lifecycle of a single hub connection."""

    def __init__(
        self,
        config: ConnectionConfig,
        token_provider: Optional[TokenProvider],
        *,
        dispatcher: Optional[EventDispatcher] = None,
        correlator: Optional[WorkCorrelator] = None,
        transport_factory: Optional[Callable[[], Transport]] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config
        self.policy = config.policy
        self.dispatcher = dispatcher or EventDispatcher()
        self.correlator = correlator or WorkCorrelator()
        self.stats = ConnectionStats()
        self.connection_id = uuid.uuid4().hex[:12]

        self._token_provider = token_provider
        self._transport_factory = transport_factory or (
            lambda: WebSocketTransport(open_timeout=config.open_timeout_seconds)
        )
        self._scheduler = scheduler or AsyncioScheduler()

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._epoch = 0
        self._recovering = False  # set after an unexpected loss
        self._transport: Optional[Transport] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_call: Optional[ScheduledCall] = None
        self._background: set[asyncio.Task] = set()
        self.last_error: Optional[Exception] = None
        self._log = logger.bind(connection_id=self.connection_id)

    # ─── Introspection ────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_call is not None

    def get_stats(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "state": self._state.value,
            "attempts": self._attempts,
            "pending_requests": self.correlator.pending_count,
            "connects": self.stats.connects,
            "reconnects": self.stats.reconnects,
            "failed_attempts": self.stats.failed_attempts,
            "messages_received": self.stats.messages_received,
            "events_published": self.stats.events_published,
            "malformed_frames": self.stats.malformed_frames,
            "invocations": self.stats.invocations,
            "last_error": self.stats.last_error,
            "connected_at": self.stats.connected_at.isoformat() if self.stats.connected_at else None,
        }

    # ─── Subscriptions ────────────────────────────────────

    def on(self, event_name: str, callback, predicate=None) -> Subscription:
        """Subscribe to a pushed event (or ``connection``)."""
        return self.dispatcher.subscribe(event_name, callback, predicate)

    def on_state_change(self, callback) -> Subscription:
        return self.dispatcher.subscribe(ev.CONNECTION, callback)

    # ─── Lifecycle ────────────────────────────────────────

    async def connect(self) -> bool:
        """Connect (or reconnect right now). Returns True once connected.

        No-op while CONNECTING or CONNECTED. Cancels a pending reconnect
        timer. Raises AuthenticationError if no valid credential exists;
        transport failures go through the reconnect policy instead.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return self._state is ConnectionState.CONNECTED

        self._cancel_reconnect_timer()
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            # A new session gets the full reconnect budget
            self._attempts = 0
            self._recovering = False
        await self._attempt()
        return self._state is ConnectionState.CONNECTED

    async def disconnect(self, reason: str = "client") -> None:
        """Close the connection and reject all pending requests. Idempotent."""
        self._epoch += 1
        self._cancel_reconnect_timer()

        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

        cancelled = self.correlator.reject_all(
            lambda: RequestCancelledError("Connection closed by client")
        )
        for bg in list(self._background):
            bg.cancel()

        previous = self._state
        if previous is ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._recovering = False
        self._log.info(
            "relaycore.connection.disconnected",
            previous=previous.value,
            reason=reason,
            cancelled_requests=cancelled,
        )
        self._emit(ev.STATUS_DISCONNECTED, reason=reason, willReconnect=False)

    # ─── Calls ────────────────────────────────────────────

    async def invoke(self, method: str, *args: Any, timeout: Optional[float] = _UNSET) -> Any:
        """Call a hub method and await its correlated result."""
        transport = self._require_connected(method)
        if timeout is _UNSET:
            timeout = self.config.invoke_timeout_seconds

        invocation_id, future = self.correlator.register(timeout=timeout, label=method)
        frame = InvocationFrame(invocation_id=invocation_id, target=method, arguments=list(args))
        self.stats.invocations += 1
        try:
            await transport.send(encode_frame(frame))
        except TransportError as e:
            self.correlator.reject(invocation_id, e)
        return await future

    async def send(self, target: str, *args: Any) -> None:
        """Fire-and-forget message; no response is expected."""
        transport = self._require_connected(target)
        await transport.send(encode_frame(InvocationFrame(target=target, arguments=list(args))))

    # ─── Connect attempt ──────────────────────────────────

    async def _attempt(self) -> None:
        epoch = self._epoch
        self._set_state(ConnectionState.CONNECTING)

        try:
            credential = await resolve_credential(
                self._token_provider, self.config.token_leeway_seconds
            )
        except AuthenticationError as e:
            if epoch == self._epoch:
                self._fail_auth(e)
            raise
        except Exception as e:
            # A broken provider can never produce a credential; treat it as terminal
            error = AuthenticationError(f"Token provider failed: {e}")
            if epoch == self._epoch:
                self._fail_auth(error)
            raise error from e
        if epoch != self._epoch:
            return

        transport = self._transport_factory()
        try:
            await transport.open(self._build_url(credential), self._build_headers(credential))
        except AuthenticationError as e:
            await self._close_quietly(transport)
            if epoch == self._epoch:
                self._fail_auth(e)
            raise
        except Exception as e:
            error = e
            if not isinstance(e, TransportError):
                self._log.warning("relaycore.connection.open_crashed", exc_info=True)
                error = TransportError(f"Transport failed to open: {e}")
            await self._close_quietly(transport)
            if epoch == self._epoch:
                self.stats.failed_attempts += 1
                self._handle_loss(error)
            return

        if epoch != self._epoch:
            # disconnect() ran while the handshake was in flight
            await self._close_quietly(transport)
            return

        self._transport = transport
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self.stats.connects += 1
        self.stats.connected_at = datetime.now(timezone.utc)
        self._receive_task = asyncio.create_task(self._receive_loop(transport, epoch))

        if self._recovering:
            self._recovering = False
            self.stats.reconnects += 1
            self._log.info("relaycore.connection.reconnected", url=self.config.url)
            self._emit(ev.STATUS_RECONNECTED)
        else:
            self._log.info("relaycore.connection.connected", url=self.config.url)
            self._emit(ev.STATUS_CONNECTED)

    async def _reconnect_from_timer(self) -> None:
        self._reconnect_call = None
        if self._state is not ConnectionState.RECONNECTING:
            return
        try:
            await self._attempt()
        except AuthenticationError:
            pass  # already logged and emitted by _fail_auth

    # ─── Failure handling ─────────────────────────────────

    def _fail_auth(self, error: AuthenticationError) -> None:
        self.last_error = error
        self.stats.last_error = str(error)
        self._set_state(ConnectionState.FAILED)
        self._log.error("relaycore.connection.auth_failed", error=str(error))
        self._emit(ev.STATUS_ERROR, error=str(error), errorType="authentication")

    def _handle_loss(self, error: Exception) -> None:
        """Transport gone (or never came up): retry or give up."""
        self.last_error = error
        self.stats.last_error = str(error)
        rejected = self.correlator.reject_all(
            lambda: TransportError(f"Connection lost: {error}")
        )

        if self._attempts < self.policy.max_attempts:
            self._attempts += 1
            delay_ms = self.policy.delay_ms(self._attempts)
            self._set_state(ConnectionState.RECONNECTING)
            self._reconnect_call = self._scheduler.schedule(
                delay_ms / 1000.0, self._reconnect_from_timer
            )
            self._log.warning(
                "relaycore.connection.reconnecting",
                attempt=self._attempts,
                max_attempts=self.policy.max_attempts,
                delay_ms=round(delay_ms, 1),
                rejected_requests=rejected,
                error=str(error),
            )
            self._emit(
                ev.STATUS_DISCONNECTED,
                error=str(error),
                willReconnect=True,
                attempt=self._attempts,
                maxAttempts=self.policy.max_attempts,
                delayMs=delay_ms,
            )
            return

        exhausted = ReconnectExhaustedError(self._attempts, error)
        self.last_error = exhausted
        self.stats.last_error = str(exhausted)
        self._set_state(ConnectionState.FAILED)
        self._log.error(
            "relaycore.connection.failed",
            attempts=self._attempts,
            rejected_requests=rejected,
            error=str(exhausted),
        )
        self._emit(ev.STATUS_FAILED, error=str(exhausted), attempts=self._attempts)

    # ─── Receive loop ─────────────────────────────────────

    async def _receive_loop(self, transport: Transport, epoch: int) -> None:
        try:
            while True:
                raw = await transport.receive()
                self._handle_frame(raw, transport)
        except TransportError as e:
            error = e
        except Exception as e:
            self._log.exception("relaycore.connection.receive_loop_crashed")
            error = TransportError(f"Receive loop crashed: {e}")

        if epoch != self._epoch or self._transport is not transport:
            return
        self._transport = None
        self._receive_task = None
        await self._close_quietly(transport)
        if epoch == self._epoch:
            self._recovering = True
            self._handle_loss(error)

    def _handle_frame(self, raw, transport: Transport) -> None:
        self.stats.messages_received += 1
        try:
            frame = decode_frame(raw)
        except ValueError as e:
            self.stats.malformed_frames += 1
            self._log.warning("relaycore.connection.malformed_frame", error=str(e))
            return

        if isinstance(frame, CompletionFrame):
            if frame.error is not None:
                self.correlator.reject(
                    frame.invocation_id, InvocationError(f"Remote error: {frame.error}")
                )
            else:
                self.correlator.resolve(frame.invocation_id, frame.result)
        elif isinstance(frame, EventFrame):
            self.stats.events_published += 1
            self.dispatcher.publish(frame.target, frame.payload())
        elif isinstance(frame, ChannelFrame):
            self.stats.events_published += 1
            self.dispatcher.publish(frame.type, frame.payload())
        elif isinstance(frame, PingFrame):
            self._spawn(self._send_quietly(transport, encode_frame(PingFrame())))
        else:
            # Servers do not invoke client methods on this hub
            self._log.debug("relaycore.connection.ignored_frame", frame_type=frame.type)

    # ─── Helpers ──────────────────────────────────────────

    def _require_connected(self, method: str) -> Transport:
        if self._state is not ConnectionState.CONNECTED or self._transport is None:
            raise InvocationError(
                f"Cannot call '{method}': not connected (state={self._state.value})"
            )
        return self._transport

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self._log.debug(
                "relaycore.connection.state", previous=self._state.value, state=state.value
            )
            self._state = state

    def _emit(self, status: str, **extra: Any) -> None:
        payload = {
            "status": status,
            "state": self._state.value,
            "connectionId": self.connection_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **extra,
        }
        self.dispatcher.publish(ev.CONNECTION, payload)

    def _cancel_reconnect_timer(self) -> None:
        call, self._reconnect_call = self._reconnect_call, None
        if call is not None:
            call.cancel()

    def _build_url(self, credential: AuthCredential) -> str:
        param = self.config.token_query_param
        if not param:
            return self.config.url
        parts = urlsplit(self.config.url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != param]
        query.append((param, credential.token))
        return urlunsplit(parts._replace(query=urlencode(query)))

    @staticmethod
    def _build_headers(credential: AuthCredential) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential.token}"}

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_quietly(self, transport: Transport, text: str) -> None:
        try:
            await transport.send(text)
        except TransportError:
            self._log.debug("relaycore.connection.pong_failed", exc_info=True)

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception:
            self._log.debug("relaycore.connection.close_failed", exc_info=True)
