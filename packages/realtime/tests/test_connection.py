"""Connection manager tests — lifecycle, reconnect budget, correlated calls.

Learn: Tests cover:
1. Connect / disconnect and the ``connection`` lifecycle events
2. Credential checks before the transport is touched
3. Reconnect scheduling, exhaustion and the FAILED state
4. invoke() correlation, timeouts and cancellation
5. Pushed frames (hub events, channel events, pings, garbage)
"""

import asyncio
import json

import pytest

from conftest import HUB_URL, make_token, settle
from relaycore.errors import (
    AuthenticationError,
    InvocationError,
    ReconnectExhaustedError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from relaycore.events.dispatcher import EventDispatcher
from relaycore.realtime.backoff import ReconnectPolicy
from relaycore.realtime.connection import ConnectionConfig, ConnectionManager, ConnectionState


def _statuses(events):
    return [e["status"] for e in events]


def _manager(hub, scheduler, policy, provider):
    return ConnectionManager(
        ConnectionConfig(url=HUB_URL, policy=policy),
        provider,
        dispatcher=EventDispatcher(),
        transport_factory=hub,
        scheduler=scheduler,
    )


# ═══════════════════════════════════════════════════════════
# Connect / disconnect
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_connect_success(manager, hub, token, statuses):
    """A valid token connects and emits ``connected``."""
    assert manager.state is ConnectionState.DISCONNECTED

    assert await manager.connect() is True
    assert manager.state is ConnectionState.CONNECTED
    assert manager.is_connected
    assert manager.attempts == 0
    assert _statuses(statuses) == ["connected"]

    transport = hub.current
    assert transport.headers["Authorization"] == f"Bearer {token}"
    assert f"access_token={token}" in transport.url
    assert transport.url.startswith(HUB_URL)


@pytest.mark.asyncio
async def test_connect_is_noop_when_connected(manager, hub):
    await manager.connect()
    assert await manager.connect() is True
    assert len(hub.transports) == 1


@pytest.mark.asyncio
async def test_disconnect_emits_and_closes(manager, hub, statuses):
    await manager.connect()
    await manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED
    assert hub.current.closed
    assert _statuses(statuses) == ["connected", "disconnected"]
    assert statuses[-1]["willReconnect"] is False


@pytest.mark.asyncio
async def test_disconnect_twice_emits_once(manager, statuses):
    await manager.connect()
    await manager.disconnect()
    await manager.disconnect()
    assert _statuses(statuses).count("disconnected") == 1


@pytest.mark.asyncio
async def test_lifecycle_payload_shape(manager, statuses):
    await manager.connect()
    payload = statuses[0]
    assert payload["state"] == "connected"
    assert payload["connectionId"] == manager.connection_id
    assert "timestamp" in payload


# ═══════════════════════════════════════════════════════════
# Authentication
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_expired_token_never_reaches_transport(hub, scheduler, policy):
    """An expired token fails fast: no transport, no reconnect."""
    expired = make_token(expires_in=-60)
    mgr = _manager(hub, scheduler, policy, lambda: expired)
    events = []
    mgr.on_state_change(events.append)

    with pytest.raises(AuthenticationError, match="expired"):
        await mgr.connect()

    assert hub.transports == []
    assert mgr.state is ConnectionState.FAILED
    assert scheduler.pending == []
    assert events[-1]["status"] == "error"
    assert events[-1]["errorType"] == "authentication"


@pytest.mark.asyncio
async def test_missing_token_fails(hub, scheduler, policy):
    mgr = _manager(hub, scheduler, policy, lambda: None)
    with pytest.raises(AuthenticationError):
        await mgr.connect()
    assert hub.transports == []


@pytest.mark.asyncio
async def test_no_provider_fails(hub, scheduler, policy):
    mgr = _manager(hub, scheduler, policy, None)
    with pytest.raises(AuthenticationError):
        await mgr.connect()
    assert mgr.state is ConnectionState.FAILED


@pytest.mark.asyncio
async def test_async_provider_is_awaited(hub, scheduler, policy, token):
    async def provider():
        return token

    mgr = _manager(hub, scheduler, policy, provider)
    assert await mgr.connect() is True
    await mgr.disconnect()


@pytest.mark.asyncio
async def test_handshake_rejection_is_terminal(manager, hub, scheduler):
    """A 401 from the hub goes straight to FAILED."""
    hub.reject_auth = True
    with pytest.raises(AuthenticationError):
        await manager.connect()
    assert manager.state is ConnectionState.FAILED
    assert scheduler.pending == []
    assert hub.current.closed


@pytest.mark.asyncio
async def test_connect_after_failed_starts_over(manager, hub):
    hub.reject_auth = True
    with pytest.raises(AuthenticationError):
        await manager.connect()

    hub.reject_auth = False
    assert await manager.connect() is True
    assert manager.state is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_crashing_provider_fails_and_recovers(hub, scheduler, policy, token):
    """A provider that raises leaves FAILED, not a stuck CONNECTING."""
    calls = []

    def provider():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("refresh endpoint down")
        return token

    mgr = _manager(hub, scheduler, policy, provider)
    events = []
    mgr.on_state_change(events.append)

    with pytest.raises(AuthenticationError, match="refresh endpoint down"):
        await mgr.connect()
    assert mgr.state is ConnectionState.FAILED
    assert hub.transports == []
    assert events[-1]["errorType"] == "authentication"

    assert await mgr.connect() is True
    assert len(calls) == 2
    assert len(hub.transports) == 1
    await mgr.disconnect()


@pytest.mark.asyncio
async def test_crashing_provider_during_reconnect_fails(hub, scheduler, policy, token):
    tokens = iter([token])

    def provider():
        try:
            return next(tokens)
        except StopIteration:
            raise RuntimeError("no more tokens") from None

    mgr = _manager(hub, scheduler, policy, provider)
    await mgr.connect()
    hub.current.drop()
    await settle()

    await scheduler.run_next()

    assert mgr.state is ConnectionState.FAILED
    assert isinstance(mgr.last_error, AuthenticationError)
    assert scheduler.pending == []


@pytest.mark.asyncio
async def test_unexpected_open_error_goes_through_reconnect(manager, hub, scheduler):
    hub.open_crash = OSError("network unreachable")
    assert await manager.connect() is False
    assert manager.state is ConnectionState.RECONNECTING
    assert isinstance(manager.last_error, TransportError)
    assert hub.current.closed

    hub.open_crash = None
    await scheduler.run_next()
    assert manager.state is ConnectionState.CONNECTED


# ═══════════════════════════════════════════════════════════
# Reconnect
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_server_drop_schedules_reconnect(manager, hub, scheduler, statuses):
    await manager.connect()
    hub.current.drop()
    await settle()

    assert manager.state is ConnectionState.RECONNECTING
    assert manager.attempts == 1
    assert manager.reconnect_pending
    assert [c.delay_seconds for c in scheduler.pending] == [0.1]

    lost = statuses[-1]
    assert lost["status"] == "disconnected"
    assert lost["willReconnect"] is True
    assert lost["attempt"] == 1
    assert lost["maxAttempts"] == 3
    assert lost["delayMs"] == 100


@pytest.mark.asyncio
async def test_reconnect_emits_reconnected(manager, hub, scheduler, statuses):
    await manager.connect()
    hub.current.drop()
    await settle()

    await scheduler.run_next()

    assert manager.state is ConnectionState.CONNECTED
    assert manager.attempts == 0
    assert len(hub.transports) == 2
    assert _statuses(statuses) == ["connected", "disconnected", "reconnected"]


@pytest.mark.asyncio
async def test_failed_first_connect_then_success_is_connected(manager, hub, scheduler, statuses):
    """Retrying an initial failure is not a *re*connection."""
    hub.open_failures = 1
    assert await manager.connect() is False
    assert manager.state is ConnectionState.RECONNECTING

    await scheduler.run_next()
    assert manager.state is ConnectionState.CONNECTED
    assert _statuses(statuses)[-1] == "connected"


@pytest.mark.asyncio
async def test_reconnect_budget_exhausted(manager, hub, scheduler, statuses):
    """Attempts stop at max_attempts; then FAILED with no timer left."""
    hub.open_failures = 100
    await manager.connect()

    delays = []
    while scheduler.pending:
        assert manager.attempts <= manager.policy.max_attempts
        delays.append(await scheduler.run_next())

    assert delays == [0.1, 0.2, 0.4]
    assert len(hub.transports) == 4  # initial + 3 retries
    assert manager.state is ConnectionState.FAILED
    assert not manager.reconnect_pending
    assert isinstance(manager.last_error, ReconnectExhaustedError)
    assert statuses[-1]["status"] == "failed"
    assert statuses[-1]["attempts"] == 3


@pytest.mark.asyncio
async def test_zero_attempts_fails_immediately(hub, scheduler, token):
    mgr = _manager(hub, scheduler, ReconnectPolicy(max_attempts=0, jitter_max_ms=0), lambda: token)
    hub.open_failures = 1
    assert await mgr.connect() is False
    assert mgr.state is ConnectionState.FAILED
    assert scheduler.pending == []


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect(manager, hub, scheduler):
    hub.open_failures = 1
    await manager.connect()
    call = scheduler.pending[0]

    await manager.disconnect()

    assert call.cancelled
    assert scheduler.pending == []
    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.attempts == 0


@pytest.mark.asyncio
async def test_connect_during_reconnect_wait_attempts_now(manager, hub, scheduler):
    hub.open_failures = 1
    await manager.connect()
    call = scheduler.pending[0]

    assert await manager.connect() is True
    assert call.cancelled
    assert manager.state is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_disconnect_during_handshake_wins(manager, hub):
    """A handshake that finishes after disconnect() must not resurrect."""
    hub.gate = asyncio.Event()
    connecting = asyncio.create_task(manager.connect())
    await settle()
    assert manager.state is ConnectionState.CONNECTING

    await manager.disconnect()
    hub.gate.set()
    assert await connecting is False

    assert manager.state is ConnectionState.DISCONNECTED
    assert hub.current.closed


@pytest.mark.asyncio
async def test_token_refreshed_for_each_attempt(hub, scheduler, policy):
    tokens = [make_token(expires_in=3600, jti="a"), make_token(expires_in=3600, jti="b")]
    issued = iter(tokens)
    mgr = _manager(hub, scheduler, policy, lambda: next(issued))
    hub.open_failures = 1

    await mgr.connect()
    await scheduler.run_next()

    assert hub.transports[0].headers["Authorization"] == f"Bearer {tokens[0]}"
    assert hub.transports[1].headers["Authorization"] == f"Bearer {tokens[1]}"
    await mgr.disconnect()


@pytest.mark.asyncio
async def test_expired_token_during_reconnect_fails(hub, scheduler, policy):
    tokens = iter([make_token(expires_in=3600), make_token(expires_in=-1)])
    mgr = _manager(hub, scheduler, policy, lambda: next(tokens))
    await mgr.connect()
    hub.current.drop()
    await settle()

    await scheduler.run_next()

    assert mgr.state is ConnectionState.FAILED
    assert len(hub.transports) == 1
    assert scheduler.pending == []


# ═══════════════════════════════════════════════════════════
# invoke()
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_invoke_requires_connection(manager, hub):
    with pytest.raises(InvocationError, match="not connected"):
        await manager.invoke("GetRealTimeDashboard")
    assert hub.transports == []


@pytest.mark.asyncio
async def test_invoke_resolves_with_completion(manager, hub):
    await manager.connect()
    call = asyncio.create_task(manager.invoke("GetTemplatePerformance", "tpl-1"))
    await settle()

    frame = hub.current.last_invocation()
    assert frame["target"] == "GetTemplatePerformance"
    assert frame["arguments"] == ["tpl-1"]
    hub.current.complete(frame["invocationId"], {"templateKey": "tpl-1"})

    assert await call == {"templateKey": "tpl-1"}
    assert manager.correlator.pending_count == 0


@pytest.mark.asyncio
async def test_out_of_order_completions(manager, hub):
    await manager.connect()
    first = asyncio.create_task(manager.invoke("A"))
    second = asyncio.create_task(manager.invoke("B"))
    await settle()

    ids = {f["target"]: f["invocationId"] for f in hub.current.sent_frames()}
    assert ids["A"] != ids["B"]
    hub.current.complete(ids["B"], "result-b")
    hub.current.complete(ids["A"], "result-a")

    assert await first == "result-a"
    assert await second == "result-b"


@pytest.mark.asyncio
async def test_remote_error_rejects(manager, hub):
    await manager.connect()
    call = asyncio.create_task(manager.invoke("Broken"))
    await settle()
    hub.current.complete(hub.current.last_invocation()["invocationId"], error="boom")

    with pytest.raises(InvocationError, match="boom"):
        await call


@pytest.mark.asyncio
async def test_invoke_timeout(manager, hub):
    await manager.connect()
    with pytest.raises(RequestTimeoutError):
        await manager.invoke("Slow", timeout=0.01)
    assert manager.correlator.pending_count == 0


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_calls(manager, hub):
    await manager.connect()
    call = asyncio.create_task(manager.invoke("Never"))
    await settle()

    await manager.disconnect()

    with pytest.raises(RequestCancelledError):
        await call
    assert manager.correlator.pending_count == 0


@pytest.mark.asyncio
async def test_connection_loss_rejects_pending_calls(manager, hub):
    await manager.connect()
    call = asyncio.create_task(manager.invoke("Never"))
    await settle()

    hub.current.drop()
    with pytest.raises(TransportError, match="Connection lost"):
        await call


@pytest.mark.asyncio
async def test_late_completion_is_ignored(manager, hub):
    await manager.connect()
    hub.current.complete("does-not-exist", 42)
    await settle()
    assert manager.is_connected


@pytest.mark.asyncio
async def test_send_is_fire_and_forget(manager, hub):
    await manager.connect()
    await manager.send("Ping", {"x": 1})
    frame = hub.current.sent_frames()[-1]
    assert frame == {"type": "invocation", "target": "Ping", "arguments": [{"x": 1}]}


# ═══════════════════════════════════════════════════════════
# Incoming frames
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_hub_event_published(manager, hub):
    received = []
    manager.on("NewAlert", received.append)
    await manager.connect()

    hub.current.push_event("NewAlert", {"message": "slow"})
    await settle()

    assert received == [{"message": "slow"}]


@pytest.mark.asyncio
async def test_multi_argument_event_is_a_list(manager, hub):
    received = []
    manager.on("PerformanceUpdate", received.append)
    await manager.connect()

    hub.current.push_event("PerformanceUpdate", "tpl-1", {"successRate": 0.9})
    await settle()

    assert received == [["tpl-1", {"successRate": 0.9}]]


@pytest.mark.asyncio
async def test_channel_event_keeps_whole_message(manager, hub):
    received = []
    manager.on("query_progress", received.append)
    await manager.connect()

    message = {"type": "query_progress", "queryId": "q1", "progress": 40}
    hub.current.push(message)
    await settle()

    assert received == [message]


@pytest.mark.asyncio
async def test_ping_answered(manager, hub):
    await manager.connect()
    hub.current.push({"type": "ping"})
    await settle()
    assert {"type": "ping"} in hub.current.sent_frames()


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped(manager, hub):
    received = []
    manager.on("NewAlert", received.append)
    await manager.connect()

    hub.current.push("not json")
    hub.current.push(json.dumps([1, 2, 3]))
    hub.current.push({"no": "type"})
    hub.current.push_event("NewAlert", "still works")
    await settle()

    assert received == ["still works"]
    assert manager.stats.malformed_frames == 3
    assert manager.is_connected


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_connection(manager, hub):
    received = []

    def bad(_payload):
        raise RuntimeError("listener bug")

    manager.on("NewAlert", bad)
    manager.on("NewAlert", received.append)
    await manager.connect()

    hub.current.push_event("NewAlert", 1)
    await settle()

    assert received == [1]
    assert manager.is_connected
    assert manager.dispatcher.stats.listener_errors == 1


@pytest.mark.asyncio
async def test_stats(manager, hub):
    await manager.connect()
    hub.current.push_event("NewAlert", 1)
    await settle()

    stats = manager.get_stats()
    assert stats["state"] == "connected"
    assert stats["connects"] == 1
    assert stats["messages_received"] == 1
    assert stats["events_published"] == 1
    assert stats["connected_at"] is not None
