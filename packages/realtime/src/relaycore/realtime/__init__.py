"""Real-time hub connection.

Learn: Four pieces cooperate here:
1. transport  — the raw bidirectional channel (WebSocket by default)
2. protocol   — JSON frames: invocation / completion / event / ping
3. correlator — matches completions to invocations by id
4. connection — the state machine gluing them together with backoff

hub.AnalyticsHubClient adds typed wrappers for the analytics methods.
"""

from relaycore.realtime.backoff import (
    AsyncioScheduler,
    ReconnectPolicy,
    Scheduler,
)
from relaycore.realtime.connection import (
    ConnectionConfig,
    ConnectionManager,
    ConnectionState,
)
from relaycore.realtime.correlator import WorkCorrelator
from relaycore.realtime.transport import Transport, WebSocketTransport

__all__ = [
    "AsyncioScheduler",
    "ConnectionConfig",
    "ConnectionManager",
    "ConnectionState",
    "ReconnectPolicy",
    "Scheduler",
    "Transport",
    "WebSocketTransport",
    "WorkCorrelator",
]
