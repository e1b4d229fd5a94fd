"""Error taxonomy shared by the connection, dispatcher and engine layers.

Learn: Two kinds of errors live here:
1. Terminal errors (AuthenticationError, ReconnectExhaustedError) are
   surfaced to the caller and never retried automatically.
2. Contained errors (ListenerError, ProcessingError) are caught where they
   happen and turned into a log line or a failed WorkResponse.

TransportError sits in between: the connection manager absorbs it while
the reconnect budget lasts.
"""


class RelayError(Exception):
    """Base class for every relaycore error."""


class AuthenticationError(RelayError):
    """Missing or expired credential; the transport was never contacted."""


class TransportError(RelayError):
    """Network-level failure on the underlying connection."""


class ReconnectExhaustedError(RelayError):
    """Raised (and emitted) once the reconnect budget is spent."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Gave up after {attempts} reconnect attempts{detail}")


class InvocationError(RelayError):
    """invoke() while not connected, or the remote side rejected the call."""


class RequestTimeoutError(InvocationError):
    """No correlated response arrived in time."""


class RequestCancelledError(InvocationError):
    """The pending request was cleared by disconnect() or shutdown."""


class ListenerError(RelayError):
    """A subscriber callback raised. Logged, never propagated."""

    def __init__(self, event_name: str, original: BaseException):
        self.event_name = event_name
        self.original = original
        super().__init__(f"Listener for '{event_name}' failed: {original!r}")


class ProcessingError(RelayError):
    """A work request failed inside the processing engine."""


class ExpressionError(ProcessingError):
    """A transform expression is malformed or uses a forbidden construct."""
