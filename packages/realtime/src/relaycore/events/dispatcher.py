"""Subscription registry + event dispatcher.

Learn: The registry maps an event name to an ordered list of
Subscription handles. The dispatcher walks a snapshot of that list on
every publish, so a callback that subscribes or unsubscribes while an
event is being delivered only affects the *next* publish.

Each callback runs inside its own try/except. A failing listener is
logged and counted — it never stops its siblings and never reaches the
publisher. Coroutine callbacks are scheduled as tasks on the running
loop; their failures are logged the same way.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from relaycore.errors import ListenerError

logger = structlog.get_logger()

Callback = Callable[[Any], Any]
Predicate = Callable[[Any], bool]


class Subscription:
    """A single registration — also the handle used to remove it.

    Learn: The handle is callable (so it can stand in for an
    ``unsubscribe()`` function) and a context manager, so a scoped
    registration cleans itself up:

        with dispatcher.subscribe("NewAlert", on_alert):
            ...
    """

    __slots__ = ("event_name", "callback", "predicate", "_registry", "_active")

    def __init__(
        self,
        event_name: str,
        callback: Callback,
        predicate: Optional[Predicate],
        registry: "SubscriptionRegistry",
    ):
        self.event_name = event_name
        self.callback = callback
        self.predicate = predicate
        self._registry = registry
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> bool:
        """Remove this registration. Returns False if it was already gone."""
        if not self._active:
            return False
        self._active = False
        return self._registry.remove(self)

    def __call__(self) -> bool:
        return self.unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        state = "active" if self._active else "removed"
        return f"<Subscription {self.event_name!r} {state}>"


class SubscriptionRegistry:
    """event name → ordered list of subscriptions."""

    def __init__(self):
        self._entries: dict[str, list[Subscription]] = {}

    def add(
        self,
        event_name: str,
        callback: Callback,
        predicate: Optional[Predicate] = None,
    ) -> Subscription:
        if not callable(callback):
            raise TypeError("callback must be callable")
        sub = Subscription(event_name, callback, predicate, self)
        self._entries.setdefault(event_name, []).append(sub)
        return sub

    def remove(self, subscription: Subscription) -> bool:
        """Remove exactly this subscription (by identity)."""
        subs = self._entries.get(subscription.event_name)
        if not subs:
            return False
        for i, candidate in enumerate(subs):
            if candidate is subscription:
                del subs[i]
                break
        else:
            return False
        if not subs:
            del self._entries[subscription.event_name]
        return True

    def listeners(self, event_name: str) -> list[Subscription]:
        """Snapshot of the current listeners, in registration order."""
        return list(self._entries.get(event_name, ()))

    def listener_count(self, event_name: Optional[str] = None) -> int:
        if event_name is not None:
            return len(self._entries.get(event_name, ()))
        return sum(len(subs) for subs in self._entries.values())

    def event_names(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        for subs in self._entries.values():
            for sub in subs:
                sub._active = False
        self._entries.clear()

    def __contains__(self, event_name: str) -> bool:
        return event_name in self._entries


@dataclass
class DispatcherStats:
    """Runtime statistics for monitoring."""
    published: int = 0
    delivered: int = 0
    listener_errors: int = 0


class EventDispatcher:
    """Fans a published payload out to every listener of its event name."""

    def __init__(self, registry: Optional[SubscriptionRegistry] = None):
        self.registry = registry or SubscriptionRegistry()
        self.stats = DispatcherStats()
        self._tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        event_name: str,
        callback: Callback,
        predicate: Optional[Predicate] = None,
    ) -> Subscription:
        """Register ``callback`` for ``event_name``.

        The same callback registered twice yields two independent
        subscriptions; each handle removes only its own entry.
        """
        return self.registry.add(event_name, callback, predicate)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return subscription.unsubscribe()

    def publish(self, event_name: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every listener of ``event_name``.

        Returns the number of listeners invoked (predicate rejections
        excluded). Never raises because of a listener.
        """
        self.stats.published += 1
        invoked = 0
        for sub in self.registry.listeners(event_name):
            if not sub.active:
                continue
            try:
                if sub.predicate is not None and not sub.predicate(payload):
                    continue
                invoked += 1
                result = sub.callback(payload)
                if inspect.isawaitable(result):
                    self._schedule(event_name, result)
            except Exception as exc:
                self._record_failure(event_name, exc)
        self.stats.delivered += invoked
        return invoked

    def listener_count(self, event_name: Optional[str] = None) -> int:
        return self.registry.listener_count(event_name)

    def event_names(self) -> list[str]:
        return self.registry.event_names()

    def clear(self) -> None:
        """Drop every subscription and cancel in-flight async listeners."""
        self.registry.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ─── Internals ────────────────────────────────────────

    def _schedule(self, event_name: str, awaitable) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            # No running loop: close the coroutine so it is not leaked
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_task_done(event_name, t))

    def _on_task_done(self, event_name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._record_failure(event_name, exc)

    def _record_failure(self, event_name: str, exc: BaseException) -> None:
        self.stats.listener_errors += 1
        error = ListenerError(event_name, exc)
        logger.error(
            "relaycore.listener_failed",
            event_name=event_name,
            error=str(error),
            exc_info=exc,
        )
