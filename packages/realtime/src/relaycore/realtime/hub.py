"""Analytics hub client — typed wrappers over ConnectionManager.invoke().

Learn: The hub exposes a handful of server methods and pushes events back.
This class just names them: callers write

    await hub.subscribe_to_alerts()
    hub.on_new_alert(lambda alert: ...)

instead of juggling method-name strings and argument lists. Multi-argument
pushes (PerformanceUpdate, ABTestUpdate) are unpacked into positional
callback arguments.
"""

from typing import Any, Callable, Optional

from relaycore.events import types as ev
from relaycore.events.dispatcher import Subscription
from relaycore.realtime.connection import ConnectionManager
from relaycore.schemas.analytics import (
    PerformanceAlert,
    RealTimeAnalyticsData,
    TemplatePerformanceMetrics,
)


class AnalyticsHubClient:
    def __init__(self, connection: ConnectionManager):
        self.connection = connection

    # ─── Outbound methods ─────────────────────────────────

    async def subscribe_to_performance_updates(self, intent_type: Optional[str] = None) -> None:
        args = (intent_type,) if intent_type is not None else ()
        await self.connection.invoke(ev.SUBSCRIBE_TO_PERFORMANCE_UPDATES, *args)

    async def subscribe_to_ab_test_updates(self) -> None:
        await self.connection.invoke(ev.SUBSCRIBE_TO_AB_TEST_UPDATES)

    async def subscribe_to_alerts(self) -> None:
        await self.connection.invoke(ev.SUBSCRIBE_TO_ALERTS)

    async def get_real_time_dashboard(self) -> RealTimeAnalyticsData:
        result = await self.connection.invoke(ev.GET_REAL_TIME_DASHBOARD)
        return RealTimeAnalyticsData.model_validate(result or {})

    async def get_template_performance(self, template_key: str) -> Optional[TemplatePerformanceMetrics]:
        result = await self.connection.invoke(ev.GET_TEMPLATE_PERFORMANCE, template_key)
        if result is None:
            return None
        return TemplatePerformanceMetrics.model_validate(result)

    async def join_query_group(self, query_id: str) -> None:
        await self.connection.invoke(ev.JOIN_QUERY_GROUP, query_id)

    async def leave_query_group(self, query_id: str) -> None:
        await self.connection.invoke(ev.LEAVE_QUERY_GROUP, query_id)

    async def send(self, event: str, data: Any = None) -> None:
        """Fire-and-forget message to the hub."""
        await self.connection.send(event, data)

    # ─── Inbound events ───────────────────────────────────

    def on_dashboard_update(self, callback: Callable[[RealTimeAnalyticsData], Any]) -> Subscription:
        return self.connection.on(
            ev.DASHBOARD_UPDATE,
            lambda payload: callback(RealTimeAnalyticsData.model_validate(payload or {})),
        )

    def on_performance_update(
        self, callback: Callable[[str, Any], Any], template_key: Optional[str] = None
    ) -> Subscription:
        """``callback(template_key, data)``; optionally for one template only."""
        predicate = None
        if template_key is not None:
            predicate = lambda payload: _first(payload) == template_key
        return self.connection.on(
            ev.PERFORMANCE_UPDATE,
            lambda payload: callback(*_pair(payload)),
            predicate,
        )

    def on_ab_test_update(self, callback: Callable[[str, Any], Any]) -> Subscription:
        """``callback(test_id, data)``."""
        return self.connection.on(ev.AB_TEST_UPDATE, lambda payload: callback(*_pair(payload)))

    def on_new_alert(self, callback: Callable[[PerformanceAlert], Any]) -> Subscription:
        return self.connection.on(
            ev.NEW_ALERT,
            lambda payload: callback(PerformanceAlert.model_validate(payload or {})),
        )

    def on_real_time_update(self, callback: Callable[[Any], Any]) -> Subscription:
        return self.connection.on(ev.REAL_TIME_UPDATE, callback)

    def on_query_status_update(
        self, callback: Callable[[Any], Any], query_id: Optional[str] = None
    ) -> Subscription:
        predicate = None
        if query_id is not None:
            predicate = lambda payload: isinstance(payload, dict) and payload.get("queryId") == query_id
        return self.connection.on(ev.QUERY_STATUS_UPDATE, callback, predicate)

    def on_error(self, callback: Callable[[str], Any]) -> Subscription:
        return self.connection.on(ev.ERROR, lambda payload: callback(str(payload)))


def _pair(payload: Any) -> tuple[Any, Any]:
    if isinstance(payload, (list, tuple)):
        if len(payload) >= 2:
            return payload[0], payload[1]
        if len(payload) == 1:
            return payload[0], None
        return None, None
    return payload, None


def _first(payload: Any) -> Any:
    return _pair(payload)[0]
