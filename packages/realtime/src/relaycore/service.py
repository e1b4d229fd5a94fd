"""RealtimeService — wires the pieces together for an application.

Learn: Nothing in relaycore is a module-level singleton. An application
builds one RealtimeService (usually from Settings) and passes it around:

    async with RealtimeService.from_settings(settings) as service:
        service.hub.on_new_alert(print)
        await service.hub.subscribe_to_alerts()
        summary = await service.engine.aggregate(rows, {"amount": "sum"})

Closing the service disconnects (rejecting pending calls), drops every
subscription and shuts the worker pool down, in that order.
"""

from typing import Optional

import structlog

from relaycore.auth.token import TokenProvider, static_token_provider
from relaycore.config import Settings
from relaycore.events.dispatcher import EventDispatcher
from relaycore.processing.engine import DataProcessingEngine
from relaycore.realtime.connection import ConnectionConfig, ConnectionManager
from relaycore.realtime.correlator import WorkCorrelator
from relaycore.realtime.hub import AnalyticsHubClient

logger = structlog.get_logger()


class RealtimeService:
    def __init__(
        self,
        connection: ConnectionManager,
        engine: Optional[DataProcessingEngine] = None,
    ):
        self.connection = connection
        self.dispatcher = connection.dispatcher
        self.hub = AnalyticsHubClient(connection)
        self.engine = engine or DataProcessingEngine()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token_provider: Optional[TokenProvider] = None,
        **connection_kwargs,
    ) -> "RealtimeService":
        """Build a service from Settings.

        Without an explicit provider, ``settings.access_token`` is used.
        Extra keyword arguments (transport_factory, scheduler) go to the
        ConnectionManager.
        """
        if token_provider is None and settings.access_token:
            token_provider = static_token_provider(settings.access_token)

        connection = ConnectionManager(
            ConnectionConfig.from_settings(settings),
            token_provider,
            dispatcher=EventDispatcher(),
            correlator=WorkCorrelator(prefix="inv-"),
            **connection_kwargs,
        )
        engine = DataProcessingEngine(
            max_workers=settings.processing_workers or None,
            correlator=WorkCorrelator(prefix="work-"),
        )
        return cls(connection, engine)

    async def start(self) -> bool:
        """Connect to the hub. Returns True once connected."""
        return await self.connection.connect()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.connection.disconnect(reason="shutdown")
        self.dispatcher.clear()
        await self.engine.aclose()
        logger.info("relaycore.service.closed", connection_id=self.connection.connection_id)

    async def __aenter__(self) -> "RealtimeService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
