"""In-process event fan-out.

Learn: Events flow one way:
1. The connection manager receives a pushed frame from the hub
2. It publishes the frame's payload under the frame's name
3. Every subscriber registered for that name is called, in order

Subscribers never see each other's failures.
"""

from relaycore.events.dispatcher import (
    EventDispatcher,
    Subscription,
    SubscriptionRegistry,
)

__all__ = ["EventDispatcher", "Subscription", "SubscriptionRegistry"]
