"""Live event fan-out."""

from .bus import (
    BroadcastBus,
    BusClosed,
    ConnectedMessage,
    Message,
    ObservationMessage,
    Subscription,
    SubscriberLagged,
)

__all__ = [
    "BroadcastBus",
    "BusClosed",
    "ConnectedMessage",
    "Message",
    "ObservationMessage",
    "Subscription",
    "SubscriberLagged",
]
