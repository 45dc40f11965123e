"""MQTT session, subscription and publishing components for the AquaFeed bridge."""

from .connection import ConnectionManager, ConnectionState, ConnectionStatus, ReadyHandle
from .publisher import PublishGateway, PublishRequest
from .service import BridgeService
from .subscriptions import SubscriptionCoordinator, SubscriptionGrant
from .topics import AquaFeedTopics

__all__ = [
    "AquaFeedTopics",
    "BridgeService",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "PublishGateway",
    "PublishRequest",
    "ReadyHandle",
    "SubscriptionCoordinator",
    "SubscriptionGrant",
]
