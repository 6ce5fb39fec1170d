"""Stores package for Value Cards persistence and change notifications."""

from .entity_store import (
    EntityStore,
    RoomTransaction,
    Table,
    ChangeKind,
    get_entity_store,
    set_entity_store,
    close_entity_store,
)
from .memory_store import MemoryEntityStore
from .pubsub import (
    LocalPubSub,
    GamePubSub,
    PubSubMessage,
    MessageType,
    get_pubsub,
    set_pubsub,
    close_pubsub,
)

__all__ = [
    # Entity store
    "EntityStore",
    "RoomTransaction",
    "Table",
    "ChangeKind",
    "get_entity_store",
    "set_entity_store",
    "close_entity_store",
    "MemoryEntityStore",
    # Change feed
    "LocalPubSub",
    "GamePubSub",
    "PubSubMessage",
    "MessageType",
    "get_pubsub",
    "set_pubsub",
    "close_pubsub",
]
