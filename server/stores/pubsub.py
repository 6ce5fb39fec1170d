"""
Room change feed for Value Cards.

Each committed write produces a "table T of room R changed" message.
Subscribers (room WebSockets, client coordinators) re-read state when one
arrives; the message never carries state of record. Delivery is
at-least-once and may be reordered or dropped, which is why coordinators
also poll whenever ``is_connected`` is False.

- LocalPubSub: in-process dispatch for a single server and for tests.
- GamePubSub: adds a Redis channel per room so every server's
  subscribers see every write. A server dispatches its own messages
  immediately and drops the copy Redis echoes back.

Usage:
    feed = LocalPubSub()
    await feed.start()
    store.add_listener(feed.on_store_change)
    await feed.subscribe(room_id, on_room_changed)
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from stores.entity_store import ChangeKind, Table

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    ROW_INSERTED = "row_inserted"
    ROW_UPDATED = "row_updated"


@dataclass
class PubSubMessage:
    """
    A room change notification.

    Attributes:
        type: Insert or update.
        room_id: Room whose entities changed.
        table: Changed table name (a ``Table`` value).
        data: Optional hints for the receiver.
        sender_id: Server that published it.
    """

    type: MessageType
    room_id: str
    table: str
    data: dict = field(default_factory=dict)
    sender_id: Optional[str] = None

    def to_json(self) -> str:
        payload = asdict(self)
        payload["type"] = self.type.value
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str) -> "PubSubMessage":
        d = json.loads(raw)
        return cls(
            type=MessageType(d["type"]),
            room_id=d["room_id"],
            table=d["table"],
            data=d.get("data") or {},
            sender_id=d.get("sender_id"),
        )


MessageHandler = Callable[[PubSubMessage], Awaitable[None]]


class LocalPubSub:
    """Per-room handler lists with in-process delivery."""

    CHANNEL_PREFIX = "valuecards:room:"

    def __init__(self, server_id: str = "default"):
        self.server_id = server_id
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._running = False

    @property
    def is_connected(self) -> bool:
        """True while messages can be trusted to arrive."""
        return self._running

    def _channel(self, room_id: str) -> str:
        return self.CHANNEL_PREFIX + room_id

    # Hooks for transports that track channel membership remotely
    async def _channel_opened(self, channel: str) -> None:
        pass

    async def _channel_closed(self, channel: str) -> None:
        pass

    async def subscribe(self, room_id: str, handler: MessageHandler) -> None:
        channel = self._channel(room_id)
        handlers = self._handlers.setdefault(channel, [])
        if not handlers:
            await self._channel_opened(channel)
            logger.debug(f"Listening on {channel}")
        handlers.append(handler)

    async def unsubscribe(self, room_id: str) -> None:
        """Drop every handler of a room."""
        channel = self._channel(room_id)
        if self._handlers.pop(channel, None) is not None:
            await self._channel_closed(channel)
            logger.debug(f"Stopped listening on {channel}")

    async def remove_handler(self, room_id: str, handler: MessageHandler) -> None:
        """Remove one handler; the channel closes with its last handler."""
        handlers = self._handlers.get(self._channel(room_id))
        if handlers is None:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            await self.unsubscribe(room_id)

    async def publish(self, message: PubSubMessage) -> int:
        """
        Deliver a message to this server's subscribers of its room.

        Returns:
            Number of handlers called.
        """
        message.sender_id = self.server_id
        return await self._dispatch(self._channel(message.room_id), message)

    async def _dispatch(self, channel: str, msg: PubSubMessage) -> int:
        handlers = list(self._handlers.get(channel, ()))
        for handler in handlers:
            try:
                await handler(msg)
            except Exception as e:
                # One broken subscriber must not starve the others
                logger.error(f"Subscriber on {channel} failed: {e}", exc_info=True)
        return len(handlers)

    async def on_store_change(self, room_id: str, table: Table, kind: ChangeKind) -> None:
        """Entity store listener: publish every committed write."""
        msg_type = MessageType.ROW_INSERTED if kind == ChangeKind.INSERT else MessageType.ROW_UPDATED
        await self.publish(PubSubMessage(type=msg_type, room_id=room_id, table=table.value))

    async def start(self) -> None:
        self._running = True
        logger.info(f"{type(self).__name__} started ({self.server_id})")

    async def stop(self) -> None:
        self._running = False
        self._handlers.clear()
        logger.info(f"{type(self).__name__} stopped")


class GamePubSub(LocalPubSub):
    """Change feed relayed between servers through Redis pub/sub."""

    def __init__(self, redis_client: redis.Redis, server_id: str = "default"):
        """
        Args:
            redis_client: Async Redis client.
            server_id: Unique id of this server, used to drop echoed messages.
        """
        super().__init__(server_id)
        self.redis = redis_client
        self.pubsub = redis_client.pubsub()
        self._task: Optional[asyncio.Task] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._running and self._connected

    async def _channel_opened(self, channel: str) -> None:
        await self.pubsub.subscribe(channel)

    async def _channel_closed(self, channel: str) -> None:
        await self.pubsub.unsubscribe(channel)

    async def publish(self, message: PubSubMessage) -> int:
        """
        Deliver locally, then relay through Redis.

        Returns:
            Number of Redis subscribers reached.
        """
        local = await super().publish(message)
        channel = self._channel(message.room_id)
        remote = await self.redis.publish(channel, message.to_json())
        logger.debug(f"{message.table} change on {channel}: {local} local, {remote} relayed")
        return remote

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._connected = True
        self._task = asyncio.create_task(self._listen())
        logger.info(f"GamePubSub listening ({self.server_id})")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.pubsub.aclose()
        self._handlers.clear()
        self._connected = False
        logger.info("GamePubSub stopped")

    async def _listen(self) -> None:
        while self._running:
            try:
                raw = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                break
            except redis.ConnectionError as e:
                # Coordinators poll while the feed is down
                if self._connected:
                    logger.error(f"Lost Redis feed connection: {e}")
                self._connected = False
                await asyncio.sleep(1)
                continue
            except Exception as e:
                logger.error(f"Redis feed read failed: {e}", exc_info=True)
                await asyncio.sleep(1)
                continue

            if not self._connected:
                logger.info("Redis feed connection restored")
            self._connected = True
            if raw and raw["type"] == "message":
                await self._handle_message(raw)

    async def _handle_message(self, raw: dict) -> None:
        """Dispatch a relayed message unless this server sent it."""
        channel = raw["channel"]
        data = raw["data"]
        if isinstance(channel, bytes):
            channel = channel.decode()
        if isinstance(data, bytes):
            data = data.decode()

        try:
            msg = PubSubMessage.from_json(data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Dropping malformed message on {channel}: {e}")
            return

        if msg.sender_id != self.server_id:
            await self._dispatch(channel, msg)


_pubsub: Optional[LocalPubSub] = None


def set_pubsub(feed: Optional[LocalPubSub]) -> None:
    global _pubsub
    _pubsub = feed


def get_pubsub() -> Optional[LocalPubSub]:
    """The server's change feed, or None before startup."""
    return _pubsub


async def close_pubsub() -> None:
    global _pubsub
    if _pubsub is not None:
        await _pubsub.stop()
        _pubsub = None
