"""
Tests for the room change feed.

These tests cover:
- Local dispatch, handler removal and isolation of failing handlers
- Store listener messages
- Redis relay: channel naming, echo suppression and bad payloads
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from stores.entity_store import ChangeKind, Table
from stores.pubsub import GamePubSub, LocalPubSub, MessageType, PubSubMessage


def rooms_message(room_id="room-1", sender_id=None):
    return PubSubMessage(
        type=MessageType.ROW_UPDATED,
        room_id=room_id,
        table="rooms",
        sender_id=sender_id,
    )


@pytest.fixture
def mock_redis():
    client = MagicMock()
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    client.pubsub.return_value = pubsub
    client.publish = AsyncMock(return_value=2)
    return client


# =============================================================================
# Local feed
# =============================================================================

class TestLocalPubSub:

    @pytest.mark.asyncio
    async def test_dispatch_reaches_room_handlers_only(self):
        feed = LocalPubSub()
        seen, other = [], []

        async def handler(msg):
            seen.append(msg)

        async def other_handler(msg):
            other.append(msg)

        await feed.subscribe("room-1", handler)
        await feed.subscribe("room-2", other_handler)

        count = await feed.publish(rooms_message("room-1"))

        assert count == 1
        assert len(seen) == 1
        assert seen[0].sender_id == "default"
        assert other == []

    @pytest.mark.asyncio
    async def test_remove_handler(self):
        feed = LocalPubSub()
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        await feed.remove_handler("room-1", handler)

        assert await feed.publish(rooms_message()) == 0
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        feed = LocalPubSub()
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        await feed.subscribe("room-1", broken)
        await feed.subscribe("room-1", healthy)

        await feed.publish(rooms_message())

        healthy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connected_only_while_started(self):
        feed = LocalPubSub()
        assert not feed.is_connected
        await feed.start()
        assert feed.is_connected
        await feed.stop()
        assert not feed.is_connected

    @pytest.mark.asyncio
    async def test_store_change_becomes_message(self):
        feed = LocalPubSub()
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        await feed.on_store_change("room-1", Table.VOTES, ChangeKind.INSERT)

        msg = handler.await_args.args[0]
        assert msg.type == MessageType.ROW_INSERTED
        assert msg.table == "votes"
        assert msg.room_id == "room-1"


# =============================================================================
# Message format
# =============================================================================

class TestPubSubMessage:

    def test_json_shape(self):
        msg = rooms_message(sender_id="server-a")
        payload = json.loads(msg.to_json())
        assert payload == {
            "type": "row_updated",
            "room_id": "room-1",
            "table": "rooms",
            "data": {},
            "sender_id": "server-a",
        }

    def test_from_json_tolerates_missing_optional_fields(self):
        msg = PubSubMessage.from_json(
            json.dumps({"type": "row_inserted", "room_id": "r", "table": "gifts"})
        )
        assert msg.type == MessageType.ROW_INSERTED
        assert msg.data == {}
        assert msg.sender_id is None


# =============================================================================
# Redis feed
# =============================================================================

class TestGamePubSub:

    @pytest.mark.asyncio
    async def test_first_handler_subscribes_channel(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")

        await feed.subscribe("room-1", AsyncMock())
        await feed.subscribe("room-1", AsyncMock())

        feed.pubsub.subscribe.assert_awaited_once_with("valuecards:room:room-1")

    @pytest.mark.asyncio
    async def test_last_handler_unsubscribes_channel(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        await feed.remove_handler("room-1", handler)

        feed.pubsub.unsubscribe.assert_awaited_once_with("valuecards:room:room-1")

    @pytest.mark.asyncio
    async def test_publish_dispatches_locally_and_relays(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        count = await feed.publish(rooms_message())

        assert count == 2
        handler.assert_awaited_once()
        channel, raw = mock_redis.publish.await_args.args
        assert channel == "valuecards:room:room-1"
        assert json.loads(raw)["sender_id"] == "server-a"

    @pytest.mark.asyncio
    async def test_own_relay_is_ignored(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        await feed._handle_message({
            "type": "message",
            "channel": b"valuecards:room:room-1",
            "data": rooms_message(sender_id="server-a").to_json().encode(),
        })

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_server_relay_is_dispatched(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        await feed._handle_message({
            "type": "message",
            "channel": b"valuecards:room:room-1",
            "data": rooms_message(sender_id="server-b").to_json().encode(),
        })

        msg = handler.await_args.args[0]
        assert msg.sender_id == "server-b"
        assert msg.table == "rooms"

    @pytest.mark.asyncio
    async def test_invalid_payload_is_dropped(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")
        handler = AsyncMock()
        await feed.subscribe("room-1", handler)

        await feed._handle_message({
            "type": "message",
            "channel": "valuecards:room:room-1",
            "data": "not json",
        })

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_connected_until_started(self, mock_redis):
        feed = GamePubSub(mock_redis, server_id="server-a")
        assert not feed.is_connected
