"""
Tests for the rooms API routes.

Route functions are called directly with the in-memory store wired in,
so these cover response shaping rather than HTTP plumbing:
- Success bodies and structured failure bodies
- 404 / 409 / 503 status mapping
- Display de-duplication in snapshots
- Request-id middleware room extraction
"""

import inspect
import json
import random

import pytest
from fastapi import HTTPException
from fastapi.responses import JSONResponse
from unittest.mock import AsyncMock, MagicMock

from errors import StoreError
from middleware.request_id import room_id_from_path
from models.entities import RoomStatus
from routers import rooms
from services.card_service import CardService
from services.phase_service import PhaseService
from stores.memory_store import MemoryEntityStore

ROOM_ID = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"


def body(response) -> dict:
    assert isinstance(response, JSONResponse)
    return json.loads(response.body)


@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def wired(store):
    phases = PhaseService(store, rng=random.Random(5))
    cards = CardService(store, rng=random.Random(6))
    rooms.set_room_services(store, cards, phases, feed=None)
    yield store
    rooms.set_room_services(None, None, None, None)


async def created_room():
    result = await rooms.create_room(rooms.CreateRoomRequest(name="Ari"))
    assert result["success"]
    return result


# =============================================================================
# Service wiring
# =============================================================================

class TestWiring:

    @pytest.mark.asyncio
    async def test_unwired_routes_return_503(self):
        rooms.set_room_services(None, None, None, None)
        with pytest.raises(HTTPException) as exc_info:
            await rooms.get_room("anything")
        assert exc_info.value.status_code == 503


# =============================================================================
# Rooms and snapshots
# =============================================================================

class TestRooms:

    @pytest.mark.asyncio
    async def test_create_and_join(self, wired):
        created = await created_room()

        joined = await rooms.join_room(
            rooms.JoinRoomRequest(code=created["room_code"].lower(), name="Bea")
        )

        assert joined["success"]
        assert joined["player_number"] == 1
        assert joined["role"] == "player"

    @pytest.mark.asyncio
    async def test_join_unknown_code_is_404(self, wired):
        response = await rooms.join_room(rooms.JoinRoomRequest(code="QQQQ", name="Bea"))
        assert response.status_code == 404
        assert body(response)["code"] == "room_not_found"

    @pytest.mark.asyncio
    async def test_snapshot(self, wired):
        created = await created_room()

        snapshot = await rooms.get_room(created["room_id"])

        assert snapshot["status"] == "waiting"
        assert snapshot["deck_count"] == 36
        assert [p["name"] for p in snapshot["players"]] == ["Ari"]

    @pytest.mark.asyncio
    async def test_snapshot_hides_duplicate_hand_entries(self, wired):
        created = await created_room()
        async with wired.transaction(created["room_id"]) as txn:
            txn.player(created["player_id"]).hand = ["Hope", "Fun", "Hope"]

        player = await rooms.get_player(created["room_id"], created["player_id"])

        assert player["hand"] == ["Hope", "Fun"]
        stored = await wired.get_player(created["player_id"])
        assert stored.hand == ["Hope", "Fun", "Hope"]

    @pytest.mark.asyncio
    async def test_unknown_room_and_player_are_404(self, wired):
        created = await created_room()

        assert (await rooms.get_room("missing")).status_code == 404
        response = await rooms.get_player(created["room_id"], "missing")
        assert response.status_code == 404
        assert body(response)["code"] == "player_not_found"


# =============================================================================
# Actions
# =============================================================================

class TestActions:

    @pytest.mark.asyncio
    async def test_rejection_is_409_with_structured_body(self, wired):
        created = await created_room()

        response = await rooms.start_checkin(created["room_id"])

        assert response.status_code == 409
        payload = body(response)
        assert payload["success"] is False
        assert payload["code"] == "wrong_phase"
        assert payload["retryable"] is False

    @pytest.mark.asyncio
    async def test_draw_out_of_phase(self, wired):
        created = await created_room()
        response = await rooms.draw(
            created["room_id"], rooms.PlayerRequest(player_id=created["player_id"])
        )
        assert body(response)["code"] == "wrong_phase"

    @pytest.mark.asyncio
    async def test_resolve_cannot_cut_the_countdown_short(self, wired):
        created = await created_room()
        await wired.update_room_if(
            created["room_id"], {"status": RoomStatus.WAITING}, {"status": RoomStatus.VOTING}
        )

        result = await rooms.resolve_voting(created["room_id"])

        assert result["success"]
        assert result["resolved"] is False
        assert list(inspect.signature(rooms.resolve_voting).parameters) == ["room_id"]
        assert (await wired.get_room(created["room_id"])).status == RoomStatus.VOTING

    @pytest.mark.asyncio
    async def test_census(self, wired):
        created = await created_room()
        result = await rooms.validate_uniqueness(created["room_id"])
        assert result["valid"]
        assert result["total_cards"] == 36

    @pytest.mark.asyncio
    async def test_replenish_with_explicit_target(self, wired):
        created = await created_room()
        await wired.update_room_if(
            created["room_id"], {"status": RoomStatus.WAITING}, {"status": RoomStatus.PLAYING}
        )

        result = await rooms.replenish_discard_pile(
            created["room_id"], rooms.ReplenishRequest(target=5)
        )

        assert result["added_count"] == 5
        history = await rooms.list_exchange_actions(created["room_id"])
        assert history == {"actions": []}


# =============================================================================
# Store failures
# =============================================================================

class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_read_failure_is_503(self):
        store = MagicMock()
        store.get_room = AsyncMock(side_effect=StoreError("connection refused"))
        rooms.set_room_services(store, MagicMock(), MagicMock(), None)
        try:
            response = await rooms.get_room("room-1")
        finally:
            rooms.set_room_services(None, None, None, None)

        assert response.status_code == 503
        payload = body(response)
        assert payload["code"] == "store_error"
        assert payload["retryable"] is True

    @pytest.mark.asyncio
    async def test_action_failure_is_503(self):
        store = MagicMock()
        store.transaction.side_effect = StoreError("connection refused")
        rooms.set_room_services(store, CardService(store), MagicMock(), None)
        try:
            response = await rooms.draw("room-1", rooms.PlayerRequest(player_id="p1"))
        finally:
            rooms.set_room_services(None, None, None, None)

        assert response.status_code == 503
        assert body(response)["retryable"] is True


# =============================================================================
# Request context
# =============================================================================

class TestRequestContext:

    @pytest.mark.parametrize("path,expected", [
        (f"/api/rooms/{ROOM_ID}/draw", ROOM_ID),
        (f"/api/rooms/{ROOM_ID}", ROOM_ID),
        (f"/ws/rooms/{ROOM_ID}", None),
        ("/api/rooms/join", None),
        ("/health", None),
    ])
    def test_room_id_from_path(self, path, expected):
        assert room_id_from_path(path) == expected
