"""
Rooms API router for Value Cards.

Provides endpoints for:
- Creating and joining rooms
- Room and player snapshots
- Card and phase actions (each one atomic on the server)
- History feeds (votes, resonance, gifts, exchanges)
- Maintenance (card census, board replenish)
- A per-room WebSocket that forwards change notifications

Failed actions keep their structured body: business rejections return
409 (404 for unknown rooms/players), store failures 503.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from cards import deduplicate_hand
from errors import PlayerNotFound, RoomNotFound, StoreError
from logging_config import player_id_var, room_id_var
from models.entities import ActionResult, Player, ResonancePhase, Room
from services.actions import STORE_ERROR

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rooms", tags=["rooms"])
ws_router = APIRouter(tags=["rooms"])

# Service instances (set during app startup)
_store = None
_card_service = None
_phase_service = None
_feed = None

NOT_FOUND_CODES = {RoomNotFound.code, PlayerNotFound.code}


def set_room_services(store, card_service, phase_service, feed) -> None:
    """Set the store, services and change feed used by the routes."""
    global _store, _card_service, _phase_service, _feed
    _store = store
    _card_service = card_service
    _phase_service = phase_service
    _feed = feed


def _require_services() -> None:
    if _store is None or _card_service is None or _phase_service is None:
        raise HTTPException(status_code=503, detail="Game services unavailable")


def _respond(result: ActionResult):
    """Turn an ActionResult into a response, keeping the structured body."""
    if result.success:
        return result.to_dict()
    if result.code in NOT_FOUND_CODES:
        status_code = 404
    elif result.retryable:
        status_code = 503
    else:
        status_code = 409
    return JSONResponse(status_code=status_code, content=result.to_dict())


def _store_unavailable(e: StoreError):
    logger.error(f"Store read failed: {e}")
    return _respond(ActionResult.fail(STORE_ERROR, "Game state is unavailable", retryable=True))


# =============================================================================
# Request Models
# =============================================================================


class CreateRoomRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class JoinRoomRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)
    name: str = Field(..., min_length=1, max_length=50)


class PlayerRequest(BaseModel):
    """Body for actions that only need the acting player."""
    player_id: str


class ConnectedRequest(PlayerRequest):
    connected: bool


class CheckInRequest(PlayerRequest):
    preferred_name: str = Field(default="", max_length=50)


class VoteRequest(PlayerRequest):
    card_index: int


class ResonanceRequest(PlayerRequest):
    percentage: int


class DiscardRequest(PlayerRequest):
    card: str


class ExchangeRequest(PlayerRequest):
    hand_card: str
    board_card: str


class FinalResonanceRequest(PlayerRequest):
    percentage: int = 50
    text: str = Field(default="", max_length=1000)


class GiftRequest(BaseModel):
    sender_id: str
    recipient_id: str
    message: str = Field(..., max_length=1000)


class ReflectionRequest(PlayerRequest):
    text: str = Field(..., max_length=2000)


class ReplenishRequest(BaseModel):
    target: Optional[int] = Field(default=None, ge=0)


# =============================================================================
# Snapshots
# =============================================================================


def player_view(player: Player) -> dict:
    """Player as shown to clients; hands are de-duplicated for display only."""
    data = player.to_dict()
    data["hand"] = deduplicate_hand(player.hand)
    return data


def room_view(room: Room, players: list[Player]) -> dict:
    data = room.to_dict()
    data["deck_count"] = len(room.deck)
    data["players"] = [player_view(p) for p in players]
    return data


# -------------------------------------------------------------------------
# Room and Seat Endpoints
# -------------------------------------------------------------------------

@router.post("")
async def create_room(request: CreateRoomRequest):
    """Create a room; the creator takes seat 0."""
    _require_services()
    return _respond(await _phase_service.create_room(request.name))


@router.post("/join")
async def join_room(request: JoinRoomRequest):
    """Join by code: lowest free seat, or spectator."""
    _require_services()
    return _respond(await _phase_service.join_room(request.code.upper(), request.name))


@router.get("/{room_id}")
async def get_room(room_id: str):
    """Full snapshot of a room and its participants."""
    _require_services()
    try:
        room = await _store.get_room(room_id)
        if room is None:
            return _respond(ActionResult.fail(RoomNotFound.code, f"Room {room_id} not found"))
        players = await _store.list_players(room_id)
    except StoreError as e:
        return _store_unavailable(e)
    return room_view(room, players)


@router.get("/{room_id}/players/{player_id}")
async def get_player(room_id: str, player_id: str):
    _require_services()
    try:
        player = await _store.get_player(player_id)
    except StoreError as e:
        return _store_unavailable(e)
    if player is None or player.room_id != room_id:
        return _respond(ActionResult.fail(PlayerNotFound.code, f"Player {player_id} not found"))
    return player_view(player)


@router.post("/{room_id}/connected")
async def set_connected(room_id: str, request: ConnectedRequest):
    _require_services()
    return _respond(
        await _phase_service.set_connected(room_id, request.player_id, request.connected)
    )


# -------------------------------------------------------------------------
# Check-in and Voting
# -------------------------------------------------------------------------

@router.post("/{room_id}/checkin/start")
async def start_checkin(room_id: str):
    _require_services()
    return _respond(await _phase_service.start_checkin(room_id))


@router.post("/{room_id}/checkin")
async def check_in(room_id: str, request: CheckInRequest):
    _require_services()
    return _respond(
        await _phase_service.check_in(room_id, request.player_id, request.preferred_name)
    )


@router.post("/{room_id}/voting/start")
async def start_voting(room_id: str):
    _require_services()
    return _respond(await _phase_service.start_voting(room_id))


@router.post("/{room_id}/voting/anchor")
async def mark_voting_started(room_id: str):
    """Anchor the shared countdown; only the first call writes."""
    _require_services()
    return _respond(await _phase_service.mark_voting_started(room_id))


@router.post("/{room_id}/votes")
async def cast_vote(room_id: str, request: VoteRequest):
    _require_services()
    return _respond(
        await _phase_service.cast_vote(room_id, request.player_id, request.card_index)
    )


@router.post("/{room_id}/voting/resolve")
async def resolve_voting(room_id: str):
    """Resolve only if every seat voted or the shared countdown has expired."""
    _require_services()
    return _respond(await _phase_service.resolve_voting(room_id))


@router.post("/{room_id}/voting/finish")
async def finish_voting_result(room_id: str):
    _require_services()
    return _respond(await _phase_service.finish_voting_result(room_id))


# -------------------------------------------------------------------------
# Resonance
# -------------------------------------------------------------------------

@router.post("/{room_id}/resonance")
async def submit_resonance(room_id: str, request: ResonanceRequest):
    _require_services()
    return _respond(
        await _phase_service.submit_resonance(room_id, request.player_id, request.percentage)
    )


@router.post("/{room_id}/ready")
async def mark_ready(room_id: str, request: PlayerRequest):
    _require_services()
    return _respond(await _phase_service.mark_ready(room_id, request.player_id))


@router.post("/{room_id}/resonance/advance")
async def force_resonance_advance(room_id: str, request: PlayerRequest):
    """Seat 0 moves the group on once a quorum has shared."""
    _require_services()
    return _respond(await _phase_service.force_resonance_advance(room_id, request.player_id))


# -------------------------------------------------------------------------
# Cards
# -------------------------------------------------------------------------

@router.post("/{room_id}/draw")
async def draw(room_id: str, request: PlayerRequest):
    _require_services()
    return _respond(await _card_service.draw(room_id, request.player_id))


@router.post("/{room_id}/discard")
async def discard(room_id: str, request: DiscardRequest):
    _require_services()
    return _respond(await _card_service.discard(room_id, request.player_id, request.card))


@router.post("/{room_id}/exchange")
async def exchange(room_id: str, request: ExchangeRequest):
    _require_services()
    return _respond(
        await _card_service.exchange(
            room_id, request.player_id, request.hand_card, request.board_card
        )
    )


@router.post("/{room_id}/exchange/skip")
async def skip_exchange(room_id: str, request: PlayerRequest):
    _require_services()
    return _respond(await _card_service.skip_exchange(room_id, request.player_id))


@router.post("/{room_id}/exchange/finish")
async def finish_exchange(room_id: str):
    _require_services()
    return _respond(await _phase_service.finish_exchange(room_id))


# -------------------------------------------------------------------------
# Final Phase
# -------------------------------------------------------------------------

@router.post("/{room_id}/final/resonance")
async def share_final_resonance(room_id: str, request: FinalResonanceRequest):
    _require_services()
    return _respond(
        await _phase_service.share_final_resonance(
            room_id, request.player_id, request.percentage, request.text
        )
    )


@router.post("/{room_id}/final/gifts")
async def give_message_gift(room_id: str, request: GiftRequest):
    _require_services()
    return _respond(
        await _card_service.give_message_gift(
            room_id, request.sender_id, request.recipient_id, request.message
        )
    )


@router.post("/{room_id}/final/reflection")
async def share_final_reflection(room_id: str, request: ReflectionRequest):
    _require_services()
    return _respond(
        await _phase_service.share_final_reflection(room_id, request.player_id, request.text)
    )


# -------------------------------------------------------------------------
# History
# -------------------------------------------------------------------------

@router.get("/{room_id}/votes")
async def list_votes(room_id: str):
    _require_services()
    try:
        votes = await _store.list_votes(room_id)
    except StoreError as e:
        return _store_unavailable(e)
    return {"votes": [v.to_dict() for v in votes]}


@router.get("/{room_id}/resonance")
async def list_resonance(room_id: str, phase: Optional[ResonancePhase] = Query(default=None)):
    _require_services()
    try:
        shares = await _store.list_resonance(room_id, phase)
    except StoreError as e:
        return _store_unavailable(e)
    return {"shares": [s.to_dict() for s in shares]}


@router.get("/{room_id}/gifts")
async def list_gifts(room_id: str):
    _require_services()
    try:
        gifts = await _store.list_gifts(room_id)
    except StoreError as e:
        return _store_unavailable(e)
    return {"gifts": [g.to_dict() for g in gifts]}


@router.get("/{room_id}/exchange-actions")
async def list_exchange_actions(room_id: str):
    _require_services()
    try:
        actions = await _store.list_exchange_actions(room_id)
    except StoreError as e:
        return _store_unavailable(e)
    return {"actions": [a.to_dict() for a in actions]}


# -------------------------------------------------------------------------
# Maintenance
# -------------------------------------------------------------------------

@router.get("/{room_id}/validate")
async def validate_uniqueness(room_id: str):
    """Card census: every value card should appear exactly once."""
    _require_services()
    return _respond(await _card_service.validate_uniqueness(room_id))


@router.post("/{room_id}/replenish")
async def replenish_discard_pile(room_id: str, request: Optional[ReplenishRequest] = None):
    _require_services()
    target = request.target if request else None
    return _respond(await _card_service.replenish_discard_pile(room_id, target))


# -------------------------------------------------------------------------
# Change Feed
# -------------------------------------------------------------------------

@ws_router.websocket("/ws/rooms/{room_id}")
async def room_feed(websocket: WebSocket, room_id: str):
    """
    Forward a room's change notifications to one client.

    Messages are hints to re-read the snapshot, never state. With a
    ``player_id`` query parameter the player's connection flag follows
    the socket.
    """
    await websocket.accept()

    if _feed is None or _phase_service is None:
        await websocket.send_json({"type": "error", "message": "Change feed unavailable"})
        await websocket.close(code=1011, reason="Change feed unavailable")
        return

    player_id = websocket.query_params.get("player_id")
    room_token = room_id_var.set(room_id)
    player_token = player_id_var.set(player_id)

    async def forward(msg) -> None:
        await websocket.send_json({
            "type": msg.type.value,
            "room_id": msg.room_id,
            "table": msg.table,
        })

    await _feed.subscribe(room_id, forward)
    if player_id:
        await _phase_service.set_connected(room_id, player_id, True)
    logger.debug(f"Feed connected for room {room_id[:8]}")

    try:
        while True:
            text = await websocket.receive_text()
            if text == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug(f"Feed disconnected for room {room_id[:8]}")
    finally:
        await _feed.remove_handler(room_id, forward)
        if player_id:
            await _phase_service.set_connected(room_id, player_id, False)
        player_id_var.reset(player_token)
        room_id_var.reset(room_token)
