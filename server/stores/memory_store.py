"""
In-memory entity store.

Used when no PostgreSQL URL is configured, by the simulator, and by the
test suite. Each room has its own asyncio.Lock, which serializes
transactions and conditional updates on that room exactly like a row
lock would. Reads and transactions work on deep copies so callers never
alias stored state.
"""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from errors import ConcurrencyError, RoomNotFound
from models.entities import (
    ExchangeAction,
    Gift,
    Player,
    ResonancePhase,
    ResonanceShare,
    Room,
    Vote,
)
from stores.entity_store import (
    ChangeKind,
    EntityStore,
    RoomTransaction,
    Table,
    check_room_fields,
)

logger = logging.getLogger(__name__)


class MemoryEntityStore(EntityStore):
    """Entity store backed by dicts, one lock per room."""

    def __init__(self):
        super().__init__()
        self._rooms: dict[str, Room] = {}
        self._codes: dict[str, str] = {}
        self._players: dict[str, Player] = {}
        self._votes: dict[str, list[Vote]] = {}
        self._resonance: dict[tuple[str, str, ResonancePhase], ResonanceShare] = {}
        self._gifts: dict[str, list[Gift]] = {}
        self._exchange_actions: dict[str, list[ExchangeAction]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, room_id: str) -> asyncio.Lock:
        if room_id not in self._locks:
            self._locks[room_id] = asyncio.Lock()
        return self._locks[room_id]

    def _room_players(self, room_id: str) -> list[Player]:
        players = [p for p in self._players.values() if p.room_id == room_id]
        return sorted(
            players,
            key=lambda p: (p.player_number < 0, p.player_number, p.created_at),
        )

    # -------------------------------------------------------------------------
    # Rooms and players
    # -------------------------------------------------------------------------

    async def create_room(self, room: Room) -> Room:
        if room.code in self._codes:
            raise ConcurrencyError(f"Room code {room.code} already in use")
        self._rooms[room.id] = copy.deepcopy(room)
        self._codes[room.code] = room.id
        await self._notify(room.id, Table.ROOMS, ChangeKind.INSERT)
        return copy.deepcopy(room)

    async def get_room(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        return copy.deepcopy(room) if room else None

    async def get_room_by_code(self, code: str) -> Optional[Room]:
        room_id = self._codes.get(code.upper())
        return await self.get_room(room_id) if room_id else None

    async def list_rooms(self) -> list[Room]:
        return [copy.deepcopy(r) for r in self._rooms.values()]

    async def get_player(self, player_id: str) -> Optional[Player]:
        player = self._players.get(player_id)
        return copy.deepcopy(player) if player else None

    async def list_players(self, room_id: str) -> list[Player]:
        return copy.deepcopy(self._room_players(room_id))

    @asynccontextmanager
    async def transaction(self, room_id: str) -> AsyncIterator[RoomTransaction]:
        async with self._lock(room_id):
            if room_id not in self._rooms:
                raise RoomNotFound(f"Room {room_id} not found")

            txn = RoomTransaction(
                copy.deepcopy(self._rooms[room_id]),
                copy.deepcopy(self._room_players(room_id)),
                copy.deepcopy(self._votes.get(room_id, [])),
            )
            # An exception here leaves the stored objects untouched
            yield txn

            changes = txn.changes()
            taken = {p.player_number for p in self._room_players(room_id) if p.is_active}
            for p in changes.inserted_players:
                if p.is_active and p.player_number in taken:
                    raise ConcurrencyError(f"Seat {p.player_number} already taken")

            if changes.room_changed:
                txn.room.version += 1
                txn.room.updated_at = datetime.now(timezone.utc)
                self._rooms[room_id] = copy.deepcopy(txn.room)
            for p in changes.inserted_players:
                self._players[p.id] = copy.deepcopy(p)
            for p in changes.updated_players:
                self._players[p.id] = copy.deepcopy(p)
            for record in changes.records:
                if isinstance(record, Vote):
                    self._votes.setdefault(room_id, []).append(copy.deepcopy(record))
                elif isinstance(record, Gift):
                    self._gifts.setdefault(room_id, []).append(copy.deepcopy(record))
                else:
                    self._exchange_actions.setdefault(room_id, []).append(copy.deepcopy(record))

        await self._notify_changes(room_id, changes)

    async def update_room_if(
        self,
        room_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        check_room_fields(expected, changes)
        async with self._lock(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                return False
            for key, value in expected.items():
                if getattr(room, key) != value:
                    return False
            for key, value in changes.items():
                setattr(room, key, copy.deepcopy(value))
            room.version += 1
            room.updated_at = datetime.now(timezone.utc)

        await self._notify(room_id, Table.ROOMS, ChangeKind.UPDATE)
        return True

    # -------------------------------------------------------------------------
    # Votes and resonance
    # -------------------------------------------------------------------------

    async def list_votes(self, room_id: str) -> list[Vote]:
        return copy.deepcopy(self._votes.get(room_id, []))

    async def upsert_resonance(self, share: ResonanceShare) -> ResonanceShare:
        key = (share.room_id, share.player_id, share.phase)
        existing = self._resonance.get(key)
        if existing is not None:
            existing.percentage = share.percentage
            kind = ChangeKind.UPDATE
        else:
            self._resonance[key] = copy.deepcopy(share)
            kind = ChangeKind.INSERT
        await self._notify(share.room_id, Table.RESONANCE_SHARES, kind)
        return copy.deepcopy(self._resonance[key])

    async def list_resonance(
        self,
        room_id: str,
        phase: Optional[ResonancePhase] = None,
    ) -> list[ResonanceShare]:
        return [
            copy.deepcopy(s) for (rid, _, p), s in self._resonance.items()
            if rid == room_id and (phase is None or p == phase)
        ]

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    async def list_gifts(self, room_id: str) -> list[Gift]:
        return copy.deepcopy(self._gifts.get(room_id, []))

    async def list_exchange_actions(self, room_id: str) -> list[ExchangeAction]:
        return copy.deepcopy(self._exchange_actions.get(room_id, []))
