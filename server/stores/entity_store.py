"""
Entity store interface for Value Cards.

The store holds six collections (rooms, players, votes, resonance shares,
gifts, exchange actions) and offers the two concurrency primitives every
game write goes through:

- ``transaction(room_id)``: lock the room row and its player rows, hand
  the caller mutable copies, write back whatever changed on success and
  discard everything on error.
- ``update_room_if(room_id, expected, changes)``: a compare-and-swap on the
  room row. Returns False (zero rows affected) when the room no longer
  matches ``expected``.

After a write commits the store notifies its change listeners with
``(room_id, table, kind)``. Notifications carry no state; listeners
re-read what they need.

Implementations:
- MemoryEntityStore (stores/memory_store.py): per-room asyncio locks.
- PostgresEntityStore (stores/postgres_store.py): asyncpg, row locks.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from errors import PlayerNotFound, StoreError
from models.entities import (
    ExchangeAction,
    Gift,
    Player,
    ResonancePhase,
    ResonanceShare,
    Room,
    Vote,
)

logger = logging.getLogger(__name__)


class Table(str, Enum):
    """Entity collections, named as the tables that hold them."""

    ROOMS = "rooms"
    PLAYERS = "players"
    VOTES = "votes"
    RESONANCE_SHARES = "resonance_shares"
    GIFTS = "gifts"
    EXCHANGE_ACTIONS = "exchange_actions"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


ChangeListener = Callable[[str, Table, ChangeKind], Awaitable[None]]

# Entities a transaction may append alongside its room/player writes
LogRecord = Union[Vote, Gift, ExchangeAction]

# Room columns that conditional updates may compare or set
ROOM_FIELDS = frozenset({
    "status",
    "purpose_card",
    "card_options",
    "voting_started_at",
    "current_turn_player",
    "current_exchange_turn",
    "final_phase_turn",
    "final_phase_step",
    "round_number",
    "exchange_completed",
    "deck",
    "discard_pile",
    "version",
})


def check_room_fields(*field_sets: dict) -> None:
    """
    Raises:
        StoreError: If any key is not an updatable room column.
    """
    for fields in field_sets:
        unknown = set(fields) - ROOM_FIELDS
        if unknown:
            raise StoreError(f"Unknown room fields: {sorted(unknown)}")


@dataclass
class RoomChanges:
    """What a committed transaction wrote."""
    room_changed: bool = False
    updated_players: list[Player] = field(default_factory=list)
    inserted_players: list[Player] = field(default_factory=list)
    records: list[LogRecord] = field(default_factory=list)


class RoomTransaction:
    """
    Locked, mutable view of one room and its players.

    Mutate ``room`` and the entries of ``players`` directly; add new
    players with ``add_player``, votes with ``add_vote`` and log entities
    with ``record``. ``votes`` holds the room's votes as of lock time plus
    any added here. The store writes back only what differs from the
    snapshot taken at lock time.
    """

    def __init__(self, room: Room, players: list[Player], votes: Optional[list[Vote]] = None):
        self.room = room
        self.players = players
        self.votes = votes if votes is not None else []
        self._room_before = room.to_dict()
        self._players_before = {p.id: p.to_dict() for p in players}
        self._inserted: list[Player] = []
        self._records: list[LogRecord] = []

    def player(self, player_id: str) -> Player:
        """
        Get a player of this room.

        Raises:
            PlayerNotFound: If the player is not in the room.
        """
        for p in self.players:
            if p.id == player_id:
                return p
        raise PlayerNotFound(f"Player {player_id} not found in room {self.room.id}")

    def add_player(self, player: Player) -> Player:
        self.players.append(player)
        self._inserted.append(player)
        return player

    def add_vote(self, vote: Vote) -> Vote:
        self.votes.append(vote)
        self._records.append(vote)
        return vote

    def record(self, entry: LogRecord) -> None:
        self._records.append(entry)

    def changes(self) -> RoomChanges:
        """Diff the current state against the lock-time snapshot."""
        inserted_ids = {p.id for p in self._inserted}
        return RoomChanges(
            room_changed=self.room.to_dict() != self._room_before,
            updated_players=[
                p for p in self.players
                if p.id not in inserted_ids and p.to_dict() != self._players_before.get(p.id)
            ],
            inserted_players=list(self._inserted),
            records=list(self._records),
        )


class EntityStore(ABC):
    """Transactional store for rooms and their entities."""

    def __init__(self):
        self._listeners: list[ChangeListener] = []

    # -------------------------------------------------------------------------
    # Change notifications
    # -------------------------------------------------------------------------

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, room_id: str, table: Table, kind: ChangeKind) -> None:
        for listener in list(self._listeners):
            try:
                await listener(room_id, table, kind)
            except Exception as e:
                # A broken listener must not fail an already-committed write
                logger.error(f"Change listener failed for {table.value}: {e}", exc_info=True)

    async def _notify_changes(self, room_id: str, changes: RoomChanges) -> None:
        if changes.room_changed:
            await self._notify(room_id, Table.ROOMS, ChangeKind.UPDATE)
        if changes.inserted_players:
            await self._notify(room_id, Table.PLAYERS, ChangeKind.INSERT)
        if changes.updated_players:
            await self._notify(room_id, Table.PLAYERS, ChangeKind.UPDATE)
        tables = {_record_table(r) for r in changes.records}
        for table in sorted(tables, key=lambda t: t.value):
            await self._notify(room_id, table, ChangeKind.INSERT)

    # -------------------------------------------------------------------------
    # Rooms and players
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_room(self, room: Room) -> Room:
        """Insert a new room. Raises ConcurrencyError if the code is taken."""

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]:
        ...

    @abstractmethod
    async def get_room_by_code(self, code: str) -> Optional[Room]:
        ...

    @abstractmethod
    async def list_rooms(self) -> list[Room]:
        ...

    @abstractmethod
    async def get_player(self, player_id: str) -> Optional[Player]:
        ...

    @abstractmethod
    async def list_players(self, room_id: str) -> list[Player]:
        """Players of a room, seats first in seat order, then spectators."""

    @abstractmethod
    def transaction(self, room_id: str) -> AbstractAsyncContextManager[RoomTransaction]:
        """
        Lock a room and its players for a read-modify-write.

        Raises:
            RoomNotFound: On entry, if the room does not exist.
            StoreError: If the lock or the write fails.
        """

    @abstractmethod
    async def update_room_if(
        self,
        room_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        """
        Conditionally update room columns.

        Args:
            room_id: Room to update.
            expected: Column values the row must currently have
                (None matches SQL NULL).
            changes: Column values to write.

        Returns:
            True if the row matched and was written, False otherwise.
        """

    # -------------------------------------------------------------------------
    # Votes and resonance
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_votes(self, room_id: str) -> list[Vote]:
        ...

    @abstractmethod
    async def upsert_resonance(self, share: ResonanceShare) -> ResonanceShare:
        """Insert or overwrite the share for (room, player, phase)."""

    @abstractmethod
    async def list_resonance(
        self,
        room_id: str,
        phase: Optional[ResonancePhase] = None,
    ) -> list[ResonanceShare]:
        ...

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_gifts(self, room_id: str) -> list[Gift]:
        ...

    @abstractmethod
    async def list_exchange_actions(self, room_id: str) -> list[ExchangeAction]:
        ...

    async def close(self) -> None:
        """Release resources."""


def _record_table(record: LogRecord) -> Table:
    if isinstance(record, Vote):
        return Table.VOTES
    if isinstance(record, Gift):
        return Table.GIFTS
    return Table.EXCHANGE_ACTIONS


# Global store instance
_store: Optional[EntityStore] = None


def set_entity_store(store: Optional[EntityStore]) -> None:
    global _store
    _store = store


def get_entity_store() -> EntityStore:
    """
    Get the global entity store.

    Raises:
        StoreError: If no store has been configured yet.
    """
    if _store is None:
        raise StoreError("Entity store not initialized")
    return _store


async def close_entity_store() -> None:
    """Close the global entity store."""
    global _store
    if _store is not None:
        await _store.close()
        _store = None
