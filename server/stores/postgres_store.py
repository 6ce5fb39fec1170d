"""
PostgreSQL-backed entity store for Value Cards.

Rooms and players are the shared mutable rows; votes, resonance shares,
gifts and exchange actions are keyed logs. Card containers (deck, board,
hands, received gifts) are JSONB arrays.

Concurrency:
- transaction() takes ``SELECT ... FOR UPDATE`` on the room row, then on
  its player rows in seat order, inside one database transaction.
- update_room_if() is a single ``UPDATE ... WHERE id = $1 AND <expected>``;
  zero affected rows means the room had already moved on.
- Unique constraints back one-vote-per-player, one-share-per-phase and
  one-player-per-seat.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from errors import ConcurrencyError, RoomNotFound, StoreError
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
    ROOM_FIELDS,
    ChangeKind,
    EntityStore,
    RoomChanges,
    RoomTransaction,
    Table,
    check_room_fields,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rooms (
    id UUID PRIMARY KEY,
    code VARCHAR(10) NOT NULL UNIQUE,
    status VARCHAR(20) NOT NULL DEFAULT 'waiting',
    purpose_card TEXT,
    card_options JSONB NOT NULL DEFAULT '[]'::jsonb,
    voting_started_at TIMESTAMPTZ,
    current_turn_player INT NOT NULL DEFAULT 0,
    current_exchange_turn INT NOT NULL DEFAULT 0,
    final_phase_turn INT NOT NULL DEFAULT 0,
    final_phase_step VARCHAR(20) NOT NULL DEFAULT 'sharing',
    round_number INT NOT NULL DEFAULT 0,
    exchange_completed BOOLEAN NOT NULL DEFAULT FALSE,
    deck JSONB NOT NULL DEFAULT '[]'::jsonb,
    discard_pile JSONB NOT NULL DEFAULT '[]'::jsonb,
    version INT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS players (
    id UUID PRIMARY KEY,
    room_id UUID NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    player_number INT NOT NULL,
    name TEXT NOT NULL,
    preferred_name TEXT,
    hand JSONB NOT NULL DEFAULT '[]'::jsonb,
    role VARCHAR(20) NOT NULL DEFAULT 'player' CHECK (role IN ('player', 'spectator')),
    is_connected BOOLEAN NOT NULL DEFAULT TRUE,
    has_checked_in BOOLEAN NOT NULL DEFAULT FALSE,
    ready_for_next_phase BOOLEAN NOT NULL DEFAULT FALSE,
    has_shared_final_resonance BOOLEAN NOT NULL DEFAULT FALSE,
    final_resonance_text TEXT NOT NULL DEFAULT '',
    final_resonance_percentage INT CHECK (final_resonance_percentage BETWEEN 0 AND 100),
    final_gifts_received JSONB NOT NULL DEFAULT '[]'::jsonb,
    final_reflection_text TEXT,
    has_given_final_gift BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- One player per seat; spectators share the sentinel seat
CREATE UNIQUE INDEX IF NOT EXISTS idx_players_seat
    ON players(room_id, player_number) WHERE player_number >= 0;
CREATE INDEX IF NOT EXISTS idx_players_room ON players(room_id);

CREATE TABLE IF NOT EXISTS votes (
    id UUID PRIMARY KEY,
    room_id UUID NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    card_index INT NOT NULL,
    card_text TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE(room_id, player_id)
);

CREATE TABLE IF NOT EXISTS resonance_shares (
    id UUID PRIMARY KEY,
    room_id UUID NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    phase VARCHAR(10) NOT NULL CHECK (phase IN ('initial', 'final')),
    percentage INT NOT NULL CHECK (percentage BETWEEN 0 AND 100),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE(room_id, player_id, phase)
);

CREATE TABLE IF NOT EXISTS gifts (
    id UUID PRIMARY KEY,
    room_id UUID NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    from_player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    to_player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS exchange_actions (
    id UUID PRIMARY KEY,
    room_id UUID NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
    player_name TEXT NOT NULL,
    action_type VARCHAR(10) NOT NULL CHECK (action_type IN ('exchange', 'skip')),
    hand_card TEXT,
    board_card TEXT,
    turn_number INT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_votes_room ON votes(room_id);
CREATE INDEX IF NOT EXISTS idx_resonance_room ON resonance_shares(room_id);
CREATE INDEX IF NOT EXISTS idx_gifts_room ON gifts(room_id, created_at);
CREATE INDEX IF NOT EXISTS idx_exchange_room ON exchange_actions(room_id, created_at);
"""

ROOM_JSON_COLUMNS = frozenset({"card_options", "deck", "discard_pile"})
PLAYER_JSON_COLUMNS = frozenset({"hand", "final_gifts_received"})

# Player columns written back by transactions
PLAYER_COLUMNS = (
    "player_number",
    "name",
    "preferred_name",
    "hand",
    "role",
    "is_connected",
    "has_checked_in",
    "ready_for_next_phase",
    "has_shared_final_resonance",
    "final_resonance_text",
    "final_resonance_percentage",
    "final_gifts_received",
    "final_reflection_text",
    "has_given_final_gift",
)

# Room columns written back by transactions (version is bumped in SQL)
ROOM_WRITE_COLUMNS = tuple(sorted(ROOM_FIELDS - {"version"}))


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _encode(column: str, value: Any, json_columns: frozenset) -> Any:
    if column in json_columns:
        return json.dumps(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _decode_row(row: asyncpg.Record, json_columns: frozenset) -> dict:
    d = dict(row)
    for column in json_columns:
        raw = d.get(column)
        if isinstance(raw, str):
            d[column] = json.loads(raw)
    return d


def _row_to_room(row: asyncpg.Record) -> Room:
    return Room.from_dict(_decode_row(row, ROOM_JSON_COLUMNS))


def _row_to_player(row: asyncpg.Record) -> Player:
    return Player.from_dict(_decode_row(row, PLAYER_JSON_COLUMNS))


class PostgresEntityStore(EntityStore):
    """
    PostgreSQL-backed entity store.

    Uses asyncpg for async database access.
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize entity store with connection pool.

        Args:
            pool: asyncpg connection pool.
        """
        super().__init__()
        self.pool = pool

    @classmethod
    async def create(cls, postgres_url: str) -> "PostgresEntityStore":
        """
        Create a store with a new connection pool.

        Args:
            postgres_url: PostgreSQL connection URL.

        Returns:
            Configured PostgresEntityStore instance.
        """
        pool = await asyncpg.create_pool(postgres_url, min_size=2, max_size=10)
        store = cls(pool)
        await store.initialize_schema()
        return store

    async def initialize_schema(self) -> None:
        """Create database tables if they don't exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Entity store schema initialized")

    async def close(self) -> None:
        """Close the connection pool."""
        await self.pool.close()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection, translating driver errors into store errors."""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise ConcurrencyError(f"Uniqueness conflict: {e}") from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database error: {e}")
            raise StoreError(f"Database error: {e}") from e

    # -------------------------------------------------------------------------
    # Rooms and players
    # -------------------------------------------------------------------------

    async def create_room(self, room: Room) -> Room:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO rooms (
                    id, code, status, purpose_card, card_options, voting_started_at,
                    current_turn_player, current_exchange_turn, final_phase_turn,
                    final_phase_step, round_number, exchange_completed,
                    deck, discard_pile, version, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                """,
                _as_uuid(room.id),
                room.code,
                room.status.value,
                room.purpose_card,
                json.dumps(room.card_options),
                room.voting_started_at,
                room.current_turn_player,
                room.current_exchange_turn,
                room.final_phase_turn,
                room.final_phase_step.value,
                room.round_number,
                room.exchange_completed,
                json.dumps(room.deck),
                json.dumps(room.discard_pile),
                room.version,
                room.created_at,
                room.updated_at,
            )
        await self._notify(room.id, Table.ROOMS, ChangeKind.INSERT)
        return room

    async def get_room(self, room_id: str) -> Optional[Room]:
        rid = _as_uuid(room_id)
        if rid is None:
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM rooms WHERE id = $1", rid)
        return _row_to_room(row) if row else None

    async def get_room_by_code(self, code: str) -> Optional[Room]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM rooms WHERE code = $1", code.upper())
        return _row_to_room(row) if row else None

    async def list_rooms(self) -> list[Room]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT * FROM rooms ORDER BY created_at")
        return [_row_to_room(row) for row in rows]

    async def get_player(self, player_id: str) -> Optional[Player]:
        pid = _as_uuid(player_id)
        if pid is None:
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM players WHERE id = $1", pid)
        return _row_to_player(row) if row else None

    async def list_players(self, room_id: str) -> list[Player]:
        rid = _as_uuid(room_id)
        if rid is None:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM players WHERE room_id = $1
                ORDER BY (player_number < 0), player_number, created_at
                """,
                rid,
            )
        return [_row_to_player(row) for row in rows]

    @asynccontextmanager
    async def transaction(self, room_id: str) -> AsyncIterator[RoomTransaction]:
        rid = _as_uuid(room_id)
        if rid is None:
            raise RoomNotFound(f"Room {room_id} not found")

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM rooms WHERE id = $1 FOR UPDATE", rid
                )
                if row is None:
                    raise RoomNotFound(f"Room {room_id} not found")
                player_rows = await conn.fetch(
                    """
                    SELECT * FROM players WHERE room_id = $1
                    ORDER BY (player_number < 0), player_number, created_at
                    FOR UPDATE
                    """,
                    rid,
                )
                # Votes are only inserted under this room lock
                vote_rows = await conn.fetch(
                    "SELECT * FROM votes WHERE room_id = $1 ORDER BY created_at", rid
                )
                txn = RoomTransaction(
                    _row_to_room(row),
                    [_row_to_player(r) for r in player_rows],
                    [Vote.from_dict(dict(r)) for r in vote_rows],
                )

                yield txn

                changes = txn.changes()
                await self._write_changes(conn, txn, changes)

        await self._notify_changes(room_id, changes)

    async def _write_changes(
        self,
        conn: asyncpg.Connection,
        txn: RoomTransaction,
        changes: RoomChanges,
    ) -> None:
        """Write back the rows a transaction touched."""
        if changes.room_changed:
            assignments = ", ".join(
                f"{column} = ${i}" for i, column in enumerate(ROOM_WRITE_COLUMNS, start=2)
            )
            values = [
                _encode(column, getattr(txn.room, column), ROOM_JSON_COLUMNS)
                for column in ROOM_WRITE_COLUMNS
            ]
            await conn.execute(
                f"""
                UPDATE rooms SET {assignments}, version = version + 1, updated_at = NOW()
                WHERE id = $1
                """,
                _as_uuid(txn.room.id),
                *values,
            )
            txn.room.version += 1

        for player in changes.inserted_players:
            columns = ("id", "room_id") + PLAYER_COLUMNS
            placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
            values = [
                _encode(column, self._player_value(player, column), PLAYER_JSON_COLUMNS)
                for column in PLAYER_COLUMNS
            ]
            await conn.execute(
                f"INSERT INTO players ({', '.join(columns)}) VALUES ({placeholders})",
                _as_uuid(player.id),
                _as_uuid(player.room_id),
                *values,
            )

        for player in changes.updated_players:
            assignments = ", ".join(
                f"{column} = ${i}" for i, column in enumerate(PLAYER_COLUMNS, start=2)
            )
            values = [
                _encode(column, self._player_value(player, column), PLAYER_JSON_COLUMNS)
                for column in PLAYER_COLUMNS
            ]
            await conn.execute(
                f"UPDATE players SET {assignments} WHERE id = $1",
                _as_uuid(player.id),
                *values,
            )

        for record in changes.records:
            if isinstance(record, Vote):
                await conn.execute(
                    """
                    INSERT INTO votes (id, room_id, player_id, card_index, card_text, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    _as_uuid(record.id),
                    _as_uuid(record.room_id),
                    _as_uuid(record.player_id),
                    record.card_index,
                    record.card_text,
                    record.created_at,
                )
            elif isinstance(record, Gift):
                await conn.execute(
                    """
                    INSERT INTO gifts (id, room_id, from_player_id, to_player_id, message, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    _as_uuid(record.id),
                    _as_uuid(record.room_id),
                    _as_uuid(record.from_player_id),
                    _as_uuid(record.to_player_id),
                    record.message,
                    record.created_at,
                )
            else:
                await conn.execute(
                    """
                    INSERT INTO exchange_actions (
                        id, room_id, player_id, player_name, action_type,
                        hand_card, board_card, turn_number, created_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    _as_uuid(record.id),
                    _as_uuid(record.room_id),
                    _as_uuid(record.player_id),
                    record.player_name,
                    record.action_type.value,
                    record.hand_card,
                    record.board_card,
                    record.turn_number,
                    record.created_at,
                )

    @staticmethod
    def _player_value(player: Player, column: str) -> Any:
        if column == "final_gifts_received":
            return [g.to_dict() for g in player.final_gifts_received]
        return getattr(player, column)

    async def update_room_if(
        self,
        room_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        check_room_fields(expected, changes)
        rid = _as_uuid(room_id)
        if rid is None:
            return False

        params: list[Any] = [rid]
        assignments = []
        for column, value in changes.items():
            params.append(_encode(column, value, ROOM_JSON_COLUMNS))
            assignments.append(f"{column} = ${len(params)}")
        conditions = ["id = $1"]
        for column, value in expected.items():
            if value is None:
                conditions.append(f"{column} IS NULL")
                continue
            params.append(_encode(column, value, ROOM_JSON_COLUMNS))
            conditions.append(f"{column} = ${len(params)}")

        async with self._connection() as conn:
            result = await conn.execute(
                f"""
                UPDATE rooms SET {', '.join(assignments)}, version = version + 1, updated_at = NOW()
                WHERE {' AND '.join(conditions)}
                """,
                *params,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        updated = result.split()[-1] != "0"
        if updated:
            await self._notify(room_id, Table.ROOMS, ChangeKind.UPDATE)
        return updated

    # -------------------------------------------------------------------------
    # Votes and resonance
    # -------------------------------------------------------------------------

    async def list_votes(self, room_id: str) -> list[Vote]:
        rid = _as_uuid(room_id)
        if rid is None:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM votes WHERE room_id = $1 ORDER BY created_at", rid
            )
        return [Vote.from_dict(dict(row)) for row in rows]

    async def upsert_resonance(self, share: ResonanceShare) -> ResonanceShare:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO resonance_shares (id, room_id, player_id, phase, percentage, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (room_id, player_id, phase)
                DO UPDATE SET percentage = EXCLUDED.percentage
                RETURNING *, (xmax = 0) AS inserted
                """,
                _as_uuid(share.id),
                _as_uuid(share.room_id),
                _as_uuid(share.player_id),
                share.phase.value,
                share.percentage,
                share.created_at,
            )
        kind = ChangeKind.INSERT if row["inserted"] else ChangeKind.UPDATE
        await self._notify(share.room_id, Table.RESONANCE_SHARES, kind)
        return ResonanceShare.from_dict(dict(row))

    async def list_resonance(
        self,
        room_id: str,
        phase: Optional[ResonancePhase] = None,
    ) -> list[ResonanceShare]:
        rid = _as_uuid(room_id)
        if rid is None:
            return []
        async with self._connection() as conn:
            if phase is not None:
                rows = await conn.fetch(
                    """
                    SELECT * FROM resonance_shares WHERE room_id = $1 AND phase = $2
                    ORDER BY created_at
                    """,
                    rid,
                    phase.value,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM resonance_shares WHERE room_id = $1 ORDER BY created_at",
                    rid,
                )
        return [ResonanceShare.from_dict(dict(row)) for row in rows]

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    async def list_gifts(self, room_id: str) -> list[Gift]:
        rid = _as_uuid(room_id)
        if rid is None:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM gifts WHERE room_id = $1 ORDER BY created_at", rid
            )
        return [Gift.from_dict(dict(row)) for row in rows]

    async def list_exchange_actions(self, room_id: str) -> list[ExchangeAction]:
        rid = _as_uuid(room_id)
        if rid is None:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM exchange_actions WHERE room_id = $1 ORDER BY created_at",
                rid,
            )
        return [ExchangeAction.from_dict(dict(row)) for row in rows]
