"""
Entity definitions for Value Cards rooms.

Six collections make up a game: Room, Player, Vote, ResonanceShare, Gift
and ExchangeAction. Room and Player are mutable shared state and are only
changed inside a room transaction; the other four are append/upsert logs.

All entities serialize to plain dicts (``to_dict``) for the HTTP surface
and rebuild from plain dicts (``from_dict``) for storage round trips.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from constants import SEAT_COUNT, SPECTATOR_SEAT


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# Enums
# =============================================================================

class RoomStatus(str, Enum):
    """
    Room lifecycle, in the order a game normally moves through it.

    ``playing`` is visited twice, before and after the exchange round.
    """

    WAITING = "waiting"
    CHECKIN = "checkin"
    VOTING = "voting"
    VOTING_RESULT = "voting_result"
    RESONANCE_INITIAL = "resonance_initial"
    PLAYING = "playing"
    EXCHANGE = "exchange"
    RESONANCE_FINAL = "resonance_final"
    GIFT_EXCHANGE = "gift_exchange"
    COMPLETED = "completed"

    @classmethod
    def _missing_(cls, value):
        # Legacy spelling of the terminal state
        if value == "complete":
            return cls.COMPLETED
        return None

    @property
    def is_terminal(self) -> bool:
        return self is RoomStatus.COMPLETED

    @property
    def is_final_phase(self) -> bool:
        return self in (RoomStatus.RESONANCE_FINAL, RoomStatus.GIFT_EXCHANGE)


class FinalPhaseStep(str, Enum):
    """Per-seat steps of the final phase, in order."""

    SHARING = "sharing"
    GIFTING = "gifting"
    REFLECTION = "reflection"


class PlayerRole(str, Enum):
    PLAYER = "player"
    SPECTATOR = "spectator"


class ResonancePhase(str, Enum):
    INITIAL = "initial"
    FINAL = "final"


class ExchangeActionType(str, Enum):
    EXCHANGE = "exchange"
    SKIP = "skip"


# =============================================================================
# Room and Player (shared mutable state)
# =============================================================================

@dataclass
class Room:
    """
    One game instance.

    Attributes:
        id: Opaque identifier.
        code: Short upper-case join code.
        status: Current lifecycle state.
        purpose_card: Theme chosen by the vote, None until resolved.
        card_options: Theme candidates offered in the vote.
        voting_started_at: Shared countdown anchor, set once per vote.
        current_turn_player: Seat to act in normal play.
        current_exchange_turn: Seat to act in the exchange round. Equals the
            number of active seats once every seat has acted.
        final_phase_turn: Seat being celebrated in the final phase.
        final_phase_step: Step of that seat's final turn.
        round_number: Completed laps of normal play.
        exchange_completed: Set once the exchange round is over.
        deck: Cards left to draw, front first.
        discard_pile: Cards on the shared board.
        version: Incremented on every committed write.
    """

    code: str
    id: str = field(default_factory=_new_id)
    status: RoomStatus = RoomStatus.WAITING
    purpose_card: Optional[str] = None
    card_options: list[str] = field(default_factory=list)
    voting_started_at: Optional[datetime] = None
    current_turn_player: int = 0
    current_exchange_turn: int = 0
    final_phase_turn: int = 0
    final_phase_step: FinalPhaseStep = FinalPhaseStep.SHARING
    round_number: int = 0
    exchange_completed: bool = False
    deck: list[str] = field(default_factory=list)
    discard_pile: list[str] = field(default_factory=list)
    version: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "status": self.status.value,
            "purpose_card": self.purpose_card,
            "card_options": list(self.card_options),
            "voting_started_at": _iso(self.voting_started_at),
            "current_turn_player": self.current_turn_player,
            "current_exchange_turn": self.current_exchange_turn,
            "final_phase_turn": self.final_phase_turn,
            "final_phase_step": self.final_phase_step.value,
            "round_number": self.round_number,
            "exchange_completed": self.exchange_completed,
            "deck": list(self.deck),
            "discard_pile": list(self.discard_pile),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Room":
        return cls(
            id=str(d["id"]),
            code=d["code"],
            status=RoomStatus(d.get("status", "waiting")),
            purpose_card=d.get("purpose_card"),
            card_options=list(d.get("card_options") or []),
            voting_started_at=_parse_dt(d.get("voting_started_at")),
            current_turn_player=d.get("current_turn_player", 0),
            current_exchange_turn=d.get("current_exchange_turn", 0),
            final_phase_turn=d.get("final_phase_turn", 0),
            final_phase_step=FinalPhaseStep(d.get("final_phase_step") or "sharing"),
            round_number=d.get("round_number", 0),
            exchange_completed=d.get("exchange_completed", False),
            deck=list(d.get("deck") or []),
            discard_pile=list(d.get("discard_pile") or []),
            version=d.get("version", 0),
            created_at=_parse_dt(d.get("created_at")) or _now(),
            updated_at=_parse_dt(d.get("updated_at")) or _now(),
        )


@dataclass
class FinalGift:
    """A message (and optionally a card) received during the final phase."""

    from_player_id: str
    from_player_name: str
    message: str
    card: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "from_player_id": self.from_player_id,
            "from_player_name": self.from_player_name,
            "message": self.message,
        }
        if self.card is not None:
            d["card"] = self.card
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "FinalGift":
        return cls(
            from_player_id=str(d["from_player_id"]),
            from_player_name=d.get("from_player_name", ""),
            message=d.get("message", ""),
            card=d.get("card"),
        )


@dataclass
class Player:
    """A participant in a room: one of the four seats, or a spectator."""

    room_id: str
    player_number: int
    name: str
    id: str = field(default_factory=_new_id)
    preferred_name: Optional[str] = None
    hand: list[str] = field(default_factory=list)
    role: PlayerRole = PlayerRole.PLAYER
    is_connected: bool = True
    has_checked_in: bool = False
    ready_for_next_phase: bool = False

    # Final phase
    has_shared_final_resonance: bool = False
    final_resonance_text: str = ""
    final_resonance_percentage: Optional[int] = None
    final_gifts_received: list[FinalGift] = field(default_factory=list)
    final_reflection_text: Optional[str] = None
    has_given_final_gift: bool = False

    created_at: datetime = field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        """Seated player (not a spectator)."""
        return self.role == PlayerRole.PLAYER and 0 <= self.player_number < SEAT_COUNT

    @property
    def display_name(self) -> str:
        return self.preferred_name or self.name

    @classmethod
    def spectator(cls, room_id: str, name: str) -> "Player":
        return cls(
            room_id=room_id,
            player_number=SPECTATOR_SEAT,
            name=name,
            role=PlayerRole.SPECTATOR,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "player_number": self.player_number,
            "name": self.name,
            "preferred_name": self.preferred_name,
            "hand": list(self.hand),
            "role": self.role.value,
            "is_connected": self.is_connected,
            "has_checked_in": self.has_checked_in,
            "ready_for_next_phase": self.ready_for_next_phase,
            "has_shared_final_resonance": self.has_shared_final_resonance,
            "final_resonance_text": self.final_resonance_text,
            "final_resonance_percentage": self.final_resonance_percentage,
            "final_gifts_received": [g.to_dict() for g in self.final_gifts_received],
            "final_reflection_text": self.final_reflection_text,
            "has_given_final_gift": self.has_given_final_gift,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Player":
        return cls(
            id=str(d["id"]),
            room_id=str(d["room_id"]),
            player_number=d["player_number"],
            name=d["name"],
            preferred_name=d.get("preferred_name"),
            hand=list(d.get("hand") or []),
            role=PlayerRole(d.get("role") or "player"),
            is_connected=d.get("is_connected", True),
            has_checked_in=d.get("has_checked_in", False),
            ready_for_next_phase=d.get("ready_for_next_phase", False),
            has_shared_final_resonance=d.get("has_shared_final_resonance", False),
            final_resonance_text=d.get("final_resonance_text") or "",
            final_resonance_percentage=d.get("final_resonance_percentage"),
            final_gifts_received=[
                FinalGift.from_dict(g) for g in d.get("final_gifts_received") or []
            ],
            final_reflection_text=d.get("final_reflection_text"),
            has_given_final_gift=d.get("has_given_final_gift", False),
            created_at=_parse_dt(d.get("created_at")) or _now(),
        )


# =============================================================================
# Log entities
# =============================================================================

@dataclass
class Vote:
    """One theme vote. Unique per (room, player)."""

    room_id: str
    player_id: str
    card_index: int
    card_text: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "player_id": self.player_id,
            "card_index": self.card_index,
            "card_text": self.card_text,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Vote":
        return cls(
            id=str(d["id"]),
            room_id=str(d["room_id"]),
            player_id=str(d["player_id"]),
            card_index=d["card_index"],
            card_text=d.get("card_text") or "",
            created_at=_parse_dt(d.get("created_at")) or _now(),
        )


@dataclass
class ResonanceShare:
    """A resonance percentage. Unique per (room, player, phase); resubmission overwrites."""

    room_id: str
    player_id: str
    phase: ResonancePhase
    percentage: int
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "player_id": self.player_id,
            "phase": self.phase.value,
            "percentage": self.percentage,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ResonanceShare":
        return cls(
            id=str(d["id"]),
            room_id=str(d["room_id"]),
            player_id=str(d["player_id"]),
            phase=ResonancePhase(d["phase"]),
            percentage=d["percentage"],
            created_at=_parse_dt(d.get("created_at")) or _now(),
        )


@dataclass
class Gift:
    """Append-only record of a final-phase message gift."""

    room_id: str
    from_player_id: str
    to_player_id: str
    message: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "from_player_id": self.from_player_id,
            "to_player_id": self.to_player_id,
            "message": self.message,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Gift":
        return cls(
            id=str(d["id"]),
            room_id=str(d["room_id"]),
            from_player_id=str(d["from_player_id"]),
            to_player_id=str(d["to_player_id"]),
            message=d["message"],
            created_at=_parse_dt(d.get("created_at")) or _now(),
        )


@dataclass
class ExchangeAction:
    """Append-only record of one exchange-round turn."""

    room_id: str
    player_id: str
    player_name: str
    action_type: ExchangeActionType
    turn_number: int
    hand_card: Optional[str] = None
    board_card: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "player_id": self.player_id,
            "player_name": self.player_name,
            "action_type": self.action_type.value,
            "hand_card": self.hand_card,
            "board_card": self.board_card,
            "turn_number": self.turn_number,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ExchangeAction":
        return cls(
            id=str(d["id"]),
            room_id=str(d["room_id"]),
            player_id=str(d["player_id"]),
            player_name=d["player_name"],
            action_type=ExchangeActionType(d["action_type"]),
            hand_card=d.get("hand_card"),
            board_card=d.get("board_card"),
            turn_number=d["turn_number"],
            created_at=_parse_dt(d.get("created_at")) or _now(),
        )


# =============================================================================
# Operation results
# =============================================================================

@dataclass
class ActionResult:
    """
    Structured outcome of a game operation.

    Attributes:
        success: Whether the operation took effect.
        message: Human-readable outcome.
        code: Machine code of the rejection (None on success).
        retryable: True for store/transport failures where retrying the
            same action is sensible.
        data: Operation-specific payload.
    """

    success: bool
    message: str = ""
    code: Optional[str] = None
    retryable: bool = False
    data: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **data) -> "ActionResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, code: str, message: str, retryable: bool = False, **data) -> "ActionResult":
        return cls(success=False, message=message, code=code, retryable=retryable, data=data)

    def to_dict(self) -> dict:
        result = {"success": self.success, "message": self.message}
        if self.code:
            result["code"] = self.code
        if not self.success:
            result["retryable"] = self.retryable
        result.update(self.data)
        return result
