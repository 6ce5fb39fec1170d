"""
Turn/phase state machine for Value Cards.

Pure functions over Room and Player entities. The legal status graph:

    waiting -> checkin -> voting -> voting_result -> resonance_initial
        -> playing -> exchange -> playing -> resonance_final
        -> gift_exchange -> completed

Normal play cycles ``current_turn_player`` 0 -> 1 -> 2 -> 3 -> 0 and bumps
``round_number`` on every wrap. The first wrap into round 3 starts the
exchange round; the wrap into round 5 after the exchange starts the final
phase. The final phase walks every seat through sharing -> gifting ->
reflection.

Nothing here does I/O. Callers apply these rules inside a locked room
transaction or express them as conditional updates.
"""

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional

from constants import EXCHANGE_ROUND, FINAL_ROUND, SEAT_COUNT
from errors import (
    AlreadyShared,
    InvalidChoice,
    InvalidTransition,
    NotYourTurn,
    WrongPhase,
    WrongStep,
)
from models.entities import FinalPhaseStep, Player, Room, RoomStatus


TRANSITIONS: dict[RoomStatus, frozenset[RoomStatus]] = {
    RoomStatus.WAITING: frozenset({RoomStatus.CHECKIN}),
    RoomStatus.CHECKIN: frozenset({RoomStatus.VOTING}),
    RoomStatus.VOTING: frozenset({RoomStatus.VOTING_RESULT}),
    RoomStatus.VOTING_RESULT: frozenset({RoomStatus.RESONANCE_INITIAL}),
    RoomStatus.RESONANCE_INITIAL: frozenset({RoomStatus.PLAYING}),
    RoomStatus.PLAYING: frozenset({RoomStatus.EXCHANGE, RoomStatus.RESONANCE_FINAL}),
    RoomStatus.EXCHANGE: frozenset({RoomStatus.PLAYING}),
    RoomStatus.RESONANCE_FINAL: frozenset({RoomStatus.GIFT_EXCHANGE, RoomStatus.COMPLETED}),
    RoomStatus.GIFT_EXCHANGE: frozenset({RoomStatus.COMPLETED}),
    RoomStatus.COMPLETED: frozenset(),
}


def can_transition(current: RoomStatus, target: RoomStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the status graph."""
    return target in TRANSITIONS.get(current, frozenset())


def require_transition(current: RoomStatus, target: RoomStatus) -> None:
    """
    Raises:
        InvalidTransition: If ``current -> target`` is not a legal edge.
    """
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move room from {current.value} to {target.value}")


def require_status(room: Room, *allowed: RoomStatus) -> None:
    """
    Raises:
        WrongPhase: If the room is not in one of ``allowed``.
    """
    if room.status not in allowed:
        names = ", ".join(s.value for s in allowed)
        raise WrongPhase(f"Room is in {room.status.value}, expected {names}")


# =============================================================================
# Seats and readiness
# =============================================================================

def active_players(players: Iterable[Player]) -> list[Player]:
    """Seated players ordered by seat number."""
    return sorted((p for p in players if p.is_active), key=lambda p: p.player_number)


def player_at_seat(players: Iterable[Player], seat: int) -> Optional[Player]:
    for p in players:
        if p.is_active and p.player_number == seat:
            return p
    return None


def room_is_full(players: Iterable[Player]) -> bool:
    return len(active_players(players)) >= SEAT_COUNT


def all_checked_in(players: Iterable[Player]) -> bool:
    active = active_players(players)
    return bool(active) and all(p.has_checked_in for p in active)


def all_ready(players: Iterable[Player]) -> bool:
    active = active_players(players)
    return bool(active) and all(p.ready_for_next_phase for p in active)


def resonance_quorum(active_count: int, ratio: float) -> int:
    """Submissions the leader needs before forcing the resonance phase on."""
    return max(1, math.ceil(active_count * ratio))


# =============================================================================
# Normal play
# =============================================================================

@dataclass
class TurnAdvance:
    """Where the room goes after a discard."""
    next_player: int
    round_number: int
    status: RoomStatus

    @property
    def enters_exchange(self) -> bool:
        return self.status == RoomStatus.EXCHANGE

    @property
    def enters_final(self) -> bool:
        return self.status == RoomStatus.RESONANCE_FINAL


def advance_after_discard(room: Room) -> TurnAdvance:
    """
    Compute the next turn, round and status after the turn seat discards.

    Args:
        room: Room as it was before the discard.

    Returns:
        TurnAdvance describing the new turn counters and status.
    """
    next_player = (room.current_turn_player + 1) % SEAT_COUNT
    round_number = room.round_number + 1 if next_player == 0 else room.round_number
    status = RoomStatus.PLAYING

    if next_player == 0:
        if round_number == EXCHANGE_ROUND and not room.exchange_completed:
            status = RoomStatus.EXCHANGE
        elif round_number >= FINAL_ROUND and room.exchange_completed:
            status = RoomStatus.RESONANCE_FINAL

    return TurnAdvance(next_player=next_player, round_number=round_number, status=status)


def apply_turn_advance(room: Room, advance: TurnAdvance) -> None:
    """Write a TurnAdvance onto the room, resetting phase counters on entry."""
    if advance.status != room.status:
        require_transition(room.status, advance.status)
    room.current_turn_player = advance.next_player
    room.round_number = advance.round_number
    room.status = advance.status
    if advance.enters_exchange:
        room.current_exchange_turn = 0
    elif advance.enters_final:
        room.final_phase_turn = 0
        room.final_phase_step = FinalPhaseStep.SHARING


def require_turn(room: Room, player: Player) -> None:
    """
    Raises:
        NotYourTurn: If ``player`` is not the normal-play turn seat.
    """
    if player.player_number != room.current_turn_player:
        raise NotYourTurn(
            f"It is seat {room.current_turn_player}'s turn, not seat {player.player_number}"
        )


# =============================================================================
# Exchange round
# =============================================================================

def require_exchange_turn(room: Room, player: Player) -> None:
    """
    Raises:
        WrongPhase: If the room is not in the exchange round.
        NotYourTurn: If ``player`` is not the exchange turn seat.
    """
    require_status(room, RoomStatus.EXCHANGE)
    if player.player_number != room.current_exchange_turn:
        raise NotYourTurn(
            f"It is seat {room.current_exchange_turn}'s exchange turn, not seat {player.player_number}"
        )


def advance_exchange_turn(room: Room, active_count: int) -> bool:
    """
    Move the exchange turn to the next seat.

    Once every seat has acted the counter rests at ``active_count``, which
    tells clients to run the transition back to normal play.

    Returns:
        True if the exchange round is now finished.
    """
    room.current_exchange_turn = min(room.current_exchange_turn + 1, active_count)
    return room.current_exchange_turn >= active_count


def exchange_round_done(room: Room, active_count: int) -> bool:
    return room.status == RoomStatus.EXCHANGE and room.current_exchange_turn >= active_count


# =============================================================================
# Voting
# =============================================================================

class VotingOutcome(str, Enum):
    """Why a vote was resolved."""

    UNANIMOUS = "unanimous"
    ALL_VOTED = "all_voted"
    TIMEOUT = "timeout"


def plurality_winner(indices: Iterable[int], option_count: int) -> int:
    """
    Pick the most-voted option, lowest index on ties.

    With no votes, or a winner outside ``[0, option_count)``, the first
    option wins.
    """
    counts = Counter(indices)
    if not counts:
        return 0
    best = max(counts.values())
    winner = min(index for index, count in counts.items() if count == best)
    if winner < 0 or winner >= option_count:
        return 0
    return winner


def voting_exit(
    indices: list[int],
    active_count: int,
    deadline_passed: bool,
) -> Optional[VotingOutcome]:
    """
    Decide whether the vote may be resolved now.

    Args:
        indices: Card indices cast so far.
        active_count: Number of seated players.
        deadline_passed: Whether the shared countdown has expired.

    Returns:
        The reason the vote can resolve, or None to keep waiting.
    """
    if active_count > 0 and len(indices) >= active_count:
        if len(set(indices)) == 1:
            return VotingOutcome.UNANIMOUS
        return VotingOutcome.ALL_VOTED
    if deadline_passed:
        return VotingOutcome.TIMEOUT
    return None


def voting_deadline(started_at: datetime, duration_seconds: float) -> datetime:
    return started_at + timedelta(seconds=duration_seconds)


def voting_seconds_remaining(
    started_at: Optional[datetime],
    duration_seconds: float,
    now: Optional[datetime] = None,
) -> float:
    """Seconds left on the shared countdown (full duration if not started)."""
    if started_at is None:
        return float(duration_seconds)
    now = now or datetime.now(timezone.utc)
    remaining = (voting_deadline(started_at, duration_seconds) - now).total_seconds()
    return max(0.0, remaining)


# =============================================================================
# Final phase
# =============================================================================

def require_percentage(percentage: int) -> None:
    if not isinstance(percentage, int) or not 0 <= percentage <= 100:
        raise InvalidChoice(f"Percentage must be between 0 and 100 (got {percentage})")


def require_final_turn(room: Room, player: Player, step: FinalPhaseStep) -> None:
    """
    Raises:
        WrongPhase: If the room is not in the final phase.
        WrongStep: If the final phase is not at ``step``.
        NotYourTurn: If ``player`` is not the final-phase turn seat.
    """
    if not room.status.is_final_phase:
        raise WrongPhase(f"Room is in {room.status.value}, not the final phase")
    if room.final_phase_step != step:
        raise WrongStep(
            f"Final phase is at {room.final_phase_step.value}, expected {step.value}"
        )
    if player.player_number != room.final_phase_turn:
        raise NotYourTurn(f"It is seat {room.final_phase_turn}'s final turn")


def apply_final_resonance(room: Room, player: Player, percentage: int, text: str) -> None:
    """The turn seat shares its final resonance; the step moves to gifting."""
    require_final_turn(room, player, FinalPhaseStep.SHARING)
    if player.has_shared_final_resonance:
        raise AlreadyShared("Final resonance already shared")
    require_percentage(percentage)

    player.final_resonance_text = text or ""
    player.final_resonance_percentage = percentage
    player.has_shared_final_resonance = True
    room.final_phase_step = FinalPhaseStep.GIFTING


def final_gifts_complete(players: Iterable[Player], turn_seat: int) -> bool:
    """Every other seated player has given the turn seat a gift."""
    others = [p for p in active_players(players) if p.player_number != turn_seat]
    return bool(others) and all(p.has_given_final_gift for p in others)


def next_final_turn(turn: int) -> Optional[int]:
    """Next seat in the final phase, or None after the last seat."""
    nxt = turn + 1
    return nxt if nxt < SEAT_COUNT else None


def apply_final_reflection(
    room: Room,
    player: Player,
    players: list[Player],
    text: str,
) -> bool:
    """
    The turn seat records its reflection and hands the floor on.

    After the last seat the room completes instead of cycling.

    Returns:
        True if the game is now complete.
    """
    require_final_turn(room, player, FinalPhaseStep.REFLECTION)
    player.final_reflection_text = text or ""

    nxt = next_final_turn(room.final_phase_turn)
    room.final_phase_step = FinalPhaseStep.SHARING
    if nxt is None:
        require_transition(room.status, RoomStatus.COMPLETED)
        room.status = RoomStatus.COMPLETED
        return True

    room.final_phase_turn = nxt
    for p in players:
        p.has_given_final_gift = False
    return False
