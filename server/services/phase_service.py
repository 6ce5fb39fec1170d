"""
Phase operations for Value Cards rooms.

Covers everything outside the card operations: creating and joining
rooms, check-in, voting, resonance sharing, ending the exchange round and
the final-phase sharing/reflection steps.

Every status change is conditional on the status the caller expects the
room to be in, either as a compare-and-swap (update_room_if) or as a
re-check inside a room transaction. Losing that race is reported as
success with ``transitioned=False``: another client already did the work.
"""

import logging
import random
import string
from datetime import datetime, timezone
from typing import Callable, Optional

from cards import deal_initial_hands, shuffle_deck
from constants import LEADER_SEAT, SEAT_COUNT, THEME_CARDS
from errors import (
    AlreadyVoted,
    ConcurrencyError,
    InvalidChoice,
    NotAPlayer,
    NotYourTurn,
    PlayerNotFound,
    RoomNotFound,
    StoreError,
    WrongPhase,
)
from models.entities import (
    ActionResult,
    Player,
    ResonancePhase,
    ResonanceShare,
    Room,
    RoomStatus,
    Vote,
)
from phases import (
    active_players,
    all_checked_in,
    all_ready,
    apply_final_reflection,
    apply_final_resonance,
    plurality_winner,
    require_percentage,
    require_status,
    resonance_quorum,
    room_is_full,
    voting_deadline,
    voting_exit,
)
from services.actions import STORE_ERROR, structured_action
from stores.entity_store import EntityStore

logger = logging.getLogger(__name__)

# Status each resonance phase is collected in, and where it leads once everyone is ready
RESONANCE_TRANSITIONS = {
    ResonancePhase.INITIAL: (RoomStatus.RESONANCE_INITIAL, RoomStatus.PLAYING),
    ResonancePhase.FINAL: (RoomStatus.RESONANCE_FINAL, RoomStatus.GIFT_EXCHANGE),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resonance_phase_for(status: RoomStatus) -> ResonancePhase:
    for phase, (collect_status, _) in RESONANCE_TRANSITIONS.items():
        if collect_status == status:
            return phase
    raise WrongPhase(f"Room is in {status.value}, not a resonance phase")


class PhaseService:
    """Room lifecycle and phase transitions."""

    def __init__(
        self,
        store: EntityStore,
        voting_duration: float = 180,
        quorum_ratio: float = 0.75,
        room_code_length: int = 4,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            store: Entity store holding the rooms.
            voting_duration: Length of the shared vote countdown in seconds.
            quorum_ratio: Share of seats that must submit resonance before
                the leader may force the phase on.
            room_code_length: Letters in a join code.
            clock: Source of "now" (UTC), replaceable in tests.
            rng: Random source for decks and room codes.
        """
        self.store = store
        self.voting_duration = voting_duration
        self.quorum_ratio = quorum_ratio
        self.room_code_length = room_code_length
        self.clock = clock
        self.rng = rng or random.Random()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _room(self, room_id: str) -> Room:
        room = await self.store.get_room(room_id)
        if room is None:
            raise RoomNotFound(f"Room {room_id} not found")
        return room

    async def _seated_player(self, room_id: str, player_id: str) -> Player:
        player = await self.store.get_player(player_id)
        if player is None or player.room_id != room_id:
            raise PlayerNotFound(f"Player {player_id} not found in room {room_id}")
        if not player.is_active:
            raise NotAPlayer("Spectators cannot take part in this step")
        return player

    async def _transition(
        self,
        room_id: str,
        expected: dict,
        changes: dict,
        label: str,
    ) -> ActionResult:
        """Run a conditional update and report race loss as success."""
        written = await self.store.update_room_if(room_id, expected, changes)
        if written:
            logger.info(f"Room {room_id[:8]}: {label}")
        else:
            logger.debug(f"Room {room_id[:8]}: {label} already done by another client")
        return ActionResult.ok(label, transitioned=written)

    def _generate_code(self) -> str:
        return "".join(self.rng.choices(string.ascii_uppercase, k=self.room_code_length))

    # -------------------------------------------------------------------------
    # Rooms and seats
    # -------------------------------------------------------------------------

    async def create_room(self, name: str, max_attempts: int = 100) -> ActionResult:
        """
        Create a room with a fresh shuffled deck; the creator takes seat 0.

        Not wrapped by structured_action because there is no room id yet.
        """
        name = (name or "").strip()
        if not name:
            return ActionResult.fail(InvalidChoice.code, "Name is required")
        try:
            for _ in range(max_attempts):
                room = Room(code=self._generate_code(), deck=shuffle_deck(self.rng))
                try:
                    room = await self.store.create_room(room)
                    break
                except ConcurrencyError:
                    continue
            else:
                raise StoreError("Could not generate unique room code")

            async with self.store.transaction(room.id) as txn:
                player = txn.add_player(
                    Player(room_id=room.id, player_number=LEADER_SEAT, name=name)
                )
        except StoreError as e:
            logger.error(f"create_room failed: {e}")
            return ActionResult.fail(STORE_ERROR, "Could not create room", retryable=True)

        logger.info(f"Room {room.code} created by {name}")
        return ActionResult.ok(
            "Room created",
            room_id=room.id,
            room_code=room.code,
            player_id=player.id,
            player_number=player.player_number,
        )

    async def join_room(self, code: str, name: str) -> ActionResult:
        """
        Join by room code: lowest free seat, or spectator when full or started.
        """
        name = (name or "").strip()
        if not name:
            return ActionResult.fail(InvalidChoice.code, "Name is required")
        try:
            room = await self.store.get_room_by_code((code or "").strip())
        except StoreError as e:
            logger.error(f"join_room lookup failed: {e}")
            return ActionResult.fail(STORE_ERROR, "Could not join room", retryable=True)
        if room is None:
            return ActionResult.fail(RoomNotFound.code, f"No room with code {code}")
        return await self._join(room.id, name)

    @structured_action("join")
    async def _join(self, room_id: str, name: str) -> ActionResult:
        async with self.store.transaction(room_id) as txn:
            taken = {p.player_number for p in active_players(txn.players)}
            free = [seat for seat in range(SEAT_COUNT) if seat not in taken]
            if free and txn.room.status == RoomStatus.WAITING:
                player = Player(room_id=room_id, player_number=free[0], name=name)
            else:
                player = Player.spectator(room_id, name)
            txn.add_player(player)

        logger.info(f"{name} joined room {room_id[:8]} as {player.role.value} {player.player_number}")
        return ActionResult.ok(
            "Joined room",
            room_id=room_id,
            player_id=player.id,
            player_number=player.player_number,
            role=player.role.value,
        )

    @structured_action("set_connected")
    async def set_connected(self, room_id: str, player_id: str, connected: bool) -> ActionResult:
        async with self.store.transaction(room_id) as txn:
            txn.player(player_id).is_connected = connected
        return ActionResult.ok("Connection updated", is_connected=connected)

    # -------------------------------------------------------------------------
    # Check-in
    # -------------------------------------------------------------------------

    @structured_action("start_checkin")
    async def start_checkin(self, room_id: str) -> ActionResult:
        """waiting -> checkin, once all four seats are taken."""
        players = await self.store.list_players(room_id)
        if not room_is_full(players):
            raise WrongPhase("Waiting for all seats to fill")
        return await self._transition(
            room_id,
            {"status": RoomStatus.WAITING},
            {"status": RoomStatus.CHECKIN},
            "check-in started",
        )

    @structured_action("check_in")
    async def check_in(self, room_id: str, player_id: str, preferred_name: str = "") -> ActionResult:
        async with self.store.transaction(room_id) as txn:
            require_status(txn.room, RoomStatus.CHECKIN)
            player = txn.player(player_id)
            if not player.is_active:
                raise NotAPlayer("Spectators do not check in")
            player.preferred_name = (preferred_name or "").strip() or None
            player.has_checked_in = True
        return ActionResult.ok("Checked in", preferred_name=player.display_name)

    @structured_action("start_voting")
    async def start_voting(self, room_id: str) -> ActionResult:
        """checkin -> voting, once every seat has checked in."""
        players = await self.store.list_players(room_id)
        if not all_checked_in(players):
            raise WrongPhase("Waiting for everyone to check in")
        return await self._transition(
            room_id,
            {"status": RoomStatus.CHECKIN},
            {
                "status": RoomStatus.VOTING,
                "card_options": list(THEME_CARDS),
                "voting_started_at": None,
            },
            "voting started",
        )

    # -------------------------------------------------------------------------
    # Voting
    # -------------------------------------------------------------------------

    @structured_action("mark_voting_started")
    async def mark_voting_started(self, room_id: str) -> ActionResult:
        """Anchor the shared countdown. Only the first caller writes."""
        now = self.clock()
        written = await self.store.update_room_if(
            room_id,
            {"status": RoomStatus.VOTING, "voting_started_at": None},
            {"voting_started_at": now},
        )
        room = await self._room(room_id)
        return ActionResult.ok(
            "Countdown anchored",
            transitioned=written,
            voting_started_at=room.voting_started_at.isoformat() if room.voting_started_at else None,
        )

    @structured_action("cast_vote")
    async def cast_vote(self, room_id: str, player_id: str, card_index: int) -> ActionResult:
        """Record one vote, under the same lock that resolution takes."""
        async with self.store.transaction(room_id) as txn:
            room = txn.room
            require_status(room, RoomStatus.VOTING)
            player = txn.player(player_id)
            if not player.is_active:
                raise NotAPlayer("Spectators do not vote")
            if not 0 <= card_index < len(room.card_options):
                raise InvalidChoice(f"Option {card_index} does not exist")
            if any(v.player_id == player.id for v in txn.votes):
                raise AlreadyVoted("You have already voted")

            vote = txn.add_vote(Vote(
                room_id=room_id,
                player_id=player.id,
                card_index=card_index,
                card_text=room.card_options[card_index],
            ))
        return ActionResult.ok("Vote cast", card_index=card_index, card_text=vote.card_text)

    @structured_action("resolve_voting")
    async def resolve_voting(self, room_id: str, force_deadline: bool = False) -> ActionResult:
        """
        Resolve the vote if an exit condition holds, dealing the hands.

        Exit conditions: every seat voted (unanimous or split), or the
        countdown anchored at voting_started_at has expired. Any client may
        call this; the status re-check under the room lock lets exactly one
        caller deal. ``force_deadline`` treats the countdown as expired.
        """
        async with self.store.transaction(room_id) as txn:
            room = txn.room
            if room.status != RoomStatus.VOTING:
                return ActionResult.ok("Voting already resolved", resolved=False)

            deadline_passed = force_deadline or (
                room.voting_started_at is not None
                and self.clock() >= voting_deadline(room.voting_started_at, self.voting_duration)
            )
            seats = active_players(txn.players)
            indices = [v.card_index for v in txn.votes]
            outcome = voting_exit(indices, len(seats), deadline_passed)
            if outcome is None:
                return ActionResult.ok("Voting still open", resolved=False)

            winner = plurality_winner(indices, len(room.card_options))
            deal = deal_initial_hands(room.deck)
            for seat_player in seats:
                seat_player.hand = list(deal.hands[seat_player.player_number])
                seat_player.ready_for_next_phase = False

            room.purpose_card = room.card_options[winner] if room.card_options else None
            room.deck = deal.deck
            room.discard_pile = deal.discard_pile
            room.status = RoomStatus.VOTING_RESULT

        logger.info(f"Room {room_id[:8]} voted ({outcome.value}): option {winner}")
        return ActionResult.ok(
            "Voting resolved",
            resolved=True,
            outcome=outcome.value,
            winner_index=winner,
            purpose_card=room.purpose_card,
        )

    @structured_action("finish_voting_result")
    async def finish_voting_result(self, room_id: str) -> ActionResult:
        """voting_result -> resonance_initial after the display pause."""
        return await self._transition(
            room_id,
            {"status": RoomStatus.VOTING_RESULT},
            {"status": RoomStatus.RESONANCE_INITIAL},
            "resonance sharing started",
        )

    # -------------------------------------------------------------------------
    # Resonance
    # -------------------------------------------------------------------------

    @structured_action("submit_resonance")
    async def submit_resonance(
        self,
        room_id: str,
        player_id: str,
        percentage: int,
    ) -> ActionResult:
        """Record (or overwrite) this seat's resonance for the current phase."""
        room = await self._room(room_id)
        phase = _resonance_phase_for(room.status)
        player = await self._seated_player(room_id, player_id)
        require_percentage(percentage)

        share = await self.store.upsert_resonance(ResonanceShare(
            room_id=room_id,
            player_id=player.id,
            phase=phase,
            percentage=percentage,
        ))
        return ActionResult.ok("Resonance shared", phase=phase.value, percentage=share.percentage)

    @structured_action("mark_ready")
    async def mark_ready(self, room_id: str, player_id: str) -> ActionResult:
        """
        Mark this seat ready; the last seat to get ready moves the room on.
        """
        async with self.store.transaction(room_id) as txn:
            phase = _resonance_phase_for(txn.room.status)
            player = txn.player(player_id)
            if not player.is_active:
                raise NotAPlayer("Spectators are never waited on")
            player.ready_for_next_phase = True

            advanced = all_ready(txn.players)
            if advanced:
                self._leave_resonance(txn.room, txn.players, phase)

        return ActionResult.ok("Ready", transitioned=advanced)

    @structured_action("force_resonance_advance")
    async def force_resonance_advance(self, room_id: str, player_id: str) -> ActionResult:
        """
        Leader fast path: move on once a quorum of seats has submitted.
        """
        player = await self._seated_player(room_id, player_id)
        if player.player_number != LEADER_SEAT:
            raise NotYourTurn("Only seat 0 can move the group on")

        room = await self._room(room_id)
        phase = _resonance_phase_for(room.status)
        shares = await self.store.list_resonance(room_id, phase)

        async with self.store.transaction(room_id) as txn:
            if txn.room.status != room.status:
                return ActionResult.ok("Already moved on", transitioned=False)
            seats = active_players(txn.players)
            needed = resonance_quorum(len(seats), self.quorum_ratio)
            submitted = len({s.player_id for s in shares} & {p.id for p in seats})
            if submitted < needed:
                raise WrongPhase(f"{submitted} of {needed} needed resonance shares submitted")
            self._leave_resonance(txn.room, txn.players, phase)

        return ActionResult.ok("Moved on", transitioned=True, submitted=submitted)

    def _leave_resonance(self, room: Room, players: list[Player], phase: ResonancePhase) -> None:
        _, target = RESONANCE_TRANSITIONS[phase]
        for p in players:
            p.ready_for_next_phase = False
        room.status = target
        logger.info(f"Room {room.id[:8]}: {phase.value} resonance done, now {target.value}")

    # -------------------------------------------------------------------------
    # Exchange round
    # -------------------------------------------------------------------------

    @structured_action("finish_exchange")
    async def finish_exchange(self, room_id: str) -> ActionResult:
        """exchange -> playing, once every seat has taken its exchange turn."""
        players = await self.store.list_players(room_id)
        seat_count = len(active_players(players))
        return await self._transition(
            room_id,
            {"status": RoomStatus.EXCHANGE, "current_exchange_turn": seat_count},
            {
                "status": RoomStatus.PLAYING,
                "current_exchange_turn": 0,
                "current_turn_player": 0,
                "exchange_completed": True,
            },
            "exchange round finished",
        )

    # -------------------------------------------------------------------------
    # Final phase
    # -------------------------------------------------------------------------

    @structured_action("share_final_resonance")
    async def share_final_resonance(
        self,
        room_id: str,
        player_id: str,
        percentage: int = 50,
        text: str = "",
    ) -> ActionResult:
        """The celebrated seat shares its final resonance (sharing -> gifting)."""
        async with self.store.transaction(room_id) as txn:
            apply_final_resonance(txn.room, txn.player(player_id), percentage, text)
            step = txn.room.final_phase_step
        return ActionResult.ok("Final resonance shared", final_phase_step=step.value)

    @structured_action("share_final_reflection")
    async def share_final_reflection(self, room_id: str, player_id: str, text: str) -> ActionResult:
        """
        The celebrated seat reflects; the floor passes on, or the game ends.
        """
        async with self.store.transaction(room_id) as txn:
            completed = apply_final_reflection(txn.room, txn.player(player_id), txn.players, text)
            room = txn.room

        if completed:
            logger.info(f"Room {room_id[:8]} completed")
        return ActionResult.ok(
            "Reflection shared",
            completed=completed,
            status=room.status.value,
            final_phase_turn=room.final_phase_turn,
            final_phase_step=room.final_phase_step.value,
        )
