"""
Tests for room lifecycle and phase transitions.

These tests cover:
- Room creation, join by code and seat assignment
- Conditional transitions and races between clients
- Voting: countdown anchor, vote casting, the three exit conditions and
  the deal that happens on resolution
- Resonance readiness and the seat-0 quorum fast path
- Leaving the exchange round and the final-phase steps through completion

Tests run against the in-memory entity store with a controllable clock.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from constants import THEME_CARDS
from models.entities import FinalPhaseStep, PlayerRole, ResonancePhase, RoomStatus
from services.card_service import CardService
from services.phase_service import PhaseService
from stores.memory_store import MemoryEntityStore


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def phases(store, clock):
    return PhaseService(store, voting_duration=180, clock=clock, rng=random.Random(11))


@pytest.fixture
def cards(store):
    return CardService(store, rng=random.Random(12))


async def full_room(phases):
    """Create a room and fill all four seats. Returns (room_id, code, seat ids)."""
    created = await phases.create_room("Ari")
    room_id, code = created.data["room_id"], created.data["room_code"]
    seats = [created.data["player_id"]]
    for name in ("Bea", "Cyd", "Dov"):
        joined = await phases.join_room(code, name)
        seats.append(joined.data["player_id"])
    return room_id, code, seats


async def room_in_voting(phases):
    room_id, _, seats = await full_room(phases)
    await phases.start_checkin(room_id)
    for pid in seats:
        await phases.check_in(room_id, pid)
    await phases.start_voting(room_id)
    return room_id, seats


async def room_in_resonance(phases, status=RoomStatus.RESONANCE_INITIAL):
    room_id, seats = await room_in_voting(phases)
    for pid in seats:
        await phases.cast_vote(room_id, pid, 0)
    await phases.resolve_voting(room_id)
    await phases.finish_voting_result(room_id)
    if status != RoomStatus.RESONANCE_INITIAL:
        await phases.store.update_room_if(
            room_id, {"status": RoomStatus.RESONANCE_INITIAL}, {"status": status}
        )
    return room_id, seats


# =============================================================================
# Rooms and seats
# =============================================================================

class TestRoomsAndSeats:

    @pytest.mark.asyncio
    async def test_create_room(self, phases, store):
        result = await phases.create_room("Ari")

        assert result.success
        code = result.data["room_code"]
        assert len(code) == 4 and code.isupper()
        assert result.data["player_number"] == 0
        room = await store.get_room(result.data["room_id"])
        assert room.status == RoomStatus.WAITING
        assert sorted(room.deck) == sorted(set(room.deck))
        assert len(room.deck) == 36

    @pytest.mark.asyncio
    async def test_create_room_requires_name(self, phases):
        result = await phases.create_room("  ")
        assert result.code == "invalid_choice"

    @pytest.mark.asyncio
    async def test_join_fills_lowest_free_seat_then_spectates(self, phases, store):
        room_id, code, seats = await full_room(phases)

        players = await store.list_players(room_id)
        assert [p.player_number for p in players] == [0, 1, 2, 3]

        extra = await phases.join_room(code.lower(), "Eve")
        assert extra.success
        assert extra.data["role"] == "spectator"
        assert extra.data["player_number"] == -1

    @pytest.mark.asyncio
    async def test_join_after_start_spectates(self, phases):
        created = await phases.create_room("Ari")
        room_id, code = created.data["room_id"], created.data["room_code"]
        await phases.store.update_room_if(
            room_id, {"status": RoomStatus.WAITING}, {"status": RoomStatus.PLAYING}
        )

        joined = await phases.join_room(code, "Late")

        assert joined.data["role"] == PlayerRole.SPECTATOR.value

    @pytest.mark.asyncio
    async def test_join_unknown_code(self, phases):
        result = await phases.join_room("ZZZZ", "Ari")
        assert result.code == "room_not_found"

    @pytest.mark.asyncio
    async def test_racing_joins_never_share_a_seat(self, phases, store):
        created = await phases.create_room("Ari")
        code = created.data["room_code"]

        results = await asyncio.gather(*(phases.join_room(code, f"P{i}") for i in range(6)))

        assert all(r.success for r in results)
        players = await store.list_players(created.data["room_id"])
        seated = [p.player_number for p in players if p.role == PlayerRole.PLAYER]
        assert sorted(seated) == [0, 1, 2, 3]
        assert sum(p.role == PlayerRole.SPECTATOR for p in players) == 3

    @pytest.mark.asyncio
    async def test_set_connected(self, phases, store):
        created = await phases.create_room("Ari")
        result = await phases.set_connected(created.data["room_id"], created.data["player_id"], False)
        assert result.success
        player = await store.get_player(created.data["player_id"])
        assert player.is_connected is False


# =============================================================================
# Check-in
# =============================================================================

class TestCheckin:

    @pytest.mark.asyncio
    async def test_checkin_needs_full_room(self, phases):
        created = await phases.create_room("Ari")
        result = await phases.start_checkin(created.data["room_id"])
        assert result.code == "wrong_phase"

    @pytest.mark.asyncio
    async def test_racing_leaders_transition_once(self, phases, store):
        room_id, _, _ = await full_room(phases)
        version = (await store.get_room(room_id)).version

        results = await asyncio.gather(*(phases.start_checkin(room_id) for _ in range(4)))

        assert all(r.success for r in results)
        assert sum(r.data["transitioned"] for r in results) == 1
        room = await store.get_room(room_id)
        assert room.status == RoomStatus.CHECKIN
        assert room.version == version + 1

    @pytest.mark.asyncio
    async def test_check_in_and_start_voting(self, phases, store):
        room_id, _, seats = await full_room(phases)
        await phases.start_checkin(room_id)

        early = await phases.start_voting(room_id)
        assert early.code == "wrong_phase"

        result = await phases.check_in(room_id, seats[1], "Bee")
        assert result.data["preferred_name"] == "Bee"
        for pid in seats:
            await phases.check_in(room_id, pid)

        started = await phases.start_voting(room_id)
        assert started.data["transitioned"]
        room = await store.get_room(room_id)
        assert room.status == RoomStatus.VOTING
        assert room.card_options == THEME_CARDS
        assert room.voting_started_at is None


# =============================================================================
# Voting
# =============================================================================

class TestVoting:

    @pytest.mark.asyncio
    async def test_anchor_written_once(self, phases, clock):
        room_id, _ = await room_in_voting(phases)

        first = await phases.mark_voting_started(room_id)
        clock.advance(10)
        second = await phases.mark_voting_started(room_id)

        assert first.data["transitioned"]
        assert not second.data["transitioned"]
        assert first.data["voting_started_at"] == second.data["voting_started_at"]

    @pytest.mark.asyncio
    async def test_vote_validation(self, phases, store):
        room_id, seats = await room_in_voting(phases)

        bad = await phases.cast_vote(room_id, seats[0], 10)
        assert bad.code == "invalid_choice"

        ok = await phases.cast_vote(room_id, seats[0], 2)
        assert ok.data["card_text"] == THEME_CARDS[2]

        again = await phases.cast_vote(room_id, seats[0], 1)
        assert again.code == "already_voted"
        assert len(await store.list_votes(room_id)) == 1

    @pytest.mark.asyncio
    async def test_unanimous_resolves_without_countdown(self, phases, store):
        room_id, seats = await room_in_voting(phases)
        await phases.mark_voting_started(room_id)
        for pid in seats[:3]:
            await phases.cast_vote(room_id, pid, 1)

        waiting = await phases.resolve_voting(room_id)
        assert not waiting.data["resolved"]

        await phases.cast_vote(room_id, seats[3], 1)
        result = await phases.resolve_voting(room_id)

        assert result.data["resolved"]
        assert result.data["outcome"] == "unanimous"
        assert result.data["purpose_card"] == THEME_CARDS[1]

    @pytest.mark.asyncio
    async def test_all_voted_split_resolves_by_plurality(self, phases):
        room_id, seats = await room_in_voting(phases)
        for pid, choice in zip(seats, [0, 0, 1, 2]):
            await phases.cast_vote(room_id, pid, choice)

        result = await phases.resolve_voting(room_id)

        assert result.data["outcome"] == "all_voted"
        assert result.data["winner_index"] == 0

    @pytest.mark.asyncio
    async def test_timeout_tie_goes_to_lowest_index(self, phases, clock):
        room_id, seats = await room_in_voting(phases)
        await phases.mark_voting_started(room_id)
        for pid, choice in zip(seats, [2, 1, 0]):
            await phases.cast_vote(room_id, pid, choice)

        clock.advance(179)
        assert not (await phases.resolve_voting(room_id)).data["resolved"]

        clock.advance(1)
        result = await phases.resolve_voting(room_id)
        assert result.data["outcome"] == "timeout"
        assert result.data["winner_index"] == 0

    @pytest.mark.asyncio
    async def test_timeout_without_votes_picks_first_option(self, phases):
        room_id, _ = await room_in_voting(phases)
        result = await phases.resolve_voting(room_id, force_deadline=True)
        assert result.data["resolved"]
        assert result.data["winner_index"] == 0

    @pytest.mark.asyncio
    async def test_resolution_deals_hands(self, phases, store):
        room_id, seats = await room_in_voting(phases)
        await store.update_room_if(room_id, {}, {"card_options": ["A", "B", "C"]})
        for pid, choice in zip(seats, [1, 1, 0, 1]):
            await phases.cast_vote(room_id, pid, choice)

        result = await phases.resolve_voting(room_id)

        assert result.data["purpose_card"] == "B"
        room = await store.get_room(room_id)
        players = await store.list_players(room_id)
        assert room.status == RoomStatus.VOTING_RESULT
        assert room.purpose_card == "B"
        assert len(room.deck) == 24
        assert room.discard_pile == []
        assert all(len(p.hand) == 3 for p in players)
        held = {c for p in players for c in p.hand}
        assert len(held) == 12
        assert not held & set(room.deck)

    @pytest.mark.asyncio
    async def test_racing_resolvers_deal_once(self, phases, store):
        room_id, seats = await room_in_voting(phases)
        for pid in seats:
            await phases.cast_vote(room_id, pid, 3)

        results = await asyncio.gather(*(phases.resolve_voting(room_id) for _ in range(4)))

        assert sum(r.data["resolved"] for r in results) == 1
        room = await store.get_room(room_id)
        assert len(room.deck) == 24

    @pytest.mark.asyncio
    async def test_vote_after_resolution_is_rejected(self, phases, store):
        room_id, seats = await room_in_voting(phases)
        for pid in seats[:3]:
            await phases.cast_vote(room_id, pid, 2)
        await phases.resolve_voting(room_id, force_deadline=True)

        late = await phases.cast_vote(room_id, seats[3], 1)

        assert late.code == "wrong_phase"
        assert len(await store.list_votes(room_id)) == 3

    @pytest.mark.asyncio
    async def test_vote_racing_deadline_counts_or_is_rejected(self, phases, store):
        room_id, seats = await room_in_voting(phases)
        for pid in seats[:3]:
            await phases.cast_vote(room_id, pid, 2)

        vote, resolved = await asyncio.gather(
            phases.cast_vote(room_id, seats[3], 1),
            phases.resolve_voting(room_id, force_deadline=True),
        )

        assert resolved.data["resolved"]
        stored = await store.list_votes(room_id)
        if vote.success:
            assert len(stored) == 4
            assert resolved.data["outcome"] == "all_voted"
        else:
            assert vote.code == "wrong_phase"
            assert len(stored) == 3
            assert resolved.data["outcome"] == "timeout"

    @pytest.mark.asyncio
    async def test_finish_voting_result(self, phases, store):
        room_id, seats = await room_in_voting(phases)
        for pid in seats:
            await phases.cast_vote(room_id, pid, 0)
        await phases.resolve_voting(room_id)

        result = await phases.finish_voting_result(room_id)

        assert result.data["transitioned"]
        assert (await store.get_room(room_id)).status == RoomStatus.RESONANCE_INITIAL


# =============================================================================
# Resonance
# =============================================================================

class TestResonance:

    @pytest.mark.asyncio
    async def test_submit_overwrites(self, phases, store):
        room_id, seats = await room_in_resonance(phases)

        await phases.submit_resonance(room_id, seats[0], 40)
        result = await phases.submit_resonance(room_id, seats[0], 70)

        assert result.data["phase"] == "initial"
        shares = await store.list_resonance(room_id, ResonancePhase.INITIAL)
        assert len(shares) == 1
        assert shares[0].percentage == 70

    @pytest.mark.asyncio
    async def test_submit_outside_resonance(self, phases):
        room_id, seats = await room_in_voting(phases)
        result = await phases.submit_resonance(room_id, seats[0], 50)
        assert result.code == "wrong_phase"

    @pytest.mark.asyncio
    async def test_percentage_bounds(self, phases):
        room_id, seats = await room_in_resonance(phases)
        result = await phases.submit_resonance(room_id, seats[0], 120)
        assert result.code == "invalid_choice"

    @pytest.mark.asyncio
    async def test_last_ready_moves_to_playing(self, phases, store):
        room_id, seats = await room_in_resonance(phases)

        results = [await phases.mark_ready(room_id, pid) for pid in seats]

        assert [r.data["transitioned"] for r in results] == [False, False, False, True]
        room = await store.get_room(room_id)
        assert room.status == RoomStatus.PLAYING
        players = await store.list_players(room_id)
        assert not any(p.ready_for_next_phase for p in players)

    @pytest.mark.asyncio
    async def test_final_ready_moves_to_gift_exchange(self, phases, store):
        room_id, seats = await room_in_resonance(phases, RoomStatus.RESONANCE_FINAL)
        for pid in seats:
            await phases.mark_ready(room_id, pid)
        assert (await store.get_room(room_id)).status == RoomStatus.GIFT_EXCHANGE

    @pytest.mark.asyncio
    async def test_force_advance_needs_leader_and_quorum(self, phases, store):
        room_id, seats = await room_in_resonance(phases)
        for pid in seats[:2]:
            await phases.submit_resonance(room_id, pid, 50)

        not_leader = await phases.force_resonance_advance(room_id, seats[1])
        assert not_leader.code == "not_your_turn"

        short = await phases.force_resonance_advance(room_id, seats[0])
        assert short.code == "wrong_phase"

        await phases.submit_resonance(room_id, seats[2], 50)
        forced = await phases.force_resonance_advance(room_id, seats[0])
        assert forced.data["transitioned"]
        assert forced.data["submitted"] == 3
        assert (await store.get_room(room_id)).status == RoomStatus.PLAYING


# =============================================================================
# Exchange round end
# =============================================================================

class TestFinishExchange:

    @pytest.mark.asyncio
    async def test_waits_for_last_exchange_turn(self, phases, cards, store):
        room_id, seats = await room_in_resonance(phases)
        await store.update_room_if(
            room_id,
            {"status": RoomStatus.RESONANCE_INITIAL},
            {"status": RoomStatus.EXCHANGE, "current_exchange_turn": 0, "round_number": 3},
        )

        early = await phases.finish_exchange(room_id)
        assert not early.data["transitioned"]

        for pid in seats:
            await cards.skip_exchange(room_id, pid)
        results = await asyncio.gather(*(phases.finish_exchange(room_id) for _ in range(3)))

        assert sum(r.data["transitioned"] for r in results) == 1
        room = await store.get_room(room_id)
        assert room.status == RoomStatus.PLAYING
        assert room.exchange_completed
        assert room.current_exchange_turn == 0
        assert room.current_turn_player == 0


# =============================================================================
# Final phase
# =============================================================================

class TestFinalPhase:

    @pytest.mark.asyncio
    async def test_every_seat_celebrated_then_completed(self, phases, cards, store):
        room_id, seats = await room_in_resonance(phases, RoomStatus.RESONANCE_FINAL)

        for turn, celebrated in enumerate(seats):
            shared = await phases.share_final_resonance(room_id, celebrated, 60, "Moved")
            assert shared.data["final_phase_step"] == "gifting"

            for sender in seats:
                if sender != celebrated:
                    await cards.give_message_gift(room_id, sender, celebrated, "Thank you")

            room = await store.get_room(room_id)
            assert room.final_phase_step == FinalPhaseStep.REFLECTION

            reflected = await phases.share_final_reflection(room_id, celebrated, "Grateful")
            assert reflected.data["completed"] == (turn == 3)

        room = await store.get_room(room_id)
        assert room.status == RoomStatus.COMPLETED
        assert room.final_phase_turn == 3
        assert len(await store.list_gifts(room_id)) == 12

        players = await store.list_players(room_id)
        assert all(len(p.final_gifts_received) == 3 for p in players)
        assert all(p.final_reflection_text == "Grateful" for p in players)

    @pytest.mark.asyncio
    async def test_steps_out_of_order(self, phases):
        room_id, seats = await room_in_resonance(phases, RoomStatus.RESONANCE_FINAL)

        early = await phases.share_final_reflection(room_id, seats[0], "Too soon")
        assert early.code == "wrong_step"

        other = await phases.share_final_resonance(room_id, seats[1], 50)
        assert other.code == "not_your_turn"
