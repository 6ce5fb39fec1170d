"""
Tests for the lock-protected card operations.

These tests cover:
- Draw/discard through the store, including racing draws
- Exchange turns: swap, log row and turn advance in one transaction
- Message gifts and their log rows
- Card census and board replenish
- Error conversion into structured results

Tests run against the in-memory entity store.
"""

import asyncio
import random

import pytest
from unittest.mock import MagicMock

from cards import deal_initial_hands, shuffle_deck
from errors import StoreError
from models.entities import ExchangeActionType, FinalPhaseStep, Player, Room, RoomStatus
from services.card_service import CardService
from stores.memory_store import MemoryEntityStore


async def seed_room(store, status=RoomStatus.PLAYING, seed=1, **room_fields):
    """Create a dealt room with four seats and one spectator."""
    deal = deal_initial_hands(shuffle_deck(random.Random(seed)))
    room = await store.create_room(
        Room(code="ABCD", status=status, deck=deal.deck, **room_fields)
    )
    async with store.transaction(room.id) as txn:
        seats = [
            txn.add_player(Player(
                room_id=room.id, player_number=i, name=f"P{i}", hand=list(deal.hands[i])
            ))
            for i in range(4)
        ]
        spectator = txn.add_player(Player.spectator(room.id, "Watcher"))
    return room.id, [p.id for p in seats], spectator.id


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def service(store):
    return CardService(store, rng=random.Random(0))


# =============================================================================
# Draw and discard
# =============================================================================

class TestDrawDiscard:

    @pytest.mark.asyncio
    async def test_draw(self, store, service):
        room_id, seats, _ = await seed_room(store)
        front = (await store.get_room(room_id)).deck[0]

        result = await service.draw(room_id, seats[0])

        assert result.success
        assert result.data["drawn_card"] == front
        assert result.data["hand_size"] == 4
        assert result.data["deck_remaining"] == 23

    @pytest.mark.asyncio
    async def test_draw_out_of_turn_changes_nothing(self, store, service):
        room_id, seats, _ = await seed_room(store)
        before = await store.get_room(room_id)

        result = await service.draw(room_id, seats[2])

        assert not result.success
        assert result.code == "not_your_turn"
        assert not result.retryable
        assert (await store.get_room(room_id)).version == before.version

    @pytest.mark.asyncio
    async def test_spectator_cannot_draw(self, store, service):
        room_id, _, spectator_id = await seed_room(store)
        result = await service.draw(room_id, spectator_id)
        assert result.code == "not_a_player"

    @pytest.mark.asyncio
    async def test_racing_draws_take_one_card(self, store, service):
        room_id, seats, _ = await seed_room(store)

        results = await asyncio.gather(*(service.draw(room_id, seats[0]) for _ in range(3)))

        assert sum(r.success for r in results) == 1
        assert {r.code for r in results if not r.success} == {"wrong_step"}
        player = await store.get_player(seats[0])
        room = await store.get_room(room_id)
        assert len(player.hand) == 4
        assert len(room.deck) == 23

    @pytest.mark.asyncio
    async def test_discard_passes_turn(self, store, service):
        room_id, seats, _ = await seed_room(store)
        await service.draw(room_id, seats[0])
        card = (await store.get_player(seats[0])).hand[0]

        result = await service.discard(room_id, seats[0], card)

        assert result.success
        assert result.data["next_player"] == 1
        assert result.data["new_status"] == "playing"
        room = await store.get_room(room_id)
        assert room.discard_pile == [card]
        assert room.current_turn_player == 1

    @pytest.mark.asyncio
    async def test_last_discard_of_round_three_starts_exchange(self, store, service):
        room_id, seats, _ = await seed_room(store, current_turn_player=3, round_number=2)
        await service.draw(room_id, seats[3])
        card = (await store.get_player(seats[3])).hand[0]

        result = await service.discard(room_id, seats[3], card)

        assert result.data["new_status"] == "exchange"
        assert result.data["next_round"] == 3
        assert (await store.get_room(room_id)).status == RoomStatus.EXCHANGE


# =============================================================================
# Exchange round
# =============================================================================

class TestExchange:

    async def _exchange_room(self, store):
        room_id, seats, spectator = await seed_room(store, status=RoomStatus.EXCHANGE)
        async with store.transaction(room_id) as txn:
            txn.room.discard_pile = txn.room.deck[:4]
            txn.room.deck = txn.room.deck[4:]
        return room_id, seats

    @pytest.mark.asyncio
    async def test_exchange_commits_swap_log_and_turn(self, store, service):
        room_id, seats = await self._exchange_room(store)
        room = await store.get_room(room_id)
        player = await store.get_player(seats[0])
        hand_card, board_card = player.hand[0], room.discard_pile[1]

        result = await service.exchange(room_id, seats[0], hand_card, board_card)

        assert result.success
        assert result.data["next_exchange_turn"] == 1
        assert not result.data["exchange_round_done"]

        room = await store.get_room(room_id)
        player = await store.get_player(seats[0])
        assert player.hand[0] == board_card
        assert room.discard_pile[1] == hand_card

        actions = await store.list_exchange_actions(room_id)
        assert len(actions) == 1
        assert actions[0].action_type == ExchangeActionType.EXCHANGE
        assert actions[0].player_name == "P0"
        assert actions[0].turn_number == 0

    @pytest.mark.asyncio
    async def test_exchange_out_of_turn(self, store, service):
        room_id, seats = await self._exchange_room(store)
        room = await store.get_room(room_id)
        player = await store.get_player(seats[1])

        result = await service.exchange(room_id, seats[1], player.hand[0], room.discard_pile[0])

        assert result.code == "not_your_turn"
        assert await store.list_exchange_actions(room_id) == []

    @pytest.mark.asyncio
    async def test_duplicate_guard_reported(self, store, service):
        room_id, seats = await self._exchange_room(store)
        other = await store.get_player(seats[2])
        async with store.transaction(room_id) as txn:
            txn.room.discard_pile.append(other.hand[0])
        player = await store.get_player(seats[0])

        result = await service.exchange(room_id, seats[0], player.hand[0], other.hand[0])

        assert result.code == "duplicate_card"
        assert result.to_dict()["guard"] == "board_card_in_hand"
        assert (await store.get_room(room_id)).current_exchange_turn == 0

    @pytest.mark.asyncio
    async def test_four_skips_finish_the_round(self, store, service):
        room_id, seats = await self._exchange_room(store)

        results = [await service.skip_exchange(room_id, seat) for seat in seats]

        assert [r.data["exchange_round_done"] for r in results] == [False, False, False, True]
        room = await store.get_room(room_id)
        assert room.current_exchange_turn == 4
        assert room.status == RoomStatus.EXCHANGE
        actions = await store.list_exchange_actions(room_id)
        assert [a.turn_number for a in actions] == [0, 1, 2, 3]
        assert all(a.action_type == ExchangeActionType.SKIP for a in actions)

    @pytest.mark.asyncio
    async def test_no_turn_after_round_done(self, store, service):
        room_id, seats = await self._exchange_room(store)
        for seat in seats:
            await service.skip_exchange(room_id, seat)
        result = await service.skip_exchange(room_id, seats[0])
        assert result.code == "not_your_turn"


# =============================================================================
# Message gifts
# =============================================================================

class TestMessageGift:

    @pytest.mark.asyncio
    async def test_gift_logged_and_step_advances(self, store, service):
        room_id, seats, _ = await seed_room(
            store,
            status=RoomStatus.GIFT_EXCHANGE,
            final_phase_turn=0,
            final_phase_step=FinalPhaseStep.GIFTING,
        )

        for sender in seats[1:]:
            result = await service.give_message_gift(room_id, sender, seats[0], "Thank you")
            assert result.success

        assert result.data["final_phase_step"] == "reflection"
        gifts = await store.list_gifts(room_id)
        assert len(gifts) == 3
        assert {g.from_player_id for g in gifts} == set(seats[1:])
        recipient = await store.get_player(seats[0])
        assert len(recipient.final_gifts_received) == 3

    @pytest.mark.asyncio
    async def test_gift_twice_rejected(self, store, service):
        room_id, seats, _ = await seed_room(
            store,
            status=RoomStatus.RESONANCE_FINAL,
            final_phase_turn=0,
            final_phase_step=FinalPhaseStep.GIFTING,
        )
        await service.give_message_gift(room_id, seats[1], seats[0], "Hi")
        result = await service.give_message_gift(room_id, seats[1], seats[0], "Hi again")
        assert result.code == "already_gifted"
        assert len(await store.list_gifts(room_id)) == 1


# =============================================================================
# Maintenance
# =============================================================================

class TestMaintenance:

    @pytest.mark.asyncio
    async def test_census_of_fresh_deal(self, store, service):
        room_id, _, _ = await seed_room(store)
        result = await service.validate_uniqueness(room_id)
        assert result.success
        assert result.data["valid"]
        assert result.data["total_cards"] == 36
        assert result.data["duplicates"] == {}

    @pytest.mark.asyncio
    async def test_census_reports_duplicates(self, store, service):
        room_id, seats, _ = await seed_room(store)
        player = await store.get_player(seats[0])
        async with store.transaction(room_id) as txn:
            txn.room.discard_pile.append(player.hand[0])

        result = await service.validate_uniqueness(room_id)

        assert result.success
        assert not result.data["valid"]
        assert result.data["duplicates"] == {player.hand[0]: 2}

    @pytest.mark.asyncio
    async def test_replenish(self, store, service):
        room_id, _, _ = await seed_room(store)

        first = await service.replenish_discard_pile(room_id)
        second = await service.replenish_discard_pile(room_id)

        assert first.data["added_count"] == 12
        assert first.data["new_pile_count"] == 12
        assert first.data["remaining_deck"] == 12
        assert second.message == "No replenish needed"
        assert second.data["added_count"] == 0
        assert (await service.validate_uniqueness(room_id)).data["valid"]


# =============================================================================
# Error conversion
# =============================================================================

class TestStructuredErrors:

    @pytest.mark.asyncio
    async def test_unknown_room(self, service):
        result = await service.draw("missing-room", "p1")
        assert result.code == "room_not_found"
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_store_failure_is_retryable(self):
        store = MagicMock()
        store.transaction.side_effect = StoreError("connection lost")
        result = await CardService(store).draw("room", "player")
        assert not result.success
        assert result.code == "store_error"
        assert result.retryable

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_retryable(self):
        store = MagicMock()
        store.transaction.side_effect = RuntimeError("boom")
        result = await CardService(store).discard("room", "player", "Hope")
        assert result.code == "internal_error"
        assert result.retryable
