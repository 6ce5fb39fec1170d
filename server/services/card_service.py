"""
Atomic card operations for Value Cards.

Each operation runs inside one room transaction: the room row and its
player rows are locked, the rules in mutations.py are applied, and the
result is written back before the lock is released. Operations return an
ActionResult and never raise.

Usage:
    cards = CardService(store)
    result = await cards.draw(room_id, player_id)
    if result.success:
        print(result.data["drawn_card"])
"""

import random
from typing import Optional

from errors import NotAPlayer
from logging_config import get_logger
from models.entities import (
    ActionResult,
    ExchangeAction,
    ExchangeActionType,
    Gift,
    Player,
    RoomStatus,
)
from mutations import (
    discard_card,
    draw_card,
    exchange_card,
    give_message_gift,
    replenish_discard_pile,
    take_census,
)
from phases import (
    active_players,
    advance_exchange_turn,
    require_exchange_turn,
)
from services.actions import structured_action
from stores.entity_store import EntityStore, RoomTransaction

logger = get_logger(__name__)


def _seated(txn: RoomTransaction, player_id: str) -> Player:
    player = txn.player(player_id)
    if not player.is_active:
        raise NotAPlayer("Spectators cannot play cards")
    return player


class CardService:
    """Lock-protected draw, discard, exchange and gift operations."""

    def __init__(
        self,
        store: EntityStore,
        replenish_target: int = 12,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            store: Entity store holding the rooms.
            replenish_target: Default board size for replenish_discard_pile.
            rng: Random source for replenishing (tests and simulations).
        """
        self.store = store
        self.replenish_target = replenish_target
        self.rng = rng

    # -------------------------------------------------------------------------
    # Normal play
    # -------------------------------------------------------------------------

    @structured_action("draw")
    async def draw(self, room_id: str, player_id: str) -> ActionResult:
        """Draw the front card of the deck into the turn seat's hand."""
        async with self.store.transaction(room_id) as txn:
            player = _seated(txn, player_id)
            card = draw_card(txn.room, player)
            hand_size = len(player.hand)
            deck_remaining = len(txn.room.deck)

        logger.with_context(room_id=room_id, player_id=player_id).debug(
            f"Seat {player.player_number} drew ({deck_remaining} left)"
        )
        return ActionResult.ok(
            "Card drawn",
            drawn_card=card,
            hand_size=hand_size,
            deck_remaining=deck_remaining,
        )

    @structured_action("discard")
    async def discard(self, room_id: str, player_id: str, card: str) -> ActionResult:
        """Discard a card to the board and pass the turn."""
        async with self.store.transaction(room_id) as txn:
            player = _seated(txn, player_id)
            advance = discard_card(txn.room, player, card)

        if advance.status != RoomStatus.PLAYING:
            logger.with_context(room_id=room_id).info(
                f"Round {advance.round_number} reached, room moves to {advance.status.value}"
            )
        return ActionResult.ok(
            "Card discarded",
            discarded_card=card,
            next_player=advance.next_player,
            next_round=advance.round_number,
            new_status=advance.status.value,
        )

    # -------------------------------------------------------------------------
    # Exchange round
    # -------------------------------------------------------------------------

    @structured_action("exchange")
    async def exchange(
        self,
        room_id: str,
        player_id: str,
        hand_card: str,
        board_card: str,
    ) -> ActionResult:
        """
        Swap a hand card with a board card on the player's exchange turn.

        The swap, the exchange log entry and the turn advance commit together.
        """
        async with self.store.transaction(room_id) as txn:
            player = _seated(txn, player_id)
            require_exchange_turn(txn.room, player)
            exchange_card(txn.room, player, txn.players, hand_card, board_card)
            turn_number = txn.room.current_exchange_turn
            txn.record(ExchangeAction(
                room_id=room_id,
                player_id=player.id,
                player_name=player.display_name,
                action_type=ExchangeActionType.EXCHANGE,
                hand_card=hand_card,
                board_card=board_card,
                turn_number=turn_number,
            ))
            round_done = advance_exchange_turn(txn.room, len(active_players(txn.players)))
            next_turn = txn.room.current_exchange_turn

        return ActionResult.ok(
            "Cards exchanged",
            hand_card=hand_card,
            board_card=board_card,
            next_exchange_turn=next_turn,
            exchange_round_done=round_done,
        )

    @structured_action("skip_exchange")
    async def skip_exchange(self, room_id: str, player_id: str) -> ActionResult:
        """Pass on the exchange and hand the turn to the next seat."""
        async with self.store.transaction(room_id) as txn:
            player = _seated(txn, player_id)
            require_exchange_turn(txn.room, player)
            txn.record(ExchangeAction(
                room_id=room_id,
                player_id=player.id,
                player_name=player.display_name,
                action_type=ExchangeActionType.SKIP,
                turn_number=txn.room.current_exchange_turn,
            ))
            round_done = advance_exchange_turn(txn.room, len(active_players(txn.players)))
            next_turn = txn.room.current_exchange_turn

        return ActionResult.ok(
            "Exchange skipped",
            next_exchange_turn=next_turn,
            exchange_round_done=round_done,
        )

    # -------------------------------------------------------------------------
    # Final phase
    # -------------------------------------------------------------------------

    @structured_action("give_message_gift")
    async def give_message_gift(
        self,
        room_id: str,
        sender_id: str,
        recipient_id: str,
        message: str,
    ) -> ActionResult:
        """Send a message gift to the seat being celebrated in the final phase."""
        async with self.store.transaction(room_id) as txn:
            sender = _seated(txn, sender_id)
            recipient = _seated(txn, recipient_id)
            gift = give_message_gift(txn.room, sender, recipient, txn.players, message)
            txn.record(Gift(
                room_id=room_id,
                from_player_id=sender.id,
                to_player_id=recipient.id,
                message=gift.message,
            ))
            step = txn.room.final_phase_step

        return ActionResult.ok(
            "Gift sent",
            gift=gift.to_dict(),
            final_phase_step=step.value,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @structured_action("validate_uniqueness")
    async def validate_uniqueness(self, room_id: str) -> ActionResult:
        """
        Count every card in the room and report duplicates.

        A violation is logged and reported but never repaired here.
        """
        async with self.store.transaction(room_id) as txn:
            census = take_census(txn.room, txn.players)

        if census.duplicates or census.unknown:
            logger.with_context(room_id=room_id).error(
                f"Card uniqueness violated: duplicates={census.duplicates} unknown={census.unknown}"
            )
        return ActionResult.ok(
            "Cards are unique" if not census.duplicates else "Duplicate cards found",
            valid=not (census.duplicates or census.unknown),
            duplicates=census.duplicates,
            missing=census.missing,
            card_counts=dict(census.counts),
            total_cards=census.total_cards,
        )

    @structured_action("replenish_discard_pile")
    async def replenish_discard_pile(
        self,
        room_id: str,
        target: Optional[int] = None,
    ) -> ActionResult:
        """Top the board up to ``target`` cards from the deck."""
        target = self.replenish_target if target is None else target
        async with self.store.transaction(room_id) as txn:
            added = replenish_discard_pile(txn.room, txn.players, target, self.rng)
            pile_count = len(txn.room.discard_pile)
            deck_count = len(txn.room.deck)

        if added:
            logger.with_context(room_id=room_id).warning(
                f"Replenished board with {len(added)} cards: {added}"
            )
        return ActionResult.ok(
            "Board replenished" if added else "No replenish needed",
            added_count=len(added),
            added_cards=added,
            new_pile_count=pile_count,
            remaining_deck=deck_count,
        )

