"""
Card mutation rules for Value Cards.

Every function here mutates Room/Player entities that the caller already
holds under the room lock, and raises a GameError subclass before touching
anything if a precondition fails. Cards only ever move between the deck,
the discard pile, hands and final-gift card references; no function
creates or destroys a card.
"""

import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

from constants import MAX_HAND_SIZE, VALUE_CARDS
from errors import (
    AlreadyGifted,
    CardNotInHand,
    CardNotOnBoard,
    DuplicateCardViolation,
    EmptyDeck,
    EmptyMessage,
    NothingToReplenish,
    NotRecipientTurn,
    SelfGift,
    WrongStep,
)
from models.entities import FinalGift, FinalPhaseStep, Player, Room, RoomStatus
from phases import (
    TurnAdvance,
    active_players,
    advance_after_discard,
    apply_turn_advance,
    final_gifts_complete,
    require_status,
    require_turn,
)


# =============================================================================
# Normal play
# =============================================================================

def draw_card(room: Room, player: Player) -> str:
    """
    Move the front card of the deck into the turn seat's hand.

    Returns:
        The drawn card name.

    Raises:
        WrongPhase, NotYourTurn: Outside the drawer's normal-play turn.
        WrongStep: If the player already drew this turn.
        EmptyDeck: If there is nothing left to draw.
    """
    require_status(room, RoomStatus.PLAYING)
    require_turn(room, player)
    if len(player.hand) >= MAX_HAND_SIZE:
        raise WrongStep("Already drew this turn; discard a card first")
    if not room.deck:
        raise EmptyDeck("The deck is empty")

    card = room.deck.pop(0)
    player.hand.append(card)
    return card


def discard_card(room: Room, player: Player, card: str) -> TurnAdvance:
    """
    Move one card from the turn seat's hand to the board and pass the turn.

    Removes only the first matching occurrence. When play wraps back to
    seat 0 the round counter advances, which may start the exchange round
    or the final phase.

    Returns:
        The TurnAdvance that was applied.

    Raises:
        WrongPhase, NotYourTurn: Outside the discarder's normal-play turn.
        WrongStep: If the player has not drawn yet and the deck is not empty.
        CardNotInHand: If ``card`` is not held.
    """
    require_status(room, RoomStatus.PLAYING)
    require_turn(room, player)
    if len(player.hand) < MAX_HAND_SIZE and room.deck:
        raise WrongStep("Draw a card before discarding")
    if card not in player.hand:
        raise CardNotInHand(f"{card} is not in your hand")

    player.hand.remove(card)
    room.discard_pile.append(card)

    advance = advance_after_discard(room)
    apply_turn_advance(room, advance)
    return advance


# =============================================================================
# Exchange
# =============================================================================

def exchange_card(
    room: Room,
    player: Player,
    players: Iterable[Player],
    hand_card: str,
    board_card: str,
) -> None:
    """
    Swap a hand card with a board card in place.

    The hand card takes the board card's slot in the discard pile and the
    board card takes the hand card's slot in the hand, so every other
    card keeps its position.

    Raises:
        CardNotInHand: ``hand_card`` is not held by ``player``.
        CardNotOnBoard: ``board_card`` is not on the discard pile.
        DuplicateCardViolation: ``hand_card`` is already on the board, or
            ``board_card`` is already in another seated player's hand.
    """
    if hand_card not in player.hand:
        raise CardNotInHand(f"{hand_card} is not in your hand")
    if board_card not in room.discard_pile:
        raise CardNotOnBoard(f"{board_card} is not on the board")
    if hand_card in room.discard_pile:
        raise DuplicateCardViolation(
            f"{hand_card} is already on the board",
            guard=DuplicateCardViolation.HAND_CARD_ON_BOARD,
        )
    for other in active_players(players):
        if other.id != player.id and board_card in other.hand:
            raise DuplicateCardViolation(
                f"{board_card} is already in seat {other.player_number}'s hand",
                guard=DuplicateCardViolation.BOARD_CARD_IN_HAND,
            )

    hand_index = player.hand.index(hand_card)
    board_index = room.discard_pile.index(board_card)
    player.hand[hand_index] = board_card
    room.discard_pile[board_index] = hand_card


# =============================================================================
# Final phase gifts
# =============================================================================

def give_message_gift(
    room: Room,
    sender: Player,
    recipient: Player,
    players: list[Player],
    message: str,
) -> FinalGift:
    """
    Record a message gift from ``sender`` to the final-phase turn seat.

    Once every other seated player has given, the step moves to reflection.

    Returns:
        The FinalGift appended to the recipient.

    Raises:
        WrongStep: The final phase is not at the gifting step.
        NotRecipientTurn: ``recipient`` is not the final-phase turn seat.
        SelfGift: ``sender`` is the recipient.
        AlreadyGifted: ``sender`` already gave this turn.
        EmptyMessage: ``message`` is blank.
    """
    if not room.status.is_final_phase or room.final_phase_step != FinalPhaseStep.GIFTING:
        raise WrongStep(f"Gifts are not open (step is {room.final_phase_step.value})")
    if recipient.player_number != room.final_phase_turn:
        raise NotRecipientTurn(f"Seat {recipient.player_number} is not receiving gifts now")
    if sender.id == recipient.id:
        raise SelfGift("You cannot give a gift to yourself")
    if sender.has_given_final_gift:
        raise AlreadyGifted("You already gave a gift this turn")
    text = (message or "").strip()
    if not text:
        raise EmptyMessage("Gift message is empty")

    gift = FinalGift(
        from_player_id=sender.id,
        from_player_name=sender.display_name,
        message=text,
    )
    recipient.final_gifts_received.append(gift)
    sender.has_given_final_gift = True

    if final_gifts_complete(players, room.final_phase_turn):
        room.final_phase_step = FinalPhaseStep.REFLECTION
    return gift


# =============================================================================
# Census and repair
# =============================================================================

@dataclass
class CardCensus:
    """Where every card is, and what is wrong with the distribution."""
    counts: Counter
    duplicates: dict[str, int] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)

    @property
    def total_cards(self) -> int:
        return sum(self.counts.values())

    @property
    def valid(self) -> bool:
        return not (self.duplicates or self.missing or self.unknown)


def held_cards(room: Room, players: Iterable[Player]) -> list[str]:
    """Every card reference outside the deck: board, hands and gift cards."""
    cards = list(room.discard_pile)
    for p in players:
        cards.extend(p.hand)
        cards.extend(g.card for g in p.final_gifts_received if g.card)
    return cards


def take_census(room: Room, players: Iterable[Player]) -> CardCensus:
    """
    Count every card across the deck, board, hands and gift card references.

    Before the deal (empty deck and hands) ``missing`` lists the whole
    catalog; callers judge it against the room's phase.
    """
    counts = Counter(room.deck)
    counts.update(held_cards(room, players))
    catalog = set(VALUE_CARDS)
    return CardCensus(
        counts=counts,
        duplicates={name: n for name, n in counts.items() if n > 1},
        missing=[name for name in VALUE_CARDS if counts[name] == 0],
        unknown=sorted(name for name in counts if name not in catalog),
    )


def replenish_discard_pile(
    room: Room,
    players: Iterable[Player],
    target: int,
    rng: Optional[random.Random] = None,
) -> list[str]:
    """
    Top the board up to ``target`` cards with random deck cards.

    Only deck cards that are not also held elsewhere are eligible, so a
    corrupted deck cannot spread a duplicate onto the board.

    Returns:
        Cards moved to the board (empty if the board was already full).

    Raises:
        NothingToReplenish: The board is short but no deck card is eligible.
    """
    needed = target - len(room.discard_pile)
    if needed <= 0:
        return []

    held = set(held_cards(room, players))
    available = [card for card in dict.fromkeys(room.deck) if card not in held]
    if not available:
        raise NothingToReplenish("No cards available to replenish the board")

    chosen = (rng or random).sample(available, min(needed, len(available)))
    for card in chosen:
        room.deck.remove(card)
        room.discard_pile.append(card)
    return chosen
