"""
Card deck model for Value Cards.

Pure, stateless helpers for building, validating, shuffling and dealing
the 36-card value deck. Nothing here touches the store; callers persist
the results inside a room transaction.
"""

import random
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from constants import DEALT_CARDS, DECK_SIZE, HAND_SIZE, SEAT_COUNT, VALUE_CARDS
from errors import CatalogError


@dataclass
class DealResult:
    """Outcome of the initial deal."""
    hands: list[list[str]]
    deck: list[str]
    discard_pile: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CardInstance:
    """
    A card as seen by a display layer.

    ``instance_id`` is a stable per-render identity when the client has one;
    otherwise deduplication falls back to the card name.
    """
    name: str
    instance_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.instance_id or self.name


def validate_deck(cards: Sequence[str]) -> None:
    """
    Check that ``cards`` is a full, duplicate-free value deck.

    Raises:
        CatalogError: If the length is not 36, a name repeats, or a name
            is not part of the value catalog.
    """
    if len(cards) != DECK_SIZE:
        raise CatalogError(f"Deck must contain {DECK_SIZE} cards (found {len(cards)})")
    unique = set(cards)
    if len(unique) != DECK_SIZE:
        raise CatalogError("Deck contains duplicate cards")
    unknown = unique - set(VALUE_CARDS)
    if unknown:
        raise CatalogError(f"Deck contains unknown cards: {sorted(unknown)}")


def shuffle_deck(rng: Optional[random.Random] = None) -> list[str]:
    """
    Return a uniformly shuffled copy of the value catalog.

    Args:
        rng: Optional random source (for reproducible simulations).

    Returns:
        A permutation of the 36 value cards.

    Raises:
        CatalogError: If the shuffled deck fails validation.
    """
    deck = list(VALUE_CARDS)
    # random.shuffle is an in-place Fisher-Yates
    (rng or random).shuffle(deck)
    validate_deck(deck)
    return deck


def deal_initial_hands(deck: Sequence[str]) -> DealResult:
    """
    Deal four 3-card hands from the front of a full deck.

    Hand ``i`` receives positions ``[3i, 3i+3)``. The remaining 24 cards
    become the new deck and the discard pile starts empty.

    Args:
        deck: A full 36-card deck (usually the room's stored deck).

    Returns:
        DealResult with the hands, the remaining deck and an empty pile.

    Raises:
        CatalogError: If the deck is not a valid full deck, or if the
            dealt and remaining cards overlap.
    """
    validate_deck(deck)

    hands = [
        list(deck[seat * HAND_SIZE:(seat + 1) * HAND_SIZE])
        for seat in range(SEAT_COUNT)
    ]
    remaining = list(deck[DEALT_CARDS:])

    dealt = {card for hand in hands for card in hand}
    if len(dealt) != DEALT_CARDS or len(remaining) != DECK_SIZE - DEALT_CARDS:
        raise CatalogError(
            f"Deal produced {len(dealt)} dealt and {len(remaining)} remaining cards"
        )
    if dealt & set(remaining):
        raise CatalogError(f"Dealt cards overlap remaining deck: {sorted(dealt & set(remaining))}")

    return DealResult(hands=hands, deck=remaining, discard_pile=[])


def deduplicate_hand(cards: Iterable[str]) -> list[str]:
    """Drop repeated card names, keeping the first occurrence."""
    seen: set[str] = set()
    result = []
    for card in cards:
        if card not in seen:
            seen.add(card)
            result.append(card)
    return result


def deduplicate_cards(cards: Iterable[CardInstance]) -> list[CardInstance]:
    """
    Drop repeated card instances (by instance id, else by name).

    A client may briefly observe a card in two places while a write is
    in flight; this only cleans up what is shown.
    """
    seen: set[str] = set()
    result = []
    for card in cards:
        if card.key not in seen:
            seen.add(card.key)
            result.append(card)
    return result
