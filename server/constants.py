"""
Card catalogs and fixed table geometry for Value Cards.

This module is the single source of truth for the 36 value cards and the
10 theme (purpose) cards. The catalogs are checked when the module is
imported: a wrong size or a duplicate name raises CatalogError and the
server refuses to start.

Table geometry:
    - 4 seats (0-3), any number of spectators
    - 36 unique value cards, 3 dealt to each seat, 24 left in the deck
    - Normal play wraps to round 3 -> one exchange round
    - Normal play wraps to round 5 (after the exchange) -> final phase
"""

from errors import CatalogError


# =============================================================================
# Table geometry
# =============================================================================

SEAT_COUNT = 4
SPECTATOR_SEAT = -1
LEADER_SEAT = 0

DECK_SIZE = 36
HAND_SIZE = 3
DEALT_CARDS = SEAT_COUNT * HAND_SIZE

# Max cards a seat may hold mid-turn (dealt hand + one drawn card)
MAX_HAND_SIZE = HAND_SIZE + 1

EXCHANGE_ROUND = 3
FINAL_ROUND = 5


# =============================================================================
# Catalogs
# =============================================================================

THEME_CARDS: list[str] = [
    "To wake up feeling great in the morning",
    "To enjoy a meal at my very best",
    "To go to sleep feeling satisfied",
    "To feel I gave today everything I had",
    "To feel like trying something new",
    "To spend the whole day smiling",
    "To keep myself smiling",
    "To thank someone I love",
    "To get into a good mood",
    "To feel at ease with myself",
]

VALUE_CARDS: list[str] = [
    "Challenge",
    "Boldness",
    "Adventure",
    "Passion",
    "Growth",
    "Diligence",
    "Responsibility",
    "Achievement",
    "Self-control",
    "Virtue",
    "Gratitude",
    "Service",
    "Sincerity",
    "Popularity",
    "Love",
    "Leisure",
    "Self-acceptance",
    "Cooperation",
    "Contribution",
    "Reliability",
    "Peace of mind",
    "Tolerance",
    "Honesty",
    "Being accepted",
    "Self-esteem",
    "Autonomy",
    "Time alone",
    "Grit",
    "Generosity",
    "Open-mindedness",
    "Change",
    "Hope",
    "Gentleness",
    "Flexibility",
    "Simplicity",
    "Fun",
]

THEME_OPTION_COUNT = 10


def check_catalog(cards: list[str], expected_size: int, label: str) -> None:
    """
    Ensure a catalog has exactly ``expected_size`` distinct names.

    Raises:
        CatalogError: On wrong size or any duplicate name.
    """
    if len(cards) != expected_size:
        raise CatalogError(
            f"{label} must contain {expected_size} cards (found {len(cards)})"
        )
    seen: set[str] = set()
    for name in cards:
        if name in seen:
            raise CatalogError(f"{label} contains duplicate card: {name}")
        seen.add(name)


check_catalog(VALUE_CARDS, DECK_SIZE, "VALUE_CARDS")
check_catalog(THEME_CARDS, THEME_OPTION_COUNT, "THEME_CARDS")
