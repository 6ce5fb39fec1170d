"""
Error taxonomy for the Value Cards server.

Three families:
- CatalogError: fatal configuration/programmer errors (bad card catalog,
  broken shuffle or deal). Never converted into a result; startup aborts.
- GameError: business-rule rejections. Each carries a stable ``code`` that
  clients can switch on and a human-readable message. Services turn these
  into failed ActionResults the player can retry with a different choice.
- StoreError: transport or lock failures from an entity store. Services
  turn these into retryable failures and leave state untouched.
"""

from typing import Optional


class CatalogError(Exception):
    """Card catalog or deck failed a structural check."""
    pass


class StoreError(Exception):
    """Entity store could not complete an operation."""
    pass


class ConcurrencyError(StoreError):
    """A write collided with a uniqueness constraint in the store."""
    pass


class GameError(Exception):
    """Base class for business-rule rejections."""

    code = "game_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def details(self) -> dict:
        """Extra fields to expose alongside the code and message."""
        return {}


# =============================================================================
# Lookup failures
# =============================================================================

class RoomNotFound(GameError):
    code = "room_not_found"


class PlayerNotFound(GameError):
    code = "player_not_found"


class NotAPlayer(GameError):
    """Spectators cannot take seat actions."""
    code = "not_a_player"


# =============================================================================
# Card mutation rejections
# =============================================================================

class EmptyDeck(GameError):
    code = "empty_deck"


class CardNotInHand(GameError):
    code = "card_not_in_hand"


class CardNotOnBoard(GameError):
    code = "card_not_on_board"


class DuplicateCardViolation(GameError):
    """
    An exchange would place a card in two containers at once.

    Attributes:
        guard: Which check tripped, ``hand_card_on_board`` or
            ``board_card_in_hand``.
    """

    code = "duplicate_card"

    HAND_CARD_ON_BOARD = "hand_card_on_board"
    BOARD_CARD_IN_HAND = "board_card_in_hand"

    def __init__(self, message: str, guard: str):
        super().__init__(message)
        self.guard = guard

    def details(self) -> dict:
        return {"guard": self.guard}


class NothingToReplenish(GameError):
    code = "nothing_to_replenish"


# =============================================================================
# Phase and turn rejections
# =============================================================================

class WrongPhase(GameError):
    code = "wrong_phase"


class WrongStep(GameError):
    code = "wrong_step"


class NotYourTurn(GameError):
    code = "not_your_turn"


class NotRecipientTurn(GameError):
    code = "not_recipient_turn"


class SelfGift(GameError):
    code = "self_gift"


class AlreadyGifted(GameError):
    code = "already_gifted"


class EmptyMessage(GameError):
    code = "empty_message"


class AlreadyVoted(GameError):
    code = "already_voted"


class AlreadyShared(GameError):
    code = "already_shared"


class InvalidChoice(GameError):
    """Out-of-range vote index, percentage, or similar input."""
    code = "invalid_choice"


class InvalidTransition(GameError):
    code = "invalid_transition"
