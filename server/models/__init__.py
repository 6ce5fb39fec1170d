"""Models package for Value Cards entities."""

from .entities import (
    RoomStatus,
    FinalPhaseStep,
    PlayerRole,
    ResonancePhase,
    ExchangeActionType,
    Room,
    Player,
    FinalGift,
    Vote,
    ResonanceShare,
    Gift,
    ExchangeAction,
    ActionResult,
)

__all__ = [
    "RoomStatus",
    "FinalPhaseStep",
    "PlayerRole",
    "ResonancePhase",
    "ExchangeActionType",
    "Room",
    "Player",
    "FinalGift",
    "Vote",
    "ResonanceShare",
    "Gift",
    "ExchangeAction",
    "ActionResult",
]
