"""Services package for Value Cards game operations."""

from .actions import structured_action
from .card_service import CardService
from .phase_service import PhaseService

__all__ = [
    "structured_action",
    "CardService",
    "PhaseService",
]
