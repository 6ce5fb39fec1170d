"""
Structured results for game operations.

Every public service operation is wrapped with ``structured_action``, so
callers across the network boundary always get an ActionResult:

- GameError  -> failure with the error's code, not retryable
- StoreError -> failure with code ``store_error``, retryable
- anything else -> failure with code ``internal_error``, retryable, logged
  with a traceback
"""

import functools
import logging
from typing import Awaitable, Callable

from errors import GameError, StoreError
from logging_config import room_id_var
from models.entities import ActionResult

logger = logging.getLogger(__name__)

STORE_ERROR = "store_error"
INTERNAL_ERROR = "internal_error"


def structured_action(name: str) -> Callable:
    """
    Decorate an async service method so it never raises.

    The first positional argument after ``self`` is taken as the room id
    and bound into the logging context for the duration of the call.

    Args:
        name: Operation name used in log lines.
    """

    def decorator(fn: Callable[..., Awaitable[ActionResult]]) -> Callable[..., Awaitable[ActionResult]]:
        @functools.wraps(fn)
        async def wrapper(self, room_id: str, *args, **kwargs) -> ActionResult:
            token = room_id_var.set(room_id)
            try:
                return await fn(self, room_id, *args, **kwargs)
            except GameError as e:
                logger.info(f"{name} rejected: {e}")
                return ActionResult.fail(e.code, e.message, **e.details())
            except StoreError as e:
                logger.error(f"{name} failed in store: {e}")
                return ActionResult.fail(
                    STORE_ERROR,
                    "The game server could not save your action. Please try again.",
                    retryable=True,
                )
            except Exception as e:
                logger.error(f"{name} failed: {e}", exc_info=True)
                return ActionResult.fail(
                    INTERNAL_ERROR,
                    "Something went wrong. Please try again.",
                    retryable=True,
                )
            finally:
                room_id_var.reset(token)

        return wrapper

    return decorator
