"""Per-conversation turn state machine and the single-active-turn guard."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

from .exceptions import ConcurrencyError

LOGGER = logging.getLogger(__name__)


class TurnState(str, Enum):
    """Finite state machine for one conversation's active turn."""

    IDLE = "IDLE"
    STREAMING = "STREAMING"
    ERROR = "ERROR"
    CANCELLING = "CANCELLING"


BUSY_STATES = frozenset({TurnState.STREAMING, TurnState.CANCELLING})


class TurnRegistry:
    """Track turn state per conversation with async lock semantics.

    ``begin`` is the busy flag: it refuses a second turn while one is still
    streaming or being cancelled on the same conversation.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._states: dict[str, TurnState] = {}

    async def get_state(self, conversation_id: str) -> TurnState:
        async with self._lock:
            return self._states.get(conversation_id, TurnState.IDLE)

    async def can_send_message(self, conversation_id: str) -> bool:
        async with self._lock:
            return self._states.get(conversation_id, TurnState.IDLE) not in BUSY_STATES

    async def begin(self, conversation_id: str) -> None:
        """Mark a turn as active or raise ``ConcurrencyError``."""
        async with self._lock:
            current = self._states.get(conversation_id, TurnState.IDLE)
            if current in BUSY_STATES:
                LOGGER.warning(
                    "turn.rejected.busy",
                    extra={
                        "event": "turn.rejected.busy",
                        "conversation_id": conversation_id,
                        "state": current.value,
                    },
                )
                raise ConcurrencyError(
                    f"Conversation {conversation_id} already has a turn in progress."
                )
            self._states[conversation_id] = TurnState.STREAMING

    async def transition_to(self, conversation_id: str, new_state: TurnState) -> TurnState:
        async with self._lock:
            previous = self._states.get(conversation_id, TurnState.IDLE)
            self._states[conversation_id] = new_state
        LOGGER.debug(
            "turn.state.transition",
            extra={
                "event": "turn.state.transition",
                "conversation_id": conversation_id,
                "from_state": previous.value,
                "to_state": new_state.value,
            },
        )
        return new_state

    async def transition_if(
        self,
        conversation_id: str,
        expected_state: TurnState,
        new_state: TurnState,
    ) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._states.get(conversation_id, TurnState.IDLE) != expected_state:
                return False
            self._states[conversation_id] = new_state
            return True
