"""Turn progress events."""

from .bus import (
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_UPDATED,
    TURN_WARNING,
    EventBus,
    TurnEvent,
)

__all__ = [
    "EventBus",
    "TurnEvent",
    "TURN_UPDATED",
    "TURN_COMPLETED",
    "TURN_FAILED",
    "TURN_WARNING",
]
