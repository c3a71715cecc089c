"""Publish/subscribe hub for turn progress.

Usage:
    bus = EventBus()

    async def on_update(event):
        print(event.state.accumulated_content)

    bus.subscribe(TURN_UPDATED, on_update)
    await bus.publish(TURN_UPDATED, "conv-1", state)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import inspect
import logging
from typing import Any

from ..models import StreamState

LOGGER = logging.getLogger(__name__)

TURN_UPDATED = "turn.updated"
TURN_COMPLETED = "turn.completed"
TURN_FAILED = "turn.failed"
TURN_WARNING = "turn.warning"

Handler = Callable[["TurnEvent"], Awaitable[None] | None]


@dataclass(frozen=True)
class TurnEvent:
    """One observation of a conversation turn.

    ``state`` is an immutable snapshot; subscribers cannot alter the turn.
    """

    name: str
    conversation_id: str
    state: StreamState | None = None
    error: BaseException | None = None
    data: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Fan turn events out to subscribers.

    A subscriber that raises is logged and skipped; it never breaks the turn
    or starves the other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(
            "events.subscribed",
            extra={"event": "events.subscribed", "event_name": event_name},
        )

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(
        self,
        event_name: str,
        conversation_id: str,
        state: StreamState | None = None,
        *,
        error: BaseException | None = None,
        **data: Any,
    ) -> TurnEvent:
        event = TurnEvent(
            name=event_name,
            conversation_id=conversation_id,
            state=state,
            error=error,
            data=data,
        )
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - subscriber isolation.
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "event_name": event_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
        return event

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
