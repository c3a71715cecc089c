"""Tests for the turn event bus."""

from __future__ import annotations

import unittest

from relay_chat.events import TURN_UPDATED, TURN_WARNING, EventBus, TurnEvent
from relay_chat.models import StreamState


class EventBusTests(unittest.IsolatedAsyncioTestCase):
    async def test_sync_and_async_handlers_receive_snapshot(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        def sync_handler(event: TurnEvent) -> None:
            seen.append(f"sync:{event.state.accumulated_content}")

        async def async_handler(event: TurnEvent) -> None:
            seen.append(f"async:{event.conversation_id}")

        bus.subscribe(TURN_UPDATED, sync_handler)
        bus.subscribe(TURN_UPDATED, async_handler)
        state = StreamState("a-1").with_content("Recur")
        event = await bus.publish(TURN_UPDATED, "c-1", state)

        self.assertEqual(seen, ["sync:Recur", "async:c-1"])
        self.assertIs(event.state, state)

    async def test_failing_handler_does_not_block_others(self) -> None:
        bus = EventBus()
        seen: list[TurnEvent] = []

        def broken(event: TurnEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(TURN_WARNING, broken)
        bus.subscribe(TURN_WARNING, seen.append)
        with self.assertLogs("relay_chat.events.bus", level="ERROR"):
            await bus.publish(TURN_WARNING, "c-1", stage="user")
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].data, {"stage": "user"})

    async def test_unsubscribe_and_clear(self) -> None:
        bus = EventBus()
        seen: list[TurnEvent] = []
        bus.subscribe(TURN_UPDATED, seen.append)
        bus.unsubscribe(TURN_UPDATED, seen.append)
        await bus.publish(TURN_UPDATED, "c-1")
        bus.subscribe(TURN_UPDATED, seen.append)
        bus.clear()
        await bus.publish(TURN_UPDATED, "c-1")
        self.assertEqual(seen, [])


if __name__ == "__main__":
    unittest.main()
