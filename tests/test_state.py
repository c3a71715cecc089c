"""Tests for the per-conversation turn registry."""

from __future__ import annotations

import asyncio
import unittest

from relay_chat.exceptions import ConcurrencyError
from relay_chat.state import TurnRegistry, TurnState


class TurnRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_begin_blocks_second_turn_on_same_conversation(self) -> None:
        registry = TurnRegistry()
        await registry.begin("c-1")
        self.assertFalse(await registry.can_send_message("c-1"))
        with self.assertRaises(ConcurrencyError):
            await registry.begin("c-1")
        await registry.begin("c-2")
        self.assertEqual(await registry.get_state("c-2"), TurnState.STREAMING)

    async def test_error_and_idle_allow_a_new_turn(self) -> None:
        registry = TurnRegistry()
        for terminal in (TurnState.ERROR, TurnState.IDLE):
            with self.subTest(terminal=terminal):
                await registry.begin("c-1")
                await registry.transition_to("c-1", terminal)
                self.assertTrue(await registry.can_send_message("c-1"))

    async def test_cancelling_is_still_busy(self) -> None:
        registry = TurnRegistry()
        await registry.begin("c-1")
        self.assertTrue(
            await registry.transition_if("c-1", TurnState.STREAMING, TurnState.CANCELLING)
        )
        self.assertFalse(
            await registry.transition_if("c-1", TurnState.STREAMING, TurnState.IDLE)
        )
        with self.assertRaises(ConcurrencyError):
            await registry.begin("c-1")

    async def test_only_one_concurrent_begin_wins(self) -> None:
        registry = TurnRegistry()

        async def attempt() -> bool:
            await asyncio.sleep(0)
            try:
                await registry.begin("c-1")
            except ConcurrencyError:
                return False
            return True

        results = await asyncio.gather(*(attempt() for _ in range(10)))
        self.assertEqual(sum(results), 1)


if __name__ == "__main__":
    unittest.main()
