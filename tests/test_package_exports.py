"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import relay_chat


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        for name in relay_chat.__all__:
            with self.subTest(name=name):
                self.assertIsNotNone(getattr(relay_chat, name))
        self.assertTrue(callable(relay_chat.load_config))
        self.assertTrue(issubclass(relay_chat.NetworkError, relay_chat.RelayChatError))

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(relay_chat, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
