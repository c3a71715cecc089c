"""Tests for user message composition."""

from __future__ import annotations

from datetime import UTC, datetime
import unittest

from relay_chat.composer import MessageComposer
from relay_chat.exceptions import ValidationError
from relay_chat.models import Attachment, InlinePayload, RawFile


class MessageComposerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        self.composer = MessageComposer(id_factory=lambda: "m-1", clock=lambda: self.now)
        self.attachment = Attachment("att", "a.txt", 1, "text/plain", InlinePayload("eA=="))

    def test_empty_input_is_a_no_op(self) -> None:
        self.assertIsNone(self.composer.compose(""))
        self.assertIsNone(self.composer.compose("   \n\t"))

    def test_text_is_stripped(self) -> None:
        message = self.composer.compose("  explain recursion \n")
        self.assertIsNotNone(message)
        self.assertEqual(message.content, "explain recursion")
        self.assertEqual(message.role, "user")
        self.assertEqual(message.id, "m-1")
        self.assertEqual(message.timestamp, self.now)
        self.assertEqual(message.attachments, ())

    def test_attachments_alone_are_sendable(self) -> None:
        message = self.composer.compose("", [self.attachment])
        self.assertEqual(message.content, "")
        self.assertEqual(message.attachments, (self.attachment,))

    def test_unencoded_candidates_are_refused(self) -> None:
        pending = RawFile.from_bytes("big-batch.txt", b"x")
        with self.assertRaises(ValidationError):
            self.composer.compose("see files", [self.attachment, pending])

    def test_default_ids_are_unique(self) -> None:
        composer = MessageComposer()
        first = composer.compose("a")
        second = composer.compose("a")
        self.assertNotEqual(first.id, second.id)


if __name__ == "__main__":
    unittest.main()
