"""Bounded outbound history and deterministic context trimming."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
import base64
import binascii
from typing import Any

from .models import Attachment, InlinePayload, Message

# Outbound wire message ({"role": ..., "content": ...}).
WireMessage = dict[str, Any]

TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/javascript",
        "application/x-yaml",
        "application/yaml",
        "application/toml",
        "application/x-sh",
    }
)


def is_text_attachment(attachment: Attachment) -> bool:
    mime = attachment.mime_type.lower()
    return mime.startswith(TEXT_MIME_PREFIXES) or mime in TEXT_MIME_TYPES


def _decode_inline_text(attachment: Attachment) -> str | None:
    if not isinstance(attachment.payload, InlinePayload):
        return None
    try:
        raw = base64.b64decode(attachment.payload.data_base64, validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None


def render_content(message: Message) -> str:
    """Return the text the model sees for one stored message.

    Inline text attachments are folded in as fenced blocks; anything else is
    listed by name so the model at least knows it was attached.
    """
    if not message.attachments:
        return message.content
    parts = [message.content] if message.content else []
    for attachment in message.attachments:
        text = _decode_inline_text(attachment) if is_text_attachment(attachment) else None
        if text is not None:
            parts.append(f"File: {attachment.name}\n```\n{text}\n```")
        else:
            parts.append(
                f"[Attached file: {attachment.name} ({attachment.mime_type}, "
                f"{attachment.size} bytes)]"
            )
    return "\n\n".join(parts)


class ContextWindow:
    """Build the ordered wire history: system preamble, prior turns, new turn.

    The preamble is always kept; older turns are dropped first when the
    message-count or estimated-token budget is exceeded. The newest message
    is never dropped.
    """

    def __init__(
        self,
        max_history_messages: int = 200,
        max_context_tokens: int = 131_072,
    ) -> None:
        self.max_history_messages = max(1, max_history_messages)
        self.max_context_tokens = max(1, max_context_tokens)

    @staticmethod
    def estimate_tokens(role: str, content: str) -> int:
        """Estimate token cost for a single message from role/content."""
        role_cost = 2 if role else 0
        return role_cost + len(content) // 4 + len(content.split()) + 2

    def estimated_tokens(self, messages: Iterable[WireMessage]) -> int:
        total = sum(
            self.estimate_tokens(str(m.get("role", "")), str(m.get("content", "")))
            for m in messages
        )
        return max(total, 1)

    def build(self, system_prompt: str, history: Sequence[Message]) -> list[WireMessage]:
        system_msgs: list[WireMessage] = []
        if system_prompt.strip():
            system_msgs.append({"role": "system", "content": system_prompt.strip()})

        turns: list[WireMessage] = [
            {"role": message.role, "content": render_content(message)}
            for message in history
        ]
        max_turns = max(1, self.max_history_messages - len(system_msgs))
        turns = turns[-max_turns:]

        system_cost = self.estimated_tokens(system_msgs) if system_msgs else 0
        budget = max(0, self.max_context_tokens - system_cost)

        # Walk newest to oldest; stop at the first message that does not fit.
        kept_start = len(turns)
        cumulative = 0
        for index in range(len(turns) - 1, -1, -1):
            cost = self.estimate_tokens(turns[index]["role"], turns[index]["content"])
            if cumulative + cost <= budget or index == len(turns) - 1:
                cumulative += cost
                kept_start = index
            else:
                break
        return system_msgs + turns[kept_start:]
