"""Write finalized turn halves into the conversation store."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from uuid import uuid4

from .exceptions import PersistenceError
from .models import Attachment, Message, utc_now
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one store write. Failures are data, not exceptions."""

    message: Message
    error: PersistenceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PersistencePublisher:
    """Persist the user message up front and the assistant message once.

    A failed write is logged and returned as a failed ``PublishResult``; it is
    never retried and never undoes what the caller already holds in memory.
    """

    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    async def publish_user(self, conversation_id: str, message: Message) -> PublishResult:
        if message.role != "user":
            raise ValueError("publish_user expects a user message.")
        return await self._append(conversation_id, message)

    async def publish_assistant(
        self,
        conversation_id: str,
        final_content: str,
        attachments: Sequence[Attachment] | None = None,
        *,
        message_id: str | None = None,
    ) -> PublishResult:
        message = Message(
            id=message_id or str(uuid4()),
            role="assistant",
            content=final_content,
            timestamp=utc_now(),
            attachments=tuple(attachments or ()),
        )
        return await self._append(conversation_id, message)

    async def _append(self, conversation_id: str, message: Message) -> PublishResult:
        try:
            await self.store.append(conversation_id, message)
        except Exception as exc:  # noqa: BLE001 - store backends fail in many ways.
            error = (
                exc
                if isinstance(exc, PersistenceError)
                else PersistenceError(f"Unable to persist message {message.id}: {exc}")
            )
            LOGGER.warning(
                "persistence.append.failed",
                extra={
                    "event": "persistence.append.failed",
                    "conversation_id": conversation_id,
                    "message_id": message.id,
                    "role": message.role,
                    "error_type": type(exc).__name__,
                },
            )
            return PublishResult(message=message, error=error)
        LOGGER.info(
            "persistence.append.ok",
            extra={
                "event": "persistence.append.ok",
                "conversation_id": conversation_id,
                "message_id": message.id,
                "role": message.role,
            },
        )
        return PublishResult(message=message)
