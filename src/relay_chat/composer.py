"""Turn pending input into an outbound user message."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from uuid import uuid4

from .exceptions import ValidationError
from .models import Attachment, Message, utc_now


class MessageComposer:
    """Build user messages from text and already-encoded attachments."""

    def __init__(
        self,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._new_id = id_factory or (lambda: str(uuid4()))
        self._now = clock or utc_now

    def compose(self, text: str, attachments: Sequence[Attachment] = ()) -> Message | None:
        """Return a user message, or ``None`` when there is nothing to send."""
        pending = [item for item in attachments if not isinstance(item, Attachment)]
        if pending:
            raise ValidationError(
                f"{len(pending)} attachment(s) are not encoded yet; confirm the batch first."
            )
        normalized = (text or "").strip()
        if not normalized and not attachments:
            return None
        return Message(
            id=self._new_id(),
            role="user",
            content=normalized,
            timestamp=self._now(),
            attachments=tuple(attachments),
        )
