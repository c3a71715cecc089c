"""Value types shared by the ingestion, streaming, and persistence stages."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
import json
import mimetypes
from pathlib import Path
from typing import Any, Literal

import aiofiles

from .exceptions import ValidationError

Role = Literal["user", "assistant"]

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class InlinePayload:
    """Attachment bytes carried in the message record as base64 text."""

    data_base64: str
    kind: Literal["inline"] = "inline"


@dataclass(frozen=True)
class RemotePayload:
    """Attachment bytes stored elsewhere and referenced by URL."""

    url: str
    kind: Literal["remote"] = "remote"


AttachmentPayload = InlinePayload | RemotePayload


@dataclass(frozen=True)
class Attachment:
    """An encoded file attached to a user message."""

    id: str
    name: str
    size: int
    mime_type: str
    payload: AttachmentPayload

    @property
    def is_inline(self) -> bool:
        return isinstance(self.payload, InlinePayload)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "size": self.size,
            "type": self.mime_type,
            "kind": self.payload.kind,
        }
        if isinstance(self.payload, InlinePayload):
            data["content"] = self.payload.data_base64
        else:
            data["url"] = self.payload.url
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        """Decode a stored attachment, rejecting records that carry both or neither payload."""
        content = data.get("content")
        url = data.get("url")
        kind = data.get("kind")
        if kind is None:
            # Rows written before the kind tag existed.
            kind = "inline" if content else "remote"
        payload: AttachmentPayload
        if kind == "inline" and isinstance(content, str) and not url:
            payload = InlinePayload(content)
        elif kind == "remote" and isinstance(url, str) and url and not content:
            payload = RemotePayload(url)
        else:
            raise ValueError(
                f"Attachment {data.get('name')!r} must carry exactly one of content or url."
            )
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            size=int(data.get("size", 0)),
            mime_type=str(data.get("type") or DEFAULT_MIME_TYPE),
            payload=payload,
        )


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Message:
    """A single conversation turn half; immutable once created."""

    id: str
    role: Role
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    attachments: tuple[Attachment, ...] = ()

    def to_row(self, conversation_id: str) -> dict[str, Any]:
        """Return the conversation-store row shape for this message."""
        attachments: str | None = None
        if self.attachments:
            attachments = json.dumps(
                [item.to_dict() for item in self.attachments], ensure_ascii=False
            )
        return {
            "id": self.id,
            "conversation_id": conversation_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.timestamp.isoformat(),
            "attachments": attachments,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        role = str(row.get("role", "")).strip().lower()
        if role not in {"user", "assistant"}:
            raise ValueError(f"Unsupported message role {role!r}.")
        raw_attachments = row.get("attachments")
        decoded: list[Any] = json.loads(raw_attachments) if raw_attachments else []
        created_at = row.get("created_at")
        timestamp = (
            datetime.fromisoformat(created_at)
            if isinstance(created_at, str)
            else utc_now()
        )
        return cls(
            id=str(row["id"]),
            role=role,  # type: ignore[arg-type]
            content=str(row.get("content") or ""),
            timestamp=timestamp,
            attachments=tuple(Attachment.from_dict(item) for item in decoded),
        )


class StreamStatus(str, Enum):
    """Lifecycle of the in-flight assistant message."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETE, StreamStatus.ERROR)


@dataclass(frozen=True)
class StreamState:
    """Snapshot of one assistant turn as it is assembled.

    Each transition returns a new snapshot; content only grows until the
    status becomes terminal.
    """

    target_message_id: str
    accumulated_content: str = ""
    status: StreamStatus = StreamStatus.PENDING
    error: BaseException | None = None

    def with_content(self, content: str) -> StreamState:
        if self.status.is_terminal:
            raise ValueError(f"Stream {self.target_message_id} is already {self.status.value}.")
        if not content.startswith(self.accumulated_content):
            raise ValueError("Accumulated content may only grow.")
        return replace(self, accumulated_content=content, status=StreamStatus.STREAMING)

    def completed(self) -> StreamState:
        if self.status.is_terminal:
            raise ValueError(f"Stream {self.target_message_id} is already {self.status.value}.")
        return replace(self, status=StreamStatus.COMPLETE)

    def failed(self, error: BaseException) -> StreamState:
        if self.status.is_terminal:
            raise ValueError(f"Stream {self.target_message_id} is already {self.status.value}.")
        return replace(self, status=StreamStatus.ERROR, error=error)


class RawFile:
    """A candidate file for ingestion, readable once or many times."""

    def __init__(
        self,
        name: str,
        size: int,
        mime_type: str,
        reader: Callable[[], Awaitable[bytes]],
    ) -> None:
        self.name = name
        self.size = size
        self.mime_type = mime_type or DEFAULT_MIME_TYPE
        self._reader = reader

    def __repr__(self) -> str:
        return f"RawFile(name={self.name!r}, size={self.size}, mime_type={self.mime_type!r})"

    async def read(self) -> bytes:
        return await self._reader()

    @property
    def is_hidden(self) -> bool:
        """Dotfiles and editor/office lock files are never attached."""
        return self.name.startswith((".", "~"))

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str | None = None) -> RawFile:
        async def _read() -> bytes:
            return data

        return cls(name, len(data), mime_type or guess_mime_type(name), _read)

    @classmethod
    def from_path(cls, path: str | Path) -> RawFile:
        """Describe a file on disk; its bytes are read lazily with aiofiles."""
        resolved = Path(path).expanduser().resolve()
        size = resolved.stat().st_size

        async def _read() -> bytes:
            async with aiofiles.open(resolved, "rb") as handle:
                return await handle.read()

        return cls(resolved.name, size, guess_mime_type(resolved.name), _read)


def guess_mime_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_MIME_TYPE


class RejectReason(str, Enum):
    TOO_LARGE = "TooLarge"
    READ_FAILED = "ReadFailed"
    UPLOAD_FAILED = "UploadFailed"


@dataclass(frozen=True)
class RejectedFile:
    file: RawFile
    reason: RejectReason
    detail: str = ""

    def as_error(self) -> ValidationError:
        return ValidationError(self.detail or f"{self.file.name}: {self.reason.value}")


@dataclass
class IngestResult:
    """Outcome of one ingestion call.

    ``accepted`` holds every filtered, size-valid file. Once encoded they are
    ``Attachment`` records; an over-limit batch that is not yet confirmed
    keeps them as unencoded ``RawFile`` candidates instead.
    """

    accepted: list[Attachment | RawFile] = field(default_factory=list)
    rejected: list[RejectedFile] = field(default_factory=list)
    over_limit: bool = False
    confirmed: bool = False

    @property
    def needs_confirmation(self) -> bool:
        return self.over_limit and not self.confirmed

    @property
    def attachments(self) -> list[Attachment]:
        """Encoded attachments, ready to compose into a message."""
        return [item for item in self.accepted if isinstance(item, Attachment)]

    @property
    def pending(self) -> list[RawFile]:
        """Candidates still waiting for confirmation before encoding."""
        return [item for item in self.accepted if isinstance(item, RawFile)]


@dataclass(frozen=True)
class Credentials:
    """Bearer session token presented to the relay."""

    access_token: str

    @property
    def is_valid(self) -> bool:
        return bool(self.access_token and self.access_token.strip())


@dataclass(frozen=True)
class CompletionSettings:
    """Per-request model settings passed explicitly into the completion client."""

    relay_url: str
    model: str = "grok-4"
    temperature: float = 0.7
    system_prompt: str = "You are a helpful assistant."
    timeout_seconds: float = 120.0

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> CompletionSettings:
        relay_cfg = config.get("relay", {})
        return cls(
            relay_url=str(relay_cfg.get("url", "")),
            model=str(relay_cfg.get("model", "grok-4")),
            temperature=float(relay_cfg.get("temperature", 0.7)),
            system_prompt=str(relay_cfg.get("system_prompt", "")),
            timeout_seconds=float(relay_cfg.get("timeout", 120)),
        )
