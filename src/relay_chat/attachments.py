"""Attachment ingestion: filtering, size policy, and encoding.

Files are screened in a fixed order: hidden files are dropped silently,
oversized files are rejected per file, and an over-limit batch is held back
for explicit confirmation before any bytes are read.
"""

from __future__ import annotations

import base64
from collections.abc import Iterable
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Literal, Protocol
from urllib.parse import quote
from uuid import uuid4

import httpx

from .exceptions import ValidationError
from .models import (
    Attachment,
    AttachmentPayload,
    InlinePayload,
    IngestResult,
    RawFile,
    RejectedFile,
    RejectReason,
    RemotePayload,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_ATTACHMENTS_PER_BATCH = 50


@dataclass(frozen=True)
class AttachmentLimits:
    """Per-file size cap and per-batch count cap."""

    max_attachment_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES
    max_attachments_per_batch: int = DEFAULT_MAX_ATTACHMENTS_PER_BATCH

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> AttachmentLimits:
        att_cfg = config.get("attachments", {})
        return cls(
            max_attachment_bytes=int(
                att_cfg.get("max_attachment_bytes", DEFAULT_MAX_ATTACHMENT_BYTES)
            ),
            max_attachments_per_batch=int(
                att_cfg.get("max_attachments_per_batch", DEFAULT_MAX_ATTACHMENTS_PER_BATCH)
            ),
        )


class Uploader(Protocol):
    """Stores bytes remotely and returns a URL that references them."""

    async def upload(self, name: str, data: bytes, mime_type: str) -> str: ...


class SupabaseStorageUploader:
    """Upload attachment bytes into a storage bucket over HTTP.

    Objects are written to ``{storage_url}/object/{bucket}/{key}`` and
    referenced through the bucket's public URL.
    """

    def __init__(
        self,
        storage_url: str,
        bucket: str,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.storage_url = storage_url.rstrip("/")
        self.bucket = bucket
        self._access_token = access_token
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=60.0)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def public_url(self, key: str) -> str:
        return f"{self.storage_url}/object/public/{self.bucket}/{key}"

    async def upload(self, name: str, data: bytes, mime_type: str) -> str:
        key = f"{uuid4().hex}/{quote(name)}"
        response = await self._http.post(
            f"{self.storage_url}/object/{self.bucket}/{key}",
            content=data,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": mime_type,
                "x-upsert": "false",
            },
        )
        response.raise_for_status()
        return self.public_url(key)


def scan_directory(path: str | Path) -> list[RawFile]:
    """Return every regular file below ``path`` in a stable order.

    Hidden files are still returned; ``AttachmentIngestor.ingest`` drops them.
    Files inside hidden directories are skipped entirely.
    """
    root = Path(path).expanduser().resolve()
    if not root.is_dir():
        raise ValidationError(f"Not a folder: {path}")
    files: list[RawFile] = []
    for candidate in sorted(root.rglob("*")):
        relative_parts = candidate.relative_to(root).parts[:-1]
        if any(part.startswith((".", "~")) for part in relative_parts):
            continue
        if candidate.is_file():
            files.append(RawFile.from_path(candidate))
    return files


class AttachmentIngestor:
    """Validate candidate files and encode them into attachment records.

    The encoding mode is fixed per ingestor: ``"inline"`` embeds base64 bytes,
    ``"remote"`` hands the bytes to ``uploader`` and records the URL.
    """

    def __init__(
        self,
        limits: AttachmentLimits | None = None,
        *,
        mode: Literal["inline", "remote"] = "inline",
        uploader: Uploader | None = None,
    ) -> None:
        if mode == "remote" and uploader is None:
            raise ValueError("Remote attachment mode requires an uploader.")
        self.limits = limits or AttachmentLimits()
        self.mode = mode
        self.uploader = uploader

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        access_token: str = "",
        http_client: httpx.AsyncClient | None = None,
    ) -> AttachmentIngestor:
        att_cfg = config.get("attachments", {})
        mode = att_cfg.get("mode", "inline")
        uploader: Uploader | None = None
        if mode == "remote":
            uploader = SupabaseStorageUploader(
                str(att_cfg.get("storage_url", "")),
                str(att_cfg.get("bucket", "attachments")),
                access_token,
                http_client=http_client,
            )
        return cls(AttachmentLimits.from_config(config), mode=mode, uploader=uploader)

    async def ingest(
        self,
        files: Iterable[RawFile],
        limits: AttachmentLimits | None = None,
        *,
        confirmed: bool = False,
    ) -> IngestResult:
        """Screen and encode a batch.

        A batch larger than ``max_attachments_per_batch`` comes back with
        ``over_limit=True`` and its files in ``accepted`` as unencoded
        ``RawFile`` candidates; nothing is read until ``confirmed`` is set.
        A file that fails to read or upload lands in ``rejected`` and the rest
        of the batch carries on.
        """
        active = limits or self.limits
        result = IngestResult(confirmed=confirmed)
        candidates: list[RawFile] = []

        for raw in files:
            if raw.is_hidden:
                LOGGER.debug(
                    "attachments.hidden.skipped",
                    extra={"event": "attachments.hidden.skipped", "file": raw.name},
                )
                continue
            if raw.size > active.max_attachment_bytes:
                max_mb = active.max_attachment_bytes / (1024 * 1024)
                result.rejected.append(
                    RejectedFile(
                        raw,
                        RejectReason.TOO_LARGE,
                        f"{raw.name} is too large (max {max_mb:.1f}MB)",
                    )
                )
                LOGGER.warning(
                    "attachments.rejected",
                    extra={
                        "event": "attachments.rejected",
                        "file": raw.name,
                        "reason": RejectReason.TOO_LARGE.value,
                        "size": raw.size,
                    },
                )
                continue
            candidates.append(raw)

        result.over_limit = len(candidates) > active.max_attachments_per_batch
        if result.over_limit and not confirmed:
            LOGGER.info(
                "attachments.batch.needs_confirmation",
                extra={
                    "event": "attachments.batch.needs_confirmation",
                    "count": len(candidates),
                    "limit": active.max_attachments_per_batch,
                },
            )
            result.accepted.extend(candidates)
            return result

        for raw in candidates:
            attachment, rejection = await self._encode(raw, active)
            if attachment is not None:
                result.accepted.append(attachment)
            elif rejection is not None:
                result.rejected.append(rejection)
        return result

    async def _encode(
        self, raw: RawFile, limits: AttachmentLimits
    ) -> tuple[Attachment | None, RejectedFile | None]:
        try:
            data = await raw.read()
        except OSError as exc:
            LOGGER.warning(
                "attachments.read.failed",
                extra={"event": "attachments.read.failed", "file": raw.name, "error": str(exc)},
            )
            return None, RejectedFile(raw, RejectReason.READ_FAILED, str(exc))
        if len(data) > limits.max_attachment_bytes:
            # Grew between the size check and the read.
            return None, RejectedFile(raw, RejectReason.TOO_LARGE, f"{raw.name} is too large")

        payload: AttachmentPayload
        if self.mode == "inline":
            payload = InlinePayload(base64.b64encode(data).decode("ascii"))
        else:
            uploader = self.uploader
            if uploader is None:
                raise RuntimeError("Remote attachment mode requires an uploader.")
            try:
                url = await uploader.upload(raw.name, data, raw.mime_type)
            except Exception as exc:  # noqa: BLE001 - any upload failure is per-file.
                LOGGER.warning(
                    "attachments.upload.failed",
                    extra={
                        "event": "attachments.upload.failed",
                        "file": raw.name,
                        "error_type": type(exc).__name__,
                    },
                )
                return None, RejectedFile(raw, RejectReason.UPLOAD_FAILED, str(exc))
            payload = RemotePayload(url)

        return (
            Attachment(
                id=str(uuid4()),
                name=raw.name,
                size=len(data),
                mime_type=raw.mime_type,
                payload=payload,
            ),
            None,
        )
