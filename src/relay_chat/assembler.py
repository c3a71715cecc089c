"""Server-sent event decoding and incremental assembly of the assistant reply."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, Awaitable, Callable
import codecs
import inspect
import json
import logging
from typing import Any

from .exceptions import NetworkError, ParseError, StreamCancelledError
from .models import StreamState, StreamStatus

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "data: [DONE]"

UpdateCallback = Callable[[str], Awaitable[None] | None]
CompleteCallback = Callable[[str], Awaitable[None] | None]
ErrorCallback = Callable[[str, BaseException], Awaitable[None] | None]


class SSELineDecoder:
    """Turn arbitrarily fragmented bytes into complete text lines.

    The carry-over buffer and the incremental UTF-8 decoder both live across
    ``feed`` calls, so the emitted lines do not depend on where the transport
    split the bytes.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()
        return [part.removesuffix("\r") for part in parts]

    def flush(self) -> list[str]:
        """Return the unterminated tail (if any) once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        tail = tail.removesuffix("\r")
        return [tail] if tail else []


def extract_delta(payload: Any) -> str:
    """Pull ``choices[0].delta.content`` out of a parsed chunk, or ``""``."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def parse_data_line(line: str) -> str:
    """Return the content delta of one ``data:`` line.

    Raises ``ParseError`` when the payload is not valid JSON.
    """
    raw = line[len(DATA_PREFIX):]
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ParseError(f"Malformed stream payload: {raw[:80]!r}") from exc
    return extract_delta(payload)


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class StreamAssembler:
    """Accumulate streamed deltas into one evolving assistant message.

    One instance owns one turn. ``state`` always reflects the latest snapshot
    and is never mutated by anyone else.
    """

    def __init__(self, target_message_id: str) -> None:
        self._state = StreamState(target_message_id=target_message_id)
        self._decoder = SSELineDecoder()
        self.skipped_lines = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def accumulated_content(self) -> str:
        return self._state.accumulated_content

    async def _process_lines(
        self, lines: list[str], on_update: UpdateCallback
    ) -> bool:
        """Apply complete lines; return True when the done sentinel was seen."""
        for line in lines:
            if not line.startswith(DATA_PREFIX):
                continue
            if line == DONE_SENTINEL:
                return True
            try:
                delta = parse_data_line(line)
            except ParseError as exc:
                self.skipped_lines += 1
                LOGGER.debug(
                    "stream.line.skipped",
                    extra={
                        "event": "stream.line.skipped",
                        "message_id": self._state.target_message_id,
                        "reason": str(exc),
                    },
                )
                continue
            if not delta:
                continue
            self._state = self._state.with_content(
                self._state.accumulated_content + delta
            )
            await _invoke(on_update, self._state.accumulated_content)
        return False

    async def _apply(
        self, lines: list[str], on_update: UpdateCallback, on_error: ErrorCallback
    ) -> bool:
        try:
            return await self._process_lines(lines, on_update)
        except asyncio.CancelledError:
            # Cancelled while an update callback was awaiting.
            await self._fail(StreamCancelledError("Stream cancelled."), on_error)
            raise

    async def consume(
        self,
        byte_stream: AsyncIterable[bytes],
        on_update: UpdateCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
    ) -> None:
        """Drive the stream to completion, reporting only through callbacks.

        Exactly one of ``on_complete`` or ``on_error`` fires. Failures raised
        by the transport read are reported with the partial content; errors
        raised by the callbacks themselves propagate. A task cancellation is
        reported as ``StreamCancelledError`` and then re-raised so the owning
        task still ends cancelled.
        """
        if self._state.status is not StreamStatus.PENDING:
            raise RuntimeError("A StreamAssembler consumes exactly one stream.")

        iterator = aiter(byte_stream)
        try:
            while True:
                try:
                    chunk = await anext(iterator)
                except StopAsyncIteration:
                    await self._apply(self._decoder.flush(), on_update, on_error)
                    break
                except asyncio.CancelledError:
                    await self._fail(StreamCancelledError("Stream cancelled."), on_error)
                    raise
                except (StreamCancelledError, NetworkError) as exc:
                    await self._fail(exc, on_error)
                    return
                except Exception as exc:  # noqa: BLE001 - any transport read failure ends the turn.
                    await self._fail(
                        NetworkError(f"Connection dropped mid-stream: {exc}"), on_error
                    )
                    return
                if await self._apply(self._decoder.feed(chunk), on_update, on_error):
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        self._state = self._state.completed()
        LOGGER.info(
            "stream.complete",
            extra={
                "event": "stream.complete",
                "message_id": self._state.target_message_id,
                "chars": len(self._state.accumulated_content),
                "skipped_lines": self.skipped_lines,
            },
        )
        await _invoke(on_complete, self._state.accumulated_content)

    async def _fail(self, error: BaseException, on_error: ErrorCallback) -> None:
        self._state = self._state.failed(error)
        LOGGER.warning(
            "stream.failed",
            extra={
                "event": "stream.failed",
                "message_id": self._state.target_message_id,
                "error_type": type(error).__name__,
                "chars": len(self._state.accumulated_content),
            },
        )
        await _invoke(on_error, self._state.accumulated_content, error)
