"""Streaming HTTP client for the completion relay."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import logging
from typing import Any

import httpx

from .context import ContextWindow, WireMessage
from .exceptions import AuthError, NetworkError, StreamCancelledError
from .models import CompletionSettings, Credentials, Message

LOGGER = logging.getLogger(__name__)

MAX_DIAGNOSTIC_CHARS = 500


class CompletionStream:
    """Raw byte chunks of one relay response.

    Iterating yields bytes exactly as the transport delivers them. Transport
    failures surface as ``NetworkError``; a set cancel event surfaces as
    ``StreamCancelledError`` before the next chunk is handed out.
    """

    def __init__(
        self,
        response: httpx.Response,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._response = response
        self._cancel_event = cancel_event
        self._chunks = response.aiter_bytes()
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def __aiter__(self) -> CompletionStream:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        if self._cancel_event is None:
            chunk = await self._read_next()
        else:
            chunk = await self._read_next_or_cancel(self._cancel_event)
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def _read_next_or_cancel(self, cancel_event: asyncio.Event) -> bytes | None:
        if cancel_event.is_set():
            raise StreamCancelledError("Stream cancelled.")
        read_task = asyncio.ensure_future(self._read_next())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait(
                {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            read_task.cancel()
            raise
        finally:
            cancel_task.cancel()
        if read_task.done():
            return read_task.result()
        read_task.cancel()
        try:
            await read_task
        except (asyncio.CancelledError, NetworkError):
            pass
        raise StreamCancelledError("Stream cancelled.")

    async def _read_next(self) -> bytes | None:
        """Return the next chunk, or ``None`` once the body is exhausted."""
        try:
            return await anext(self._chunks)
        except StopAsyncIteration:
            return None
        except httpx.HTTPError as exc:
            raise NetworkError(f"Relay connection failed mid-stream: {exc}") from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class StreamingCompletionClient:
    """Open streamed completion requests against the relay.

    The client never parses the stream; it validates the credential, sends
    the ordered history and hands back the raw body.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        context_window: ContextWindow | None = None,
    ) -> None:
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self.context_window = context_window or ContextWindow()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> StreamingCompletionClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @staticmethod
    def ensure_credentials(credentials: Credentials | None) -> Credentials:
        if credentials is None or not credentials.is_valid:
            raise AuthError("No valid session credential is available.")
        return credentials

    def build_payload(
        self, history: Sequence[Message], settings: CompletionSettings
    ) -> dict[str, Any]:
        messages: list[WireMessage] = self.context_window.build(
            settings.system_prompt, history
        )
        return {
            "model": settings.model,
            "messages": messages,
            "temperature": settings.temperature,
            "stream": True,
        }

    async def open(
        self,
        history: Sequence[Message],
        settings: CompletionSettings,
        credentials: Credentials | None,
        cancel_event: asyncio.Event | None = None,
    ) -> CompletionStream:
        """Send the history and return the streamed response body.

        Raises ``AuthError`` before any network traffic when the credential is
        missing, ``NetworkError`` on transport failure or non-2xx status, and
        ``StreamCancelledError`` when cancelled while awaiting headers.
        """
        token = self.ensure_credentials(credentials).access_token.strip()
        payload = self.build_payload(history, settings)
        request = self._http.build_request(
            "POST",
            settings.relay_url,
            json=payload,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "text/event-stream",
            },
            timeout=httpx.Timeout(settings.timeout_seconds, connect=10.0),
        )
        LOGGER.info(
            "relay.request.start",
            extra={
                "event": "relay.request.start",
                "model": settings.model,
                "messages": len(payload["messages"]),
            },
        )

        response = await self._send(request, cancel_event)

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            detail = body.strip()[:MAX_DIAGNOSTIC_CHARS] or response.reason_phrase
            LOGGER.warning(
                "relay.request.failed",
                extra={
                    "event": "relay.request.failed",
                    "status_code": response.status_code,
                },
            )
            raise NetworkError(
                f"Relay returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        return CompletionStream(response, cancel_event)

    async def _send(
        self, request: httpx.Request, cancel_event: asyncio.Event | None
    ) -> httpx.Response:
        send = self._http.send(request, stream=True)
        if cancel_event is None:
            return await self._map_transport(send)

        if cancel_event.is_set():
            send.close()
            raise StreamCancelledError("Stream cancelled before the request was sent.")
        send_task = asyncio.ensure_future(self._map_transport(send))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait(
                {send_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            send_task.cancel()
            raise
        finally:
            cancel_task.cancel()
        if send_task.done():
            return send_task.result()
        send_task.cancel()
        try:
            response = await send_task
        except (asyncio.CancelledError, NetworkError):
            pass
        else:
            await response.aclose()
        raise StreamCancelledError("Stream cancelled while awaiting the relay.")

    async def _map_transport(self, send: Any) -> httpx.Response:
        try:
            return await send
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "relay.request.transport_error",
                extra={
                    "event": "relay.request.transport_error",
                    "error_type": type(exc).__name__,
                },
            )
            raise NetworkError(f"Unable to reach the relay: {exc}") from exc
