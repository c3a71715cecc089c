"""Tests for the streaming relay client."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import json
import unittest

import httpx

from relay_chat.client import StreamingCompletionClient
from relay_chat.context import ContextWindow
from relay_chat.exceptions import AuthError, NetworkError, StreamCancelledError
from relay_chat.models import CompletionSettings, Credentials, Message

RELAY_URL = "https://relay.test/functions/v1/proxy-xai"
SSE_BODY = (
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n'
    b'data: {"choices":[{"delta":{"content":" there"}}]}\n'
    b"data: [DONE]\n"
)


class DroppingStream(httpx.AsyncByteStream):
    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
        raise httpx.ReadError("connection reset by peer")


def settings(**overrides) -> CompletionSettings:
    values = {"relay_url": RELAY_URL, "system_prompt": "Be brief."}
    values.update(overrides)
    return CompletionSettings(**values)


def user(content: str, message_id: str = "u-1") -> Message:
    return Message(id=message_id, role="user", content=content)


class StreamingCompletionClientTests(unittest.IsolatedAsyncioTestCase):
    def make_client(self, handler, **kwargs) -> StreamingCompletionClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(http.aclose)
        return StreamingCompletionClient(http, **kwargs)

    async def test_request_shape_and_headers(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, content=SSE_BODY)

        client = self.make_client(handler)
        history = [
            user("What is 2+2?", "u-1"),
            Message(id="a-1", role="assistant", content="4"),
            user("And 3+3?", "u-2"),
        ]
        stream = await client.open(history, settings(), Credentials("tok-123"))
        await stream.aclose()

        self.assertEqual(len(captured), 1)
        request = captured[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), RELAY_URL)
        self.assertEqual(request.headers["Authorization"], "Bearer tok-123")
        self.assertEqual(request.headers["Accept"], "text/event-stream")
        self.assertEqual(
            json.loads(request.content),
            {
                "model": "grok-4",
                "messages": [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": "What is 2+2?"},
                    {"role": "assistant", "content": "4"},
                    {"role": "user", "content": "And 3+3?"},
                ],
                "temperature": 0.7,
                "stream": True,
            },
        )

    async def test_stream_yields_raw_bytes(self) -> None:
        client = self.make_client(lambda request: httpx.Response(200, content=SSE_BODY))
        stream = await client.open([user("hi")], settings(), Credentials("tok"))
        received = b"".join([chunk async for chunk in stream])
        self.assertEqual(received, SSE_BODY)
        self.assertEqual(stream.status_code, 200)

    async def test_missing_credentials_raise_before_any_request(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        client = self.make_client(handler)
        for credentials in (None, Credentials(""), Credentials("   ")):
            with self.subTest(credentials=credentials):
                with self.assertRaises(AuthError):
                    await client.open([user("hi")], settings(), credentials)
        self.assertEqual(calls, [])

    async def test_non_success_status_raises_network_error_with_body(self) -> None:
        client = self.make_client(
            lambda request: httpx.Response(401, text='{"error":"Invalid token"}')
        )
        with self.assertRaises(NetworkError) as ctx:
            await client.open([user("hi")], settings(), Credentials("tok"))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("Invalid token", str(ctx.exception))

    async def test_transport_failure_maps_to_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = self.make_client(handler)
        with self.assertRaises(NetworkError) as ctx:
            await client.open([user("hi")], settings(), Credentials("tok"))
        self.assertIsNone(ctx.exception.status_code)

    async def test_mid_stream_drop_surfaces_as_network_error(self) -> None:
        client = self.make_client(
            lambda request: httpx.Response(200, stream=DroppingStream())
        )
        stream = await client.open([user("hi")], settings(), Credentials("tok"))
        received: list[bytes] = []
        with self.assertRaises(NetworkError):
            async for chunk in stream:
                received.append(chunk)
        self.assertEqual(len(received), 1)

    async def test_cancel_event_set_before_open(self) -> None:
        client = self.make_client(lambda request: httpx.Response(200, content=SSE_BODY))
        event = asyncio.Event()
        event.set()
        with self.assertRaises(StreamCancelledError):
            await client.open([user("hi")], settings(), Credentials("tok"), event)

    async def test_cancel_event_stops_iteration(self) -> None:
        client = self.make_client(lambda request: httpx.Response(200, content=SSE_BODY))
        event = asyncio.Event()
        stream = await client.open([user("hi")], settings(), Credentials("tok"), event)
        event.set()
        with self.assertRaises(StreamCancelledError):
            await anext(stream)
        await stream.aclose()

    async def test_history_is_trimmed_by_context_window(self) -> None:
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(200, content=b"data: [DONE]\n")

        client = self.make_client(handler, context_window=ContextWindow(max_history_messages=3))
        history = [user(f"m{i}", f"u-{i}") for i in range(6)]
        stream = await client.open(history, settings(), Credentials("tok"))
        await stream.aclose()
        contents = [m["content"] for m in captured[0]["messages"]]
        self.assertEqual(contents, ["Be brief.", "m4", "m5"])


if __name__ == "__main__":
    unittest.main()
