"""Tests for the Gemini and ImgBB HTTP clients behind the host commands."""

from __future__ import annotations

import json
import unittest
from urllib.parse import parse_qs

import httpx

from host_fakes import make_image

from spatialshot.bridge import EventBridge
from spatialshot.exceptions import (
    ChatProviderError,
    TransientProviderError,
    UploadError,
)
from spatialshot.providers import GeminiChatSession, ImgbbUploader
from spatialshot.providers.imgbb import strip_data_url
from spatialshot.transport import InProcessTransport

API_BASE = "https://gemini.test/v1beta"
UPLOAD_URL = "https://imgbb.test/1/upload"


def _sse(*texts: str) -> bytes:
    lines = []
    for text in texts:
        chunk = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    return "".join(lines).encode("utf-8")


def _reply(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class RecordingHandler:
    """MockTransport handler that records requests and serves canned responses."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class GeminiTests(unittest.IsolatedAsyncioTestCase):
    """Validate streaming, error mapping and history for Gemini."""

    def make(self, handler: RecordingHandler) -> GeminiChatSession:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        return GeminiChatSession(api_base=API_BASE, client=client)

    async def collect(self, session: GeminiChatSession, **overrides: str) -> list[str]:
        args = {
            "model": "gemini-2.5-flash",
            "image_base64": "aGVsbG8=",
            "mime_type": "image/png",
            "prompt": "describe",
            "secret": "AIza-key",
        }
        args.update(overrides)
        return [token async for token in session.stream_chat(**args)]

    async def test_stream_yields_tokens_and_records_history(self) -> None:
        handler = RecordingHandler(httpx.Response(200, content=_sse("Hello", " world")))
        session = self.make(handler)

        tokens = await self.collect(session)

        self.assertEqual(tokens, ["Hello", " world"])
        request = handler.requests[0]
        self.assertEqual(
            request.url.path, "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
        )
        self.assertEqual(request.url.params["alt"], "sse")
        self.assertEqual(request.headers["x-goog-api-key"], "AIza-key")
        body = json.loads(request.content)
        parts = body["contents"][0]["parts"]
        self.assertEqual(parts[0]["inline_data"], {"mime_type": "image/png", "data": "aGVsbG8="})
        self.assertEqual(parts[1]["text"], "describe")
        self.assertEqual(session.history[-1]["parts"][0]["text"], "Hello world")

    async def test_rate_limit_is_transient(self) -> None:
        handler = RecordingHandler(
            httpx.Response(429, json={"error": {"message": "Resource exhausted"}})
        )
        session = self.make(handler)
        with self.assertRaises(TransientProviderError) as ctx:
            await self.collect(session)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertIn("Resource exhausted", str(ctx.exception))

    async def test_unavailable_is_transient(self) -> None:
        session = self.make(RecordingHandler(httpx.Response(503, text="overloaded")))
        with self.assertRaises(TransientProviderError) as ctx:
            await self.collect(session)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_bad_request_is_not_transient(self) -> None:
        handler = RecordingHandler(
            httpx.Response(400, json={"error": {"message": "API key not valid"}})
        )
        session = self.make(handler)
        with self.assertRaises(ChatProviderError) as ctx:
            await self.collect(session)
        self.assertNotIsInstance(ctx.exception, TransientProviderError)
        self.assertEqual(str(ctx.exception), "400: API key not valid")

    async def test_connection_failure_is_wrapped(self) -> None:
        session = self.make(RecordingHandler(httpx.ConnectError("refused")))
        with self.assertRaises(ChatProviderError):
            await self.collect(session)

    async def test_send_turn_requires_started_session(self) -> None:
        session = self.make(RecordingHandler())
        with self.assertRaises(ChatProviderError):
            await session.send_turn(text="hi")

    async def test_send_turn_sends_full_history(self) -> None:
        handler = RecordingHandler(
            httpx.Response(200, content=_sse("Preview")),
            httpx.Response(200, json=_reply("Follow-up answer")),
        )
        session = self.make(handler)
        await self.collect(session)

        reply = await session.send_turn(text="why?")

        self.assertEqual(reply, "Follow-up answer")
        request = handler.requests[1]
        self.assertTrue(request.url.path.endswith(":generateContent"))
        contents = json.loads(request.content)["contents"]
        self.assertEqual([c["role"] for c in contents], ["user", "model", "user"])
        self.assertEqual(contents[-1]["parts"][0]["text"], "why?")
        self.assertEqual(len(session.history), 4)

    async def test_failed_turn_leaves_history_unchanged(self) -> None:
        handler = RecordingHandler(
            httpx.Response(200, content=_sse("Preview")),
            httpx.Response(500, text="internal"),
        )
        session = self.make(handler)
        await self.collect(session)
        with self.assertRaises(ChatProviderError):
            await session.send_turn(text="why?")
        self.assertEqual(len(session.history), 2)

    async def test_commands_served_through_bridge(self) -> None:
        handler = RecordingHandler(
            httpx.Response(200, content=_sse("a", "b")),
            httpx.Response(200, json=_reply("c")),
        )
        session = self.make(handler)
        transport = InProcessTransport()
        session.register(transport)
        bridge = EventBridge(transport)

        tokens = [
            token
            async for token in bridge.stream_chat(
                "gemini-2.5-flash", make_image(), "describe", "AIza-key"
            )
        ]

        self.assertEqual(tokens, ["a", "b"])
        self.assertEqual(await bridge.send_turn("more"), "c")


class ImgbbTests(unittest.IsolatedAsyncioTestCase):
    """Validate ImgBB uploads."""

    def make(self, handler: RecordingHandler) -> ImgbbUploader:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        return ImgbbUploader(upload_url=UPLOAD_URL, client=client)

    async def test_upload_returns_public_url(self) -> None:
        handler = RecordingHandler(
            httpx.Response(200, json={"data": {"url": "https://i.ibb.co/x/y.png"}})
        )
        uploader = self.make(handler)

        url = await uploader.upload(image_base64="data:image/png;base64,QUJD", secret="k1")

        self.assertEqual(url, "https://i.ibb.co/x/y.png")
        form = parse_qs(handler.requests[0].content.decode("utf-8"))
        self.assertEqual(form["key"], ["k1"])
        self.assertEqual(form["image"], ["QUJD"])

    async def test_error_response_raises_upload_error(self) -> None:
        handler = RecordingHandler(
            httpx.Response(400, json={"error": {"message": "Invalid API v1 key."}})
        )
        uploader = self.make(handler)
        with self.assertRaises(UploadError) as ctx:
            await uploader.upload(image_base64="QUJD", secret="bad")
        self.assertIn("Invalid API v1 key.", str(ctx.exception))

    async def test_missing_url_raises_upload_error(self) -> None:
        uploader = self.make(RecordingHandler(httpx.Response(200, json={"data": {}})))
        with self.assertRaises(UploadError):
            await uploader.upload(image_base64="QUJD", secret="k1")

    async def test_missing_secret_skips_network(self) -> None:
        handler = RecordingHandler()
        uploader = self.make(handler)
        with self.assertRaises(UploadError):
            await uploader.upload(image_base64="QUJD", secret="")
        self.assertEqual(handler.requests, [])

    async def test_upload_served_through_bridge(self) -> None:
        handler = RecordingHandler(
            httpx.Response(200, json={"data": {"url": "https://i.ibb.co/x/y.png"}})
        )
        uploader = self.make(handler)
        transport = InProcessTransport()
        uploader.register(transport)
        bridge = EventBridge(transport)
        self.assertEqual(
            await bridge.upload_image(make_image(), "k1"), "https://i.ibb.co/x/y.png"
        )

    def test_strip_data_url(self) -> None:
        self.assertEqual(strip_data_url("data:image/png;base64,QUJD"), "QUJD")
        self.assertEqual(strip_data_url("QUJD"), "QUJD")


if __name__ == "__main__":
    unittest.main()
