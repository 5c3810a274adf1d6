"""Gemini REST client backing the ``start-chat-stream`` and ``send-turn`` commands."""

from __future__ import annotations

from collections.abc import AsyncIterator
import json
import logging
from typing import Any

import httpx

from ..bridge import Command
from ..exceptions import ChatProviderError, TransientProviderError
from ..transport import InProcessTransport

LOGGER = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
TRANSIENT_STATUS_CODES = frozenset({429, 503})


def _extract_text(payload: Any) -> str:
    """Concatenate the text parts of the first candidate in a Gemini response."""
    if not isinstance(payload, dict):
        return ""
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return response.text.strip()


class GeminiChatSession:
    """One conversation with Gemini: an image-seeded stream plus text turns.

    History lives here, on the host side of the bridge, so follow-up turns
    only need the new text.
    """

    def __init__(
        self,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._history: list[dict[str, Any]] = []
        self._model: str | None = None
        self._api_key: str | None = None

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, model: str, method: str) -> str:
        return f"{self.api_base}/models/{model}:{method}"

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    @staticmethod
    def _raise_for_status(response: httpx.Response, detail: str) -> None:
        status = response.status_code
        if status < 400:
            return
        message = f"{status}: {detail}" if detail else f"HTTP {status}"
        if status in TRANSIENT_STATUS_CODES:
            raise TransientProviderError(message, status_code=status)
        raise ChatProviderError(message)

    async def stream_chat(
        self,
        *,
        model: str,
        image_base64: str,
        mime_type: str,
        prompt: str,
        secret: str,
    ) -> AsyncIterator[str]:
        """Start a new conversation and yield response text as it streams."""
        user_turn = {
            "role": "user",
            "parts": [
                {"inline_data": {"mime_type": mime_type, "data": image_base64}},
                {"text": prompt},
            ],
        }
        body = {"contents": [user_turn]}
        collected: list[str] = []
        try:
            async with self._client.stream(
                "POST",
                self._url(model, "streamGenerateContent"),
                params={"alt": "sse"},
                headers=self._headers(secret),
                json=body,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, _error_detail(response))
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data:
                        continue
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        LOGGER.debug(
                            "gemini.stream.bad_chunk",
                            extra={"event": "gemini.stream.bad_chunk"},
                        )
                        continue
                    text = _extract_text(chunk)
                    if text:
                        collected.append(text)
                        yield text
        except httpx.HTTPError as exc:
            raise ChatProviderError(f"Unable to reach Gemini: {exc}") from exc

        self._model = model
        self._api_key = secret
        self._history = [
            user_turn,
            {"role": "model", "parts": [{"text": "".join(collected)}]},
        ]

    async def send_turn(self, *, text: str) -> str:
        """Send a follow-up user turn and return the full reply."""
        if self._model is None or self._api_key is None:
            raise ChatProviderError("Chat session has not been started.")
        user_turn = {"role": "user", "parts": [{"text": text}]}
        body = {"contents": [*self._history, user_turn]}
        try:
            response = await self._client.post(
                self._url(self._model, "generateContent"),
                headers=self._headers(self._api_key),
                json=body,
            )
        except httpx.HTTPError as exc:
            raise ChatProviderError(f"Unable to reach Gemini: {exc}") from exc
        if response.status_code >= 400:
            self._raise_for_status(response, _error_detail(response))
        try:
            reply = _extract_text(response.json())
        except ValueError as exc:
            raise ChatProviderError("Gemini returned a malformed response.") from exc
        self._history.extend(
            [user_turn, {"role": "model", "parts": [{"text": reply}]}]
        )
        return reply

    def register(self, transport: InProcessTransport) -> None:
        """Expose this session as the host's chat commands."""
        transport.register(
            Command.START_CHAT_STREAM,
            lambda args: self.stream_chat(
                model=args["model"],
                image_base64=args["image_base64"],
                mime_type=args["mime_type"],
                prompt=args["prompt"],
                secret=args["secret"],
            ),
        )
        transport.register(Command.SEND_TURN, lambda args: self.send_turn(text=args["text"]))
