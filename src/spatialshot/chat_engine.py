"""Streaming chat session engine with model fallback and optimistic sends."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import Any

from .bridge import EventBridge
from .exceptions import SpatialshotError, TransientProviderError
from .message_store import MessageStore
from .models import ChatMessage, ChatRole, ChatSessionState, ImagePayload
from .state import SESSION_TRANSITIONS, SessionStage, StateManager

LOGGER = logging.getLogger(__name__)

MISSING_CREDENTIAL_MESSAGE = "API Key missing. Please reset in settings."
DEFAULT_STREAM_ERROR = "Failed to connect to Gemini."
_TRANSIENT_MESSAGES = {
    429: "Quota limit reached or server busy.",
    503: "Service temporarily unavailable.",
}

StateListener = Callable[[ChatSessionState], "Awaitable[None] | None"]
ModelListener = Callable[[str], "Awaitable[None] | None"]

_IDLE_STAGES = frozenset({SessionStage.IDLE, SessionStage.ERROR})


def build_session_prompt(system_prompt: str, prompt: str) -> str:
    """Seed text for a new session: system prompt block followed by the user prompt."""
    return f"<sys-prmp>\n{system_prompt}\n</sys-prmp>\nMSS: {prompt}"


class ChatSessionEngine:
    """Own one streaming conversation against the chat provider.

    The first response streams into ``streaming_text`` as a floating preview.
    The first follow-up turns that preview into message #1; afterwards every
    turn goes through the optimistic append/rollback path.
    """

    def __init__(
        self,
        bridge: EventBridge,
        *,
        model: str,
        fallback_model: str,
        system_prompt: str = "",
        warm_up_seconds: float = 3.0,
    ) -> None:
        self._bridge = bridge
        self.model = model
        self.fallback_model = fallback_model
        self.system_prompt = system_prompt
        self.warm_up_seconds = max(0.0, warm_up_seconds)

        self._store = MessageStore()
        self._stage = StateManager(SessionStage.IDLE, SESSION_TRANSITIONS, name="chat")
        self.streaming_text = ""
        self.is_chat_mode = False
        self.is_streaming = False
        self.is_loading = False
        self.error: str | None = None
        self.last_unconfirmed_message: ChatMessage | None = None
        self._first_response_id: str | None = None
        # Bumped to abandon a running stream; stale tokens are dropped.
        self._generation = 0

        self._state_listeners: list[StateListener] = []
        self._model_listeners: list[ModelListener] = []

    @classmethod
    def from_config(cls, bridge: EventBridge, config: dict[str, Any]) -> ChatSessionEngine:
        chat = config["chat"]
        return cls(
            bridge,
            model=chat["model"],
            fallback_model=chat["fallback_model"],
            system_prompt=chat["system_prompt"],
            warm_up_seconds=chat["warm_up_seconds"],
        )

    # -- observation ---------------------------------------------------------

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return self._store.messages

    @property
    def stage(self) -> SessionStage:
        return self._stage.current

    @property
    def state(self) -> ChatSessionState:
        return ChatSessionState(
            messages=self._store.messages,
            streaming_text=self.streaming_text,
            is_chat_mode=self.is_chat_mode,
            is_streaming=self.is_streaming,
            is_loading=self.is_loading,
            error=self.error,
            last_unconfirmed_message=self.last_unconfirmed_message,
            model=self.model,
            stage=self.stage,
        )

    def on_change(self, callback: StateListener) -> None:
        self._state_listeners.append(callback)

    def on_model_change(self, callback: ModelListener) -> None:
        self._model_listeners.append(callback)

    async def _notify(self) -> None:
        snapshot = self.state
        for callback in self._state_listeners:
            try:
                result = callback(snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - UI callbacks must not break the session.
                LOGGER.error("Chat state listener error: %s", exc)

    async def set_model(self, model_id: str) -> None:
        normalized = model_id.strip()
        if not normalized or normalized == self.model:
            return
        self.model = normalized
        for callback in self._model_listeners:
            try:
                result = callback(normalized)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - UI callbacks must not break the session.
                LOGGER.error("Model listener error: %s", exc)

    # -- initial stream ------------------------------------------------------

    def _reset_session(self) -> None:
        self.streaming_text = ""
        self.is_chat_mode = False
        self._store.clear()
        self._first_response_id = None
        self.last_unconfirmed_message = None

    @staticmethod
    def _stream_error_message(exc: SpatialshotError) -> str:
        if isinstance(exc, TransientProviderError) and exc.status_code in _TRANSIENT_MESSAGES:
            return _TRANSIENT_MESSAGES[exc.status_code]
        return str(exc) or DEFAULT_STREAM_ERROR

    async def start_session(
        self,
        secret: str | None,
        model_id: str,
        image: ImagePayload | None,
        prompt: str | None,
        *,
        is_retry: bool = False,
    ) -> None:
        """Open the initial streaming call for ``image`` and ``prompt``.

        A rate-limit or unavailable failure on the first attempt switches to
        the fallback model and retries exactly once; a failure on the retry
        is surfaced through ``error``.
        """
        if not (secret and image and prompt):
            return
        if is_retry:
            await self._stage.transition_to(SessionStage.LOADING)
        elif not await self._stage.transition_if(_IDLE_STAGES, SessionStage.LOADING):
            LOGGER.info(
                "chat.session.rejected",
                extra={"event": "chat.session.rejected", "stage": self.stage.value},
            )
            return

        self._generation += 1
        generation = self._generation
        self.is_loading = True
        self.error = None

        if not is_retry:
            self._reset_session()
            await self._notify()
            # Reserved for the loading shimmer, not a network requirement.
            await asyncio.sleep(self.warm_up_seconds)
            if generation != self._generation:
                return

        await self._stage.transition_to(SessionStage.STREAMING)
        self.is_streaming = True
        self.streaming_text = ""
        self._first_response_id = self._store.next_id()
        await self._notify()
        LOGGER.info(
            "chat.session.start",
            extra={"event": "chat.session.start", "model": model_id, "retry": is_retry},
        )

        seed = build_session_prompt(self.system_prompt, prompt)
        try:
            async for token in self._bridge.stream_chat(model_id, image, seed, secret):
                if generation != self._generation:
                    continue
                self.streaming_text += token
                await self._notify()
        except TransientProviderError as exc:
            if generation != self._generation:
                return
            if not is_retry:
                LOGGER.warning(
                    "chat.session.fallback",
                    extra={
                        "event": "chat.session.fallback",
                        "model": model_id,
                        "fallback_model": self.fallback_model,
                        "status_code": exc.status_code,
                    },
                )
                await self.set_model(self.fallback_model)
                await self.start_session(
                    secret, self.model, image, prompt, is_retry=True
                )
                return
            await self._fail_stream(exc)
            return
        except SpatialshotError as exc:
            if generation != self._generation:
                return
            await self._fail_stream(exc)
            return

        if generation != self._generation:
            return
        self.is_streaming = False
        self.is_loading = False
        await self._stage.transition_to(SessionStage.IDLE)
        LOGGER.info(
            "chat.session.complete",
            extra={"event": "chat.session.complete", "chars": len(self.streaming_text)},
        )
        await self._notify()

    async def _fail_stream(self, exc: SpatialshotError) -> None:
        self.error = self._stream_error_message(exc)
        self.is_streaming = False
        self.is_loading = False
        await self._stage.transition_to(SessionStage.ERROR)
        LOGGER.warning(
            "chat.session.failed",
            extra={
                "event": "chat.session.failed",
                "error_type": exc.__class__.__name__,
            },
        )
        await self._notify()

    async def abandon(self) -> None:
        """Stop applying tokens from the running stream.

        The underlying call keeps running to completion; its output is dropped.
        """
        if self.stage not in (SessionStage.LOADING, SessionStage.STREAMING):
            return
        self._generation += 1
        self.is_streaming = False
        self.is_loading = False
        await self._stage.transition_to(SessionStage.IDLE)
        await self._notify()

    # -- follow-up turns -----------------------------------------------------

    def _enter_chat_mode(self) -> None:
        """Turn the floating preview into message #1, once."""
        self.is_chat_mode = True
        if self.streaming_text and self._first_response_id:
            preview = self._store.create(
                ChatRole.MODEL, self.streaming_text, message_id=self._first_response_id
            )
            self._store.replace_messages([preview])
            self.streaming_text = ""
            self._first_response_id = None

    async def handle_send(self, text: str) -> None:
        """Send a follow-up turn; no-op for blank text or while busy."""
        if not text.strip():
            return
        if not await self._stage.transition_if(_IDLE_STAGES, SessionStage.SENDING):
            return
        if not self.is_chat_mode:
            self._enter_chat_mode()
        message = self._store.create(ChatRole.USER, text)
        self.last_unconfirmed_message = message
        await self._submit(message)

    async def handle_retry_send(self) -> None:
        """Resubmit the last message whose turn failed."""
        message = self.last_unconfirmed_message
        if message is None:
            return
        if not await self._stage.transition_if(_IDLE_STAGES, SessionStage.SENDING):
            return
        await self._submit(message)

    async def _submit(self, message: ChatMessage) -> None:
        self.is_loading = True
        self.error = None
        outcome = SessionStage.IDLE
        try:
            with self._store.optimistic(message):
                await self._notify()
                reply_text = await self._bridge.send_turn(message.text)
        except SpatialshotError as exc:
            outcome = SessionStage.ERROR
            self.error = f"Failed to send message. {exc}".strip()
            LOGGER.warning(
                "chat.turn.failed",
                extra={
                    "event": "chat.turn.failed",
                    "message_id": message.id,
                    "error_type": exc.__class__.__name__,
                },
            )
        else:
            self._store.append(self._store.create(ChatRole.MODEL, reply_text))
            self.last_unconfirmed_message = None
        finally:
            self.is_loading = False
            await self._stage.transition_to(outcome)
            await self._notify()

    # -- misc ----------------------------------------------------------------

    async def handle_reload(
        self,
        secret: str | None,
        image: ImagePayload | None,
        prompt: str | None,
    ) -> None:
        """Restart the session from scratch, or report a missing key."""
        if secret and image and prompt:
            await self.start_session(secret, self.model, image, prompt)
            return
        if not secret:
            if self.stage not in _IDLE_STAGES:
                return
            self.error = MISSING_CREDENTIAL_MESSAGE
            self.is_loading = False
            await self._stage.transition_to(SessionStage.ERROR)
            await self._notify()

    async def clear_error(self) -> None:
        self.error = None
        await self._notify()
