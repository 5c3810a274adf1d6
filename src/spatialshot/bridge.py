"""Command/event bridge to the privileged host process.

Every component talks to the host only through :class:`EventBridge`, which
wraps a :class:`HostTransport` offering two primitives:

* ``invoke(command, args)``: request/response command call
* ``subscribe(topic, handler)``: event stream returning an unsubscribe callable

Transport failures are normalized to :class:`HostCommandError` so callers
only ever handle the domain exception hierarchy.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
import logging
from types import TracebackType
from typing import Any, Protocol

from .exceptions import HostCommandError, PersistenceError, SpatialshotError
from .models import ImagePayload
from .state import ProviderKind

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[Any], "Awaitable[None] | None"]


class Command:
    """Host command names."""

    CHECK_SECRET_EXISTS = "check-secret-exists"
    GET_SECRET = "get-secret"
    ENCRYPT_AND_STORE = "encrypt-and-store"
    DELETE_SECRET = "delete-secret"
    LOGOUT = "logout"
    START_CAPTURE_WATCHER = "start-capture-watcher"
    STOP_CAPTURE_WATCHER = "stop-capture-watcher"
    OPEN_EXTERNAL_URL = "open-external-url"
    OPEN_CAPTURE_SURFACE = "open-capture-surface"
    CLOSE_CAPTURE_SURFACE = "close-capture-surface"
    UPLOAD_IMAGE = "upload-image"
    START_CHAT_STREAM = "start-chat-stream"
    SEND_TURN = "send-turn"
    GET_USER_DATA = "get-user-data"


class Topic:
    """Host event topics."""

    CLIPBOARD_CAPTURED = "clipboard-captured"
    CAPTURE_SURFACE_CLOSED = "capture-surface-closed"


class HostTransport(Protocol):
    """Concrete channel to the host process."""

    async def invoke(
        self, command: str, args: Mapping[str, Any] | None = None
    ) -> Any: ...

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]: ...


class Subscription:
    """Disposer for one event subscription.

    ``dispose`` is idempotent and the object works as a context manager so
    the unsubscribe runs on every exit path.
    """

    def __init__(self, topic: str, unsubscribe: Callable[[], None]) -> None:
        self.topic = topic
        self._unsubscribe: Callable[[], None] | None = unsubscribe

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    def dispose(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is None:
            return
        unsubscribe()
        LOGGER.debug(
            "bridge.unsubscribe",
            extra={"event": "bridge.unsubscribe", "topic": self.topic},
        )

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()


class EventBridge:
    """Typed facade over the host command and event surface."""

    def __init__(self, transport: HostTransport) -> None:
        self._transport = transport

    async def invoke(self, command: str, **args: Any) -> Any:
        """Call a host command, normalizing transport failures."""
        try:
            return await self._transport.invoke(command, args)
        except SpatialshotError:
            raise
        except Exception as exc:  # noqa: BLE001 - host failures take many shapes.
            LOGGER.warning(
                "bridge.command.failed",
                extra={
                    "event": "bridge.command.failed",
                    "command": command,
                    "error_type": exc.__class__.__name__,
                },
            )
            raise HostCommandError(command, str(exc) or command) from exc

    def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        unsubscribe = self._transport.subscribe(topic, handler)
        LOGGER.debug(
            "bridge.subscribe", extra={"event": "bridge.subscribe", "topic": topic}
        )
        return Subscription(topic, unsubscribe)

    # -- secrets -------------------------------------------------------------

    async def secret_exists(self, file_name: str) -> bool:
        return bool(await self.invoke(Command.CHECK_SECRET_EXISTS, file_name=file_name))

    async def get_secret(self, provider: ProviderKind) -> str:
        value = await self.invoke(Command.GET_SECRET, provider=provider.value)
        return value.strip() if isinstance(value, str) else ""

    async def store_secret(self, provider: ProviderKind, plaintext: str) -> None:
        try:
            ok = await self.invoke(
                Command.ENCRYPT_AND_STORE, plaintext=plaintext, provider=provider.value
            )
        except HostCommandError as exc:
            raise PersistenceError(f"Failed to save {provider.value} key: {exc}") from exc
        if ok is False:
            raise PersistenceError(f"Failed to save {provider.value} key.")

    async def delete_secret(self, provider: ProviderKind) -> None:
        try:
            ok = await self.invoke(Command.DELETE_SECRET, provider=provider.value)
        except HostCommandError as exc:
            raise PersistenceError(
                f"Failed to delete {provider.value} key: {exc}"
            ) from exc
        if ok is False:
            raise PersistenceError(f"Failed to delete {provider.value} key.")

    async def logout(self, provider: ProviderKind) -> None:
        try:
            ok = await self.invoke(Command.LOGOUT, provider=provider.value)
        except HostCommandError as exc:
            raise PersistenceError(f"Failed to log out: {exc}") from exc
        if ok is False:
            raise PersistenceError("Failed to log out.")

    async def get_user_data(self) -> dict[str, Any] | None:
        data = await self.invoke(Command.GET_USER_DATA)
        return dict(data) if isinstance(data, Mapping) else None

    # -- capture ritual ------------------------------------------------------

    async def start_capture_watcher(self, provider: ProviderKind) -> None:
        await self.invoke(Command.START_CAPTURE_WATCHER, provider=provider.value)

    async def stop_capture_watcher(self) -> None:
        await self.invoke(Command.STOP_CAPTURE_WATCHER)

    async def open_capture_surface(self) -> None:
        await self.invoke(Command.OPEN_CAPTURE_SURFACE)

    async def close_capture_surface(self) -> None:
        await self.invoke(Command.CLOSE_CAPTURE_SURFACE)

    async def open_external_url(self, url: str) -> None:
        await self.invoke(Command.OPEN_EXTERNAL_URL, url=url)

    # -- providers -----------------------------------------------------------

    async def upload_image(self, image: ImagePayload, secret: str) -> str:
        url = await self.invoke(
            Command.UPLOAD_IMAGE,
            image_base64=image.base64,
            mime_type=image.mime_type,
            secret=secret,
        )
        if not isinstance(url, str) or not url.strip():
            raise HostCommandError(
                Command.UPLOAD_IMAGE, "Image host returned no public URL."
            )
        return url.strip()

    async def stream_chat(
        self, model: str, image: ImagePayload, prompt: str, secret: str
    ) -> AsyncIterator[str]:
        """Open a streaming chat call and yield token text as it arrives."""
        stream = await self.invoke(
            Command.START_CHAT_STREAM,
            model=model,
            image_base64=image.base64,
            mime_type=image.mime_type,
            prompt=prompt,
            secret=secret,
        )
        try:
            async for token in stream:
                if isinstance(token, str) and token:
                    yield token
        except SpatialshotError:
            raise
        except Exception as exc:  # noqa: BLE001 - stream failures take many shapes.
            raise HostCommandError(Command.START_CHAT_STREAM, str(exc)) from exc

    async def send_turn(self, text: str) -> str:
        reply = await self.invoke(Command.SEND_TURN, text=text)
        if not isinstance(reply, str) or not reply.strip():
            raise HostCommandError(Command.SEND_TURN, "Model returned an empty reply.")
        return reply
