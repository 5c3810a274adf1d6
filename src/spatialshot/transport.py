"""In-process host transport: a command registry plus a publish/subscribe bus.

Usage:
    transport = InProcessTransport()
    transport.register("get-secret", get_secret_handler)

    unsubscribe = transport.subscribe("clipboard-captured", on_capture)
    await transport.emit("clipboard-captured", {"provider": "chat", "secret": "..."})
    unsubscribe()
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
import inspect
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Any]


class UnknownCommandError(LookupError):
    """Raised when no handler is registered for a command."""


class InProcessTransport:
    """Host transport whose commands and events live in the same process.

    Command handlers receive the argument mapping and may be sync or async;
    a handler may also return an async iterator (used for token streams).
    Event handlers that raise are logged and do not stop delivery to the
    remaining subscribers.
    """

    def __init__(self) -> None:
        self._commands: dict[str, CommandHandler] = {}
        self._subscribers: dict[str, list[Callable[[Any], Any]]] = {}

    def register(self, command: str, handler: CommandHandler) -> None:
        self._commands[command] = handler

    def unregister(self, command: str) -> None:
        self._commands.pop(command, None)

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any:
        handler = self._commands.get(command)
        if handler is None:
            raise UnknownCommandError(f"No host handler for command {command!r}.")
        result = handler(dict(args or {}))
        if inspect.isawaitable(result):
            result = await result
        return result

    def subscribe(
        self, topic: str, handler: Callable[[Any], Any]
    ) -> Callable[[], None]:
        self._subscribers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(topic, [])
            try:
                handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def emit(self, topic: str, payload: Any = None) -> None:
        """Deliver ``payload`` to every subscriber of ``topic`` in order."""
        handlers = list(self._subscribers.get(topic, []))
        if not handlers:
            LOGGER.debug(
                "transport.emit.unheard",
                extra={"event": "transport.emit.unheard", "topic": topic},
            )
            return
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - one bad handler must not block others.
                LOGGER.error(
                    "transport.handler.failed",
                    extra={
                        "event": "transport.handler.failed",
                        "topic": topic,
                        "error": str(exc),
                    },
                )
