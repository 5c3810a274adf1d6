"""Ordered chat history with optimistic append and rollback."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import itertools
import logging
import time

from .models import ChatMessage, ChatRole

LOGGER = logging.getLogger(__name__)


class MessageStore:
    """Append-only message history.

    The only removal is the rollback of an optimistic append whose request
    failed. Message ids come from a per-store counter so they sort in
    creation order.
    """

    def __init__(self) -> None:
        self._messages: list[ChatMessage] = []
        self._sequence = itertools.count(1)

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        """Return an immutable view of the stored messages."""
        return tuple(self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def last(self) -> ChatMessage | None:
        return self._messages[-1] if self._messages else None

    def next_id(self) -> str:
        """Reserve the next monotonic message id."""
        return f"msg-{next(self._sequence):06d}"

    def create(
        self, role: ChatRole, text: str, message_id: str | None = None
    ) -> ChatMessage:
        """Build a message without storing it."""
        return ChatMessage(
            id=message_id or self.next_id(),
            role=role,
            text=text,
            created_at=time.time(),
        )

    def clear(self) -> None:
        self._messages = []

    def replace_messages(self, messages: Iterable[ChatMessage]) -> None:
        self._messages = list(messages)

    def append(self, message: ChatMessage) -> ChatMessage:
        self._messages.append(message)
        return message

    def rollback(self, message: ChatMessage) -> bool:
        """Undo an optimistic append of ``message``.

        Only the last entry may be rolled back; anything else would break the
        append-only ordering.
        """
        if not self._messages or self._messages[-1] is not message:
            LOGGER.warning(
                "message_store.rollback.skipped",
                extra={
                    "event": "message_store.rollback.skipped",
                    "message_id": message.id,
                },
            )
            return False
        self._messages.pop()
        return True

    @contextmanager
    def optimistic(self, message: ChatMessage) -> Iterator[ChatMessage]:
        """Append ``message`` and roll it back if the block raises."""
        self.append(message)
        try:
            yield message
        except BaseException:
            self.rollback(message)
            raise
