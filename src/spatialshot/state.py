"""Stage enums and lock-protected state transitions."""

from __future__ import annotations

import asyncio
from collections.abc import Collection, Mapping
from enum import Enum
import logging
from typing import Generic, TypeVar

LOGGER = logging.getLogger(__name__)


class AuthStage(str, Enum):
    """Credential provisioning stages a user passes through."""

    LOADING = "LOADING"
    NEEDS_CHAT_KEY = "NEEDS_CHAT_KEY"
    NEEDS_LOGIN = "NEEDS_LOGIN"
    AUTHENTICATED = "AUTHENTICATED"


class ProviderKind(str, Enum):
    """External services whose secrets are provisioned independently."""

    CHAT = "chat"
    IMAGE_HOST = "image-host"


class SessionStage(str, Enum):
    """Finite state machine for one chat session and its follow-up turns."""

    IDLE = "IDLE"
    LOADING = "LOADING"
    STREAMING = "STREAMING"
    SENDING = "SENDING"
    ERROR = "ERROR"


AUTH_TRANSITIONS: dict[AuthStage, frozenset[AuthStage]] = {
    AuthStage.LOADING: frozenset(
        {AuthStage.NEEDS_CHAT_KEY, AuthStage.NEEDS_LOGIN, AuthStage.AUTHENTICATED}
    ),
    AuthStage.NEEDS_CHAT_KEY: frozenset(
        {AuthStage.NEEDS_LOGIN, AuthStage.AUTHENTICATED}
    ),
    AuthStage.NEEDS_LOGIN: frozenset(
        {AuthStage.AUTHENTICATED, AuthStage.NEEDS_CHAT_KEY}
    ),
    # Demotion to NEEDS_LOGIN is never allowed; logout goes back to key setup.
    AuthStage.AUTHENTICATED: frozenset({AuthStage.NEEDS_CHAT_KEY}),
}

SESSION_TRANSITIONS: dict[SessionStage, frozenset[SessionStage]] = {
    SessionStage.IDLE: frozenset(
        {SessionStage.LOADING, SessionStage.SENDING, SessionStage.ERROR}
    ),
    SessionStage.LOADING: frozenset(
        {
            SessionStage.LOADING,
            SessionStage.STREAMING,
            SessionStage.IDLE,
            SessionStage.ERROR,
        }
    ),
    SessionStage.STREAMING: frozenset(
        {SessionStage.LOADING, SessionStage.IDLE, SessionStage.ERROR}
    ),
    SessionStage.SENDING: frozenset({SessionStage.IDLE, SessionStage.ERROR}),
    SessionStage.ERROR: frozenset(
        {SessionStage.LOADING, SessionStage.SENDING, SessionStage.IDLE}
    ),
}

S = TypeVar("S", bound=Enum)


class InvalidTransitionError(ValueError):
    """Raised when a state machine is asked to make an illegal move."""


class StateManager(Generic[S]):
    """Manage state transitions with async lock semantics.

    When ``transitions`` is given, every move is checked against it so illegal
    stage combinations cannot be reached.
    """

    def __init__(
        self,
        initial: S,
        transitions: Mapping[S, Collection[S]] | None = None,
        name: str = "state",
    ) -> None:
        self._lock = asyncio.Lock()
        self._state = initial
        self._transitions = transitions
        self._name = name

    @property
    def current(self) -> S:
        """Return the current state without waiting for the lock."""
        return self._state

    async def get_state(self) -> S:
        """Return the current state under lock."""
        async with self._lock:
            return self._state

    def _check(self, new_state: S) -> None:
        if self._transitions is None or new_state == self._state:
            return
        if new_state not in self._transitions.get(self._state, ()):
            raise InvalidTransitionError(
                f"{self._name}: {self._state.value} -> {new_state.value} is not allowed."
            )

    def _apply(self, new_state: S) -> None:
        if new_state != self._state:
            LOGGER.debug(
                "state.transition",
                extra={
                    "event": "state.transition",
                    "machine": self._name,
                    "from_state": self._state.value,
                    "to_state": new_state.value,
                },
            )
        self._state = new_state

    async def transition_to(self, new_state: S) -> S:
        """Transition to a new state and return it."""
        async with self._lock:
            self._check(new_state)
            self._apply(new_state)
            return self._state

    async def transition_if(
        self,
        expected_state: S | Collection[S],
        new_state: S,
    ) -> bool:
        """Transition only when the current state matches ``expected_state``."""
        async with self._lock:
            if isinstance(expected_state, Enum):
                matches = self._state == expected_state
            else:
                matches = self._state in expected_state
            if not matches:
                return False
            self._check(new_state)
            self._apply(new_state)
            return True
