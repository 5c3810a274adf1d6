"""Wire the provisioner, chat engine and reverse-search cache for one app session."""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any

from .bridge import EventBridge
from .chat_engine import ChatSessionEngine
from .config import load_config
from .exceptions import SpatialshotError
from .logging_utils import configure_logging
from .models import ImagePayload
from .prefetch import PrefetchCache
from .provisioner import CredentialProvisioner
from .state import AuthStage, ProviderKind
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)


class AssistantSession:
    """Composition root for the session core.

    Logging is configured only when the config is loaded here; callers that
    pass their own ``config`` own the logging setup too.

    The chat session starts once the user is authenticated and an image is
    active; the secret is fetched from the host right before each start.
    """

    def __init__(
        self, bridge: EventBridge, config: dict[str, Any] | None = None
    ) -> None:
        if config is None:
            config = load_config()
            configure_logging(config["logging"])
        self.bridge = bridge
        self.prompt: str = config["chat"]["prompt"]
        self.provisioner = CredentialProvisioner.from_config(bridge, config)
        self.engine = ChatSessionEngine.from_config(bridge, config)
        self.prefetch = PrefetchCache.from_config(bridge, self.provisioner, config)
        self._tasks = TaskManager(owner="session")
        self.provisioner.on_stage_change(self._on_stage_change)

    @property
    def image(self) -> ImagePayload | None:
        return self.prefetch.image

    async def start(self) -> AuthStage:
        self.provisioner.open()
        return await self.provisioner.check_initial_status()

    async def aclose(self) -> None:
        try:
            await self.engine.abandon()
            await self.prefetch.aclose()
            await self._tasks.cancel_all()
        finally:
            await self.provisioner.aclose()

    async def __aenter__(self) -> AssistantSession:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def _chat_secret(self) -> str | None:
        try:
            return await self.provisioner.get_secret(ProviderKind.CHAT)
        except SpatialshotError as exc:
            LOGGER.warning(
                "session.secret.unavailable",
                extra={"event": "session.secret.unavailable", "error": str(exc)},
            )
            return None

    async def _maybe_start_chat(self) -> None:
        if self.provisioner.stage is not AuthStage.AUTHENTICATED or self.image is None:
            return
        secret = await self._chat_secret()
        self._tasks.spawn(
            self.engine.start_session(secret, self.engine.model, self.image, self.prompt),
            name="chat",
        )

    async def _on_stage_change(self, stage: AuthStage) -> None:
        if stage is AuthStage.AUTHENTICATED:
            await self._maybe_start_chat()

    async def set_image(self, image: ImagePayload | None) -> None:
        """Make ``image`` the active one and start chatting about it."""
        previous = self.image
        await self.prefetch.set_image(image)
        if image is None or (previous is not None and previous.identity == image.identity):
            return
        await self.engine.abandon()
        await self._maybe_start_chat()

    async def reload(self) -> None:
        secret = await self._chat_secret()
        await self.engine.handle_reload(secret, self.image, self.prompt)

    async def wait_idle(self) -> None:
        """Wait for the running chat stream and background prefetch to finish."""
        await self._tasks.await_all()
        await self.prefetch.await_prefetch()
