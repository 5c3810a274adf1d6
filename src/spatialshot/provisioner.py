"""Credential provisioning: first-run key setup through the clipboard capture ritual."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
from types import TracebackType
from typing import Any

from .bridge import EventBridge, Subscription, Topic
from .exceptions import (
    CaptureInProgressError,
    PersistenceError,
    SpatialshotError,
)
from .models import ClipboardCapture
from .state import AUTH_TRANSITIONS, AuthStage, ProviderKind, StateManager
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

StageListener = Callable[[AuthStage], "Awaitable[None] | None"]
# Receives the provider and the fresh secret, or ``None`` when the ritual
# ended without a stored secret (save failure, surface closed).
CaptureListener = Callable[[ProviderKind, "str | None"], "Awaitable[None] | None"]


class CredentialProvisioner:
    """Drive the stages a user passes through to obtain and store provider keys.

    Owns the :class:`AuthStage` machine and the process-wide clipboard watcher
    flag. Use it as an async context manager, or call :meth:`aclose`, so event
    subscriptions are released and the watcher is stopped on teardown.
    """

    def __init__(
        self,
        bridge: EventBridge,
        *,
        chat_secret_file: str = "gemini_key.json",
        profile_file: str = "profile.json",
        chat_key_page_url: str = "https://aistudio.google.com/app/apikey",
    ) -> None:
        self._bridge = bridge
        self.chat_secret_file = chat_secret_file
        self.profile_file = profile_file
        self.chat_key_page_url = chat_key_page_url

        self._stage = StateManager(
            AuthStage.LOADING, AUTH_TRANSITIONS, name="auth"
        )
        self._watcher_provider: ProviderKind | None = None
        self._initial_check_done = False
        self.error: str | None = None

        self._tasks = TaskManager(owner="provisioner")
        self._subscriptions: list[Subscription] = []
        self._stage_listeners: list[StageListener] = []
        self._capture_listeners: list[CaptureListener] = []

    @classmethod
    def from_config(
        cls, bridge: EventBridge, config: dict[str, Any]
    ) -> CredentialProvisioner:
        providers = config["providers"]
        return cls(
            bridge,
            chat_secret_file=providers["chat_secret_file"],
            profile_file=providers["profile_file"],
            chat_key_page_url=providers["chat_key_page_url"],
        )

    # -- lifecycle -----------------------------------------------------------

    def open(self) -> None:
        """Subscribe to host capture events. Calling twice is a no-op."""
        if self._subscriptions:
            return
        self._subscriptions = [
            self._bridge.subscribe(Topic.CLIPBOARD_CAPTURED, self.on_clipboard_capture),
            self._bridge.subscribe(
                Topic.CAPTURE_SURFACE_CLOSED, self.on_capture_surface_closed
            ),
        ]

    async def aclose(self) -> None:
        """Stop the watcher and release every subscription."""
        try:
            await self.stop_watcher()
        finally:
            subscriptions, self._subscriptions = self._subscriptions, []
            for subscription in subscriptions:
                subscription.dispose()
            await self._tasks.cancel_all()

    async def __aenter__(self) -> CredentialProvisioner:
        self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # -- listeners -----------------------------------------------------------

    def on_stage_change(self, callback: StageListener) -> None:
        self._stage_listeners.append(callback)

    def on_capture(self, callback: CaptureListener) -> None:
        self._capture_listeners.append(callback)

    async def _notify_stage(self) -> None:
        for callback in self._stage_listeners:
            try:
                result = callback(self.stage)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - UI callbacks must not break the flow.
                LOGGER.error("Stage listener error: %s", exc)

    async def _notify_capture(self, provider: ProviderKind, secret: str | None) -> None:
        for callback in self._capture_listeners:
            try:
                result = callback(provider, secret)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - listener failures are logged only.
                LOGGER.error("Capture listener error: %s", exc)

    # -- state ---------------------------------------------------------------

    @property
    def stage(self) -> AuthStage:
        return self._stage.current

    @property
    def watcher_active(self) -> bool:
        return self._watcher_provider is not None

    @property
    def watcher_provider(self) -> ProviderKind | None:
        return self._watcher_provider

    async def _set_stage(self, new_stage: AuthStage) -> None:
        old_stage = self.stage
        await self._stage.transition_to(new_stage)
        if old_stage == new_stage:
            return
        LOGGER.info(
            "auth.stage.transition",
            extra={
                "event": "auth.stage.transition",
                "from_state": old_stage.value,
                "to_state": new_stage.value,
            },
        )
        if new_stage is AuthStage.AUTHENTICATED and (
            self._watcher_provider is ProviderKind.CHAT
        ):
            await self.stop_watcher()
        await self._notify_stage()

    async def _has_profile(self) -> bool:
        try:
            return await self._bridge.secret_exists(self.profile_file)
        except SpatialshotError as exc:
            LOGGER.warning(
                "auth.profile.check_failed",
                extra={"event": "auth.profile.check_failed", "error": str(exc)},
            )
            return False

    async def _stage_after_chat_key(self) -> AuthStage:
        return AuthStage.AUTHENTICATED if await self._has_profile() else AuthStage.NEEDS_LOGIN

    async def check_initial_status(self) -> AuthStage:
        """Resolve LOADING once from the secrets the host already holds.

        Any failure to reach the host lands on NEEDS_CHAT_KEY so the setup flow
        is shown instead of an endless loading screen.
        """
        if self._initial_check_done:
            return self.stage
        self._initial_check_done = True
        try:
            has_chat_key = await self._bridge.secret_exists(self.chat_secret_file)
            if has_chat_key:
                resolved = await self._stage_after_chat_key()
            else:
                resolved = AuthStage.NEEDS_CHAT_KEY
        except SpatialshotError as exc:
            LOGGER.warning(
                "auth.initial_check.failed",
                extra={"event": "auth.initial_check.failed", "error": str(exc)},
            )
            resolved = AuthStage.NEEDS_CHAT_KEY
        await self._set_stage(resolved)
        return self.stage

    # -- watcher -------------------------------------------------------------

    async def start_watcher(self, provider: ProviderKind) -> None:
        """Start the clipboard watcher for ``provider``.

        Starting for the provider already being watched is a no-op; starting
        while another provider's ritual is in flight raises
        :class:`CaptureInProgressError`.
        """
        if self._watcher_provider is provider:
            return
        if self._watcher_provider is not None:
            raise CaptureInProgressError(
                f"A {self._watcher_provider.value} key capture is already in progress."
            )
        # Claim the flag before suspending so a concurrent start is rejected.
        self._watcher_provider = provider
        try:
            await self._bridge.start_capture_watcher(provider)
        except BaseException:
            self._watcher_provider = None
            raise
        LOGGER.info(
            "watcher.start",
            extra={"event": "watcher.start", "provider": provider.value},
        )

    async def stop_watcher(self) -> None:
        """Stop the clipboard watcher; a no-op when none is active."""
        provider, self._watcher_provider = self._watcher_provider, None
        if provider is None:
            return
        try:
            await self._bridge.stop_capture_watcher()
        except SpatialshotError as exc:
            LOGGER.warning(
                "watcher.stop.failed",
                extra={
                    "event": "watcher.stop.failed",
                    "provider": provider.value,
                    "error": str(exc),
                },
            )
            return
        LOGGER.info(
            "watcher.stop",
            extra={"event": "watcher.stop", "provider": provider.value},
        )

    # -- rituals -------------------------------------------------------------

    async def _open_key_page(self) -> None:
        await self._bridge.open_external_url(self.chat_key_page_url)

    async def begin_chat_key_setup(self) -> bool:
        """Start the chat key ritual: watch the clipboard and open the key page.

        Returns ``False`` when the current stage does not need a chat key or
        the watcher could not be started; the latter is reported in ``error``.
        """
        if self.stage is not AuthStage.NEEDS_CHAT_KEY:
            LOGGER.info(
                "auth.chat_setup.ignored",
                extra={"event": "auth.chat_setup.ignored", "stage": self.stage.value},
            )
            return False
        self.error = None
        try:
            await self.start_watcher(ProviderKind.CHAT)
        except CaptureInProgressError:
            raise
        except SpatialshotError as exc:
            await self._report_setup_failure(ProviderKind.CHAT, exc)
            return False
        self._tasks.spawn(self._open_key_page())
        return True

    async def begin_image_host_key_setup(self) -> bool:
        """Start the image-host key ritual and show the capture instructions.

        No browser page is opened here; the host presents its own surface.
        Returns ``False`` with ``error`` set when the host refuses to start.
        """
        self.error = None
        try:
            await self.start_watcher(ProviderKind.IMAGE_HOST)
        except CaptureInProgressError:
            raise
        except SpatialshotError as exc:
            await self._report_setup_failure(ProviderKind.IMAGE_HOST, exc)
            return False
        try:
            await self._bridge.open_capture_surface()
        except SpatialshotError as exc:
            await self.stop_watcher()
            await self._report_setup_failure(ProviderKind.IMAGE_HOST, exc)
            return False
        return True

    async def _report_setup_failure(
        self, provider: ProviderKind, exc: SpatialshotError
    ) -> None:
        self.error = f"Unable to start key capture: {exc}"
        LOGGER.warning(
            "auth.setup.failed",
            extra={
                "event": "auth.setup.failed",
                "provider": provider.value,
                "error": str(exc),
            },
        )
        await self._notify_stage()

    async def on_clipboard_capture(self, payload: Any) -> None:
        """Handle a ``clipboard-captured`` event from the host."""
        try:
            capture = ClipboardCapture.from_payload(payload)
        except ValueError as exc:
            LOGGER.warning(
                "capture.invalid",
                extra={"event": "capture.invalid", "reason": str(exc)},
            )
            return
        if capture.provider is not self._watcher_provider:
            # Late duplicate or an event for a ritual nobody started.
            LOGGER.info(
                "capture.ignored",
                extra={"event": "capture.ignored", "provider": capture.provider.value},
            )
            return

        await self.stop_watcher()
        if capture.provider is ProviderKind.IMAGE_HOST:
            await self._close_capture_surface()

        try:
            await self._bridge.store_secret(capture.provider, capture.secret)
        except PersistenceError as exc:
            self.error = str(exc)
            LOGGER.error(
                "capture.persist.failed",
                extra={
                    "event": "capture.persist.failed",
                    "provider": capture.provider.value,
                    "error": str(exc),
                },
            )
            await self._notify_stage()
            await self._notify_capture(capture.provider, None)
            return

        self.error = None
        LOGGER.info(
            "capture.persisted",
            extra={"event": "capture.persisted", "provider": capture.provider.value},
        )
        if capture.provider is ProviderKind.CHAT and self.stage in (
            AuthStage.NEEDS_CHAT_KEY,
            AuthStage.LOADING,
        ):
            await self._set_stage(await self._stage_after_chat_key())
        await self._notify_capture(capture.provider, capture.secret)

    async def on_capture_surface_closed(self, payload: Any = None) -> None:
        """The user dismissed the image-host capture surface."""
        if self._watcher_provider is not ProviderKind.IMAGE_HOST:
            return
        await self.stop_watcher()
        await self._notify_capture(ProviderKind.IMAGE_HOST, None)

    async def _close_capture_surface(self) -> None:
        try:
            await self._bridge.close_capture_surface()
        except SpatialshotError as exc:
            LOGGER.warning(
                "capture.surface.close_failed",
                extra={"event": "capture.surface.close_failed", "error": str(exc)},
            )

    # -- session -------------------------------------------------------------

    async def complete_login(self) -> bool:
        """NEEDS_LOGIN -> AUTHENTICATED."""
        if self.stage is not AuthStage.NEEDS_LOGIN:
            return False
        await self._set_stage(AuthStage.AUTHENTICATED)
        return True

    async def _return_to_key_setup(self, action: str) -> bool:
        try:
            still_has_key = await self._bridge.secret_exists(self.chat_secret_file)
        except SpatialshotError as exc:
            self.error = f"Unable to confirm {action}: {exc}"
            await self._notify_stage()
            return False
        if still_has_key:
            self.error = f"Chat key is still stored after {action}."
            LOGGER.warning(
                "auth.reset.incomplete",
                extra={"event": "auth.reset.incomplete", "action": action},
            )
            await self._notify_stage()
            return False
        await self.stop_watcher()
        await self._set_stage(AuthStage.NEEDS_CHAT_KEY)
        return True

    async def logout(self) -> bool:
        """Delete chat-provider state on the host and go back to key setup.

        The chat session and reverse-search cache are left untouched.
        """
        try:
            await self._bridge.logout(ProviderKind.CHAT)
        except PersistenceError as exc:
            self.error = str(exc)
            await self._notify_stage()
            return False
        return await self._return_to_key_setup("logout")

    async def reset_chat_key(self) -> bool:
        """Delete only the stored chat key and restart key setup."""
        try:
            await self._bridge.delete_secret(ProviderKind.CHAT)
        except PersistenceError as exc:
            self.error = str(exc)
            await self._notify_stage()
            return False
        return await self._return_to_key_setup("key reset")

    # -- reads ---------------------------------------------------------------

    async def get_secret(self, provider: ProviderKind) -> str | None:
        """Fetch a secret for one operation; values are never cached here."""
        secret = await self._bridge.get_secret(provider)
        return secret or None

    async def user_profile(self) -> dict[str, Any] | None:
        return await self._bridge.get_user_data()

