"""Single-slot cache of the reverse-search URL for the active image."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import Any
from urllib.parse import quote

from .bridge import EventBridge
from .exceptions import SpatialshotError
from .models import ImagePayload, PrefetchEntry
from .provisioner import CredentialProvisioner
from .state import ProviderKind
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

DEFAULT_REVERSE_SEARCH_URL = "https://lens.google.com/uploadbyurl"

ChangeListener = Callable[["PrefetchCache"], "Awaitable[None] | None"]


def build_search_url(public_url: str, base_url: str = DEFAULT_REVERSE_SEARCH_URL) -> str:
    """Deep link that runs a reverse-image search for ``public_url``."""
    return f"{base_url}?url={quote(public_url, safe='')}"


class PrefetchCache:
    """Keep one reverse-search URL for the current image.

    A background prefetch uploads the image as soon as it becomes active so
    :meth:`trigger` can open the search without waiting. Uploads for the same
    image run inside a per-image critical section: whoever enters second sees
    the cached URL and skips the network call.
    """

    def __init__(
        self,
        bridge: EventBridge,
        provisioner: CredentialProvisioner,
        *,
        reverse_search_url: str = DEFAULT_REVERSE_SEARCH_URL,
        enabled: bool = True,
    ) -> None:
        self._bridge = bridge
        self._provisioner = provisioner
        self.reverse_search_url = reverse_search_url
        self.enabled = enabled

        self._image: ImagePayload | None = None
        self._entry: PrefetchEntry | None = None
        self._upload_locks: dict[str, asyncio.Lock] = {}
        self.waiting_for_key = False
        self.is_busy = False
        self.error: str | None = None

        self._tasks = TaskManager(owner="prefetch")
        self._listeners: list[ChangeListener] = []
        provisioner.on_capture(self._on_capture)

    @classmethod
    def from_config(
        cls,
        bridge: EventBridge,
        provisioner: CredentialProvisioner,
        config: dict[str, Any],
    ) -> PrefetchCache:
        return cls(
            bridge,
            provisioner,
            reverse_search_url=config["providers"]["reverse_search_url"],
            enabled=config["prefetch"]["enabled"],
        )

    # -- observation ---------------------------------------------------------

    @property
    def image(self) -> ImagePayload | None:
        return self._image

    @property
    def entry(self) -> PrefetchEntry | None:
        return self._entry

    def cached_url(self, image: ImagePayload | None = None) -> str | None:
        target = image or self._image
        if target is None or self._entry is None:
            return None
        if self._entry.image_key != target.identity:
            return None
        return self._entry.url

    def on_change(self, callback: ChangeListener) -> None:
        self._listeners.append(callback)

    async def _notify(self) -> None:
        for callback in self._listeners:
            try:
                result = callback(self)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - UI callbacks must not break the cache.
                LOGGER.error("Prefetch listener error: %s", exc)

    # -- image lifecycle -----------------------------------------------------

    async def set_image(self, image: ImagePayload | None) -> None:
        """Make ``image`` active, dropping the previous slot unconditionally."""
        if image is not None and self._image is not None:
            if image.identity == self._image.identity:
                return
        self._image = image
        self._entry = PrefetchEntry(image.identity) if image is not None else None
        # An upload still running for an earlier image keeps its lock.
        self._upload_locks = {
            key: lock for key, lock in self._upload_locks.items() if lock.locked()
        }
        self.error = None
        await self._notify()
        if image is not None and self.enabled:
            self._tasks.spawn(self._prefetch(image))

    async def await_prefetch(self) -> None:
        """Wait for background work to settle."""
        await self._tasks.await_all()

    async def aclose(self) -> None:
        await self._tasks.cancel_all()

    # -- uploads -------------------------------------------------------------

    async def _upload(self, image: ImagePayload, secret: str) -> str:
        """Upload ``image`` once and cache its search URL.

        The cache is re-checked inside the lock, right before the network
        call, so a racing prefetch and trigger never both upload.
        """
        key = image.identity
        lock = self._upload_locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self.cached_url(image)
            if cached:
                LOGGER.debug(
                    "prefetch.upload.skipped",
                    extra={"event": "prefetch.upload.skipped", "image_key": key[:12]},
                )
                return cached
            public_url = await self._bridge.upload_image(image, secret)
            search_url = build_search_url(public_url, self.reverse_search_url)
            if self._image is not None and self._image.identity == key:
                self._entry = PrefetchEntry(key, search_url)
                LOGGER.info(
                    "prefetch.cached",
                    extra={"event": "prefetch.cached", "image_key": key[:12]},
                )
            return search_url

    async def _prefetch(self, image: ImagePayload) -> None:
        if self.cached_url(image):
            return
        try:
            secret = await self._provisioner.get_secret(ProviderKind.IMAGE_HOST)
            if not secret:
                return
            await self._upload(image, secret)
        except SpatialshotError as exc:
            LOGGER.warning(
                "prefetch.upload.failed",
                extra={"event": "prefetch.upload.failed", "error": str(exc)},
            )
            return
        await self._notify()

    # -- user action ---------------------------------------------------------

    async def trigger(self) -> None:
        """Open the reverse search for the active image.

        Serves the cached URL when present. Otherwise uploads with the stored
        image-host key, or starts the key capture ritual and finishes the
        search once the key arrives.
        """
        image = self._image
        if image is None or self.waiting_for_key or self.is_busy:
            return
        self.is_busy = True
        self.error = None
        await self._notify()
        try:
            cached = self.cached_url(image)
            if cached:
                await self._open(cached)
                return
            secret = await self._provisioner.get_secret(ProviderKind.IMAGE_HOST)
            if not secret:
                await self._request_key()
                return
            await self._open(await self._upload(image, secret))
        except SpatialshotError as exc:
            self.error = str(exc)
            LOGGER.warning(
                "prefetch.trigger.failed",
                extra={"event": "prefetch.trigger.failed", "error": str(exc)},
            )
        finally:
            self.is_busy = False
            await self._notify()

    async def _request_key(self) -> None:
        self.waiting_for_key = True
        await self._notify()
        try:
            started = await self._provisioner.begin_image_host_key_setup()
        except SpatialshotError:
            self.waiting_for_key = False
            raise
        if not started:
            self.waiting_for_key = False
            self.error = self._provisioner.error
            return
        LOGGER.info("prefetch.waiting_for_key", extra={"event": "prefetch.waiting_for_key"})

    async def _open(self, url: str) -> None:
        await self._bridge.open_external_url(url)
        LOGGER.info("prefetch.opened", extra={"event": "prefetch.opened"})

    async def _on_capture(self, provider: ProviderKind, secret: str | None) -> None:
        if provider is not ProviderKind.IMAGE_HOST:
            return
        image = self._image
        if not self.waiting_for_key:
            # Key stored outside a search request: warm the slot instead.
            if secret is not None and image is not None and self.enabled:
                self._tasks.spawn(self._prefetch(image))
            return
        self.waiting_for_key = False
        if secret is None or image is None:
            await self._notify()
            return
        self.is_busy = True
        await self._notify()
        try:
            await self._open(await self._upload(image, secret))
        except SpatialshotError as exc:
            self.error = str(exc)
            LOGGER.warning(
                "prefetch.trigger.failed",
                extra={"event": "prefetch.trigger.failed", "error": str(exc)},
            )
        finally:
            self.is_busy = False
            await self._notify()
