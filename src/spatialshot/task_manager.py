"""Lifecycle manager for fire-and-forget and background asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Own named and anonymous background tasks for one component.

    Failures of tracked tasks are logged when the task finishes so that
    fire-and-forget work never loses its exception silently.
    """

    def __init__(self, owner: str = "tasks") -> None:
        self._owner = owner
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track it."""
        task = asyncio.create_task(coro)
        self.add(task, name=name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Register a task, optionally under a unique name.

        A named task replaces any prior task with the same name; the old task
        keeps running untracked. Anonymous tasks drop out when they finish.
        """
        task.add_done_callback(self._log_failure)
        if name is not None:
            self._named[name] = task
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    def _log_failure(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "task.failed",
                extra={
                    "event": "task.failed",
                    "owner": self._owner,
                    "error_type": exc.__class__.__name__,
                    "error": str(exc),
                },
            )

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        all_tasks: list[asyncio.Task[Any]] = list(self._named.values()) + [
            t for t in self._anonymous if not t.done()
        ]
        for task in all_tasks:
            if not task.done():
                task.cancel()
        for task in all_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001 - already logged by _log_failure.
                pass
        self._named.clear()
        self._anonymous.clear()

    async def await_all(self) -> None:
        """Await all tracked tasks without cancelling them."""
        all_tasks: list[asyncio.Task[Any]] = list(self._named.values()) + list(
            self._anonymous
        )
        for task in all_tasks:
            if task.done():
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001 - already logged by _log_failure.
                pass
