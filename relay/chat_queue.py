"""Per-conversation FIFO execution.

Work for one conversation runs strictly in arrival order, one unit at a
time, while different conversations proceed concurrently. A failing unit
is logged and does not stop the units queued behind it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[Any]]


class ChatQueue:
    """Chains jobs per key so each key sees sequential execution."""

    def __init__(self) -> None:
        self._tails: dict[Hashable, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._tails)

    def pending_keys(self) -> list[Hashable]:
        return list(self._tails)

    def enqueue(self, key: Hashable, job: Job) -> asyncio.Task:
        """Schedule job after everything already queued for key.

        Returns:
            Task resolving to the job's result; a job failure is logged and
            resolves to None
        """
        previous = self._tails.get(key)
        task = asyncio.ensure_future(self._run_after(key, previous, job))
        self._tails[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return task

    async def _run_after(self, key: Hashable, previous: asyncio.Future | None, job: Job) -> Any:
        if previous is not None:
            # Failures were already logged by the previous unit
            await asyncio.wait([previous])
        try:
            return await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Queued work failed", key=str(key), error=str(e), exc_info=True)
            return None

    def _forget(self, key: Hashable, done: asyncio.Future) -> None:
        if self._tails.get(key) is done:
            del self._tails[key]

    async def drain(self) -> None:
        """Wait for every queued unit to finish."""
        while self._tails:
            await asyncio.wait(list(self._tails.values()))
