"""Per-issue serialized dispatch with a global concurrency bound."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

log = structlog.get_logger()

Factory = Callable[[], Awaitable[Any]]


def issue_key(owner: str, repo: str, issue_number: int) -> str:
    return f"{owner}/{repo}#{issue_number}"


class IssueDispatcher:
    """At most one workflow per issue key at a time, at most ``max_concurrent`` overall.

    Poll ticks call ``run`` inline; webhook handlers call ``submit`` and return.
    """

    def __init__(self, max_concurrent: int = 3) -> None:
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}
        self._queued: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_busy(self, key: str) -> bool:
        lock = self._locks.get(key)
        return self._queued.get(key, 0) > 0 or (lock is not None and lock.locked())

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def run(self, key: str, factory: Factory) -> Any:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                async with self._semaphore:
                    log.debug("dispatch_start", key=key)
                    return await factory()
        finally:
            remaining = self._users[key] - 1
            if remaining > 0:
                self._users[key] = remaining
            else:
                # No holder or waiter left for this key
                del self._users[key]
                del self._locks[key]

    def submit(self, key: str, factory: Factory) -> asyncio.Task:
        self._queued[key] = self._queued.get(key, 0) + 1
        task = asyncio.create_task(self._run_logged(key, factory), name=f"issue:{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("dispatch_submitted", key=key, pending=len(self._tasks))
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_logged(self, key: str, factory: Factory) -> None:
        try:
            await self.run(key, factory)
        except Exception:
            log.exception("dispatch_failed", key=key)
        finally:
            remaining = self._queued.get(key, 1) - 1
            if remaining > 0:
                self._queued[key] = remaining
            else:
                self._queued.pop(key, None)
