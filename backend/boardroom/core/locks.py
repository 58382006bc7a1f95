"""
Per-discussion serialization guard.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from boardroom.config import settings
from boardroom.core.exceptions import ConcurrencyConflictError

logger = structlog.get_logger()


class DiscussionLockRegistry:
    """Application-level mutex keyed by discussion id.

    Locks are created on demand and dropped once nobody holds or waits for them.
    """

    def __init__(self, wait_seconds: Optional[float] = None):
        self._wait_seconds = (
            settings.DISCUSSION_LOCK_WAIT_SECONDS if wait_seconds is None else wait_seconds
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def is_locked(self, discussion_id: str) -> bool:
        lock = self._locks.get(discussion_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, discussion_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(discussion_id, asyncio.Lock())
        self._users[discussion_id] = self._users.get(discussion_id, 0) + 1
        try:
            await self._acquire(discussion_id, lock)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[discussion_id] -= 1
            if self._users[discussion_id] <= 0:
                self._users.pop(discussion_id, None)
                self._locks.pop(discussion_id, None)

    async def _acquire(self, discussion_id: str, lock: asyncio.Lock) -> None:
        if self._wait_seconds <= 0:
            if lock.locked():
                logger.info("discussion_lock_busy", discussion_id=discussion_id)
                raise ConcurrencyConflictError(
                    f"Discussion {discussion_id} is busy, retry later"
                )
            await lock.acquire()
            return
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._wait_seconds)
        except asyncio.TimeoutError:
            logger.info(
                "discussion_lock_busy",
                discussion_id=discussion_id,
                waited_seconds=self._wait_seconds,
            )
            raise ConcurrencyConflictError(
                f"Discussion {discussion_id} is busy, retry later"
            ) from None


discussion_locks = DiscussionLockRegistry()
