"""CancellationRegistry — session → active GenerationHandle.

Single-writer guarantee: registering a handle for a session cancels the one
it replaces. Same-session operations (set / remove / cancel) are serialized
by a per-session asyncio.Lock so a stale stop request cannot cancel the
handle that replaced its target. Different sessions never share a lock.
"""

from __future__ import annotations

import asyncio
import logging
import weakref

from streamchat import metrics
from streamchat.chat.handle import GenerationHandle

logger = logging.getLogger(__name__)


class CancellationRegistry:

    def __init__(self):
        self._handles: dict[str, GenerationHandle] = {}
        # A lock lives only while some coroutine holds or waits on it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def get(self, session_id: str) -> GenerationHandle | None:
        return self._handles.get(session_id)

    def active_count(self) -> int:
        return sum(1 for h in self._handles.values() if not h.is_terminal)

    async def set(self, session_id: str, handle: GenerationHandle) -> GenerationHandle | None:
        """Register handle, cancelling and returning any handle it replaces."""
        async with self._lock(session_id):
            previous = self._handles.get(session_id)
            if previous is not None and previous is not handle and previous.cancel():
                logger.info(
                    "GENERATION_REPLACED | session=%s | cancelled=%s | new=%s",
                    session_id, previous.generation_id, handle.generation_id,
                )
            self._handles[session_id] = handle
            metrics.active_generations.set(len(self._handles))
            return previous

    async def remove(self, session_id: str, handle: GenerationHandle | None = None) -> bool:
        """Deregister. With handle given, only removes the entry if it is still that handle."""
        async with self._lock(session_id):
            current = self._handles.get(session_id)
            if current is None or (handle is not None and current is not handle):
                return False
            del self._handles[session_id]
            metrics.active_generations.set(len(self._handles))
        return True

    async def cancel(
        self,
        session_id: str,
        generation_id: str | None = None,
    ) -> GenerationHandle | None:
        """Cancel and deregister the session's handle.

        No-op for unknown sessions, for a generation_id that no longer matches
        the registered handle, and for handles that are already terminal.
        Returns the cancelled handle.
        """
        async with self._lock(session_id):
            current = self._handles.get(session_id)
            if current is None:
                return None
            if generation_id is not None and current.generation_id != generation_id:
                logger.info(
                    "CANCEL_STALE | session=%s | requested=%s | active=%s",
                    session_id, generation_id, current.generation_id,
                )
                return None
            del self._handles[session_id]
            metrics.active_generations.set(len(self._handles))
            cancelled = current.cancel()
        return current if cancelled else None

    async def cancel_all(self) -> list[GenerationHandle]:
        cancelled = []
        for session_id in list(self._handles):
            handle = await self.cancel(session_id)
            if handle is not None:
                cancelled.append(handle)
        return cancelled
