"""In-process active queue and per-request locks."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Tuple

from .models import WorkflowRequest


class ActiveQueue:
    """Ids of non-terminal requests, ordered by priority then submission time."""

    def __init__(self) -> None:
        self._keys: Dict[str, Tuple[int, datetime]] = {}

    def add(self, request: WorkflowRequest) -> None:
        self._keys[request.request_id] = (request.priority.rank, request.submitted_at)

    def discard(self, request_id: str) -> None:
        self._keys.pop(request_id, None)

    def ordered(self) -> List[str]:
        return sorted(self._keys, key=self._keys.__getitem__)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class RequestLocks:
    """One :class:`asyncio.Lock` per request id or subject key.

    Locks are process-local; running several engine processes against one
    repository relies on the repository's version check instead.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def get(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = asyncio.Lock()
        return lock

    def discard(self, request_id: str) -> None:
        lock = self._locks.get(request_id)
        if lock is not None and not lock.locked() and request_id not in self._holders:
            del self._locks[request_id]

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` and drop it once no caller needs it."""
        lock = self.get(key)
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                if self._locks.get(key) is lock:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
