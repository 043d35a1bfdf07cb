import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class UiHierarchyCache(Generic[T]):
    """
    Holds at most one (timestamp, elements) entry.

    Reads within the TTL return the cached list; otherwise a fresh dump runs
    under the lock, so concurrent readers never observe a half-written entry.
    """

    def __init__(self, ttl_ms: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entry: tuple[float, list[T]] | None = None

    def _fresh(self) -> list[T] | None:
        if self._entry is None:
            return None
        timestamp, elements = self._entry
        if (self._clock() - timestamp) * 1000 < self.ttl_ms:
            return elements
        return None

    async def get(self, loader: Callable[[], Awaitable[list[T]]]) -> list[T]:
        async with self._lock:
            cached = self._fresh()
            if cached is not None:
                return list(cached)
            elements = await loader()
            self._entry = (self._clock(), elements)
            return list(elements)

    async def invalidate(self) -> None:
        async with self._lock:
            self._entry = None

    @property
    def is_empty(self) -> bool:
        return self._entry is None
