"""
In-process caches owned by the composition root (see wiring.py)
TTLCache holds small lookups such as the services catalog.
MemoizedLoader wraps an expensive async load (the ZCTA dataset) so
concurrent callers share a single in-flight load.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Key/value cache where every entry expires ttl seconds after it was set"""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"❌ Cache MISS: {key}")
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            logger.debug(f"⌛ Cache EXPIRED: {key}")
            return default
        logger.debug(f"✅ Cache HIT: {key}")
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = (self._clock() + (ttl if ttl is not None else self.ttl), value)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when no key is given"""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class MemoizedLoader:
    """
    Load a value once and share it.

    While a load is running every caller awaits the same future, so the
    loader function runs at most once per expiry window. Failed loads are
    not remembered; the next call starts a fresh attempt.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "loader",
    ):
        self._loader = loader
        self._ttl = ttl
        self._clock = clock
        self._name = name
        self._value: Any = _MISSING
        self._loaded_at = 0.0
        self._inflight: Optional[asyncio.Future] = None
        self.load_count = 0

    def _fresh(self) -> bool:
        if self._value is _MISSING:
            return False
        if self._ttl is None:
            return True
        return self._clock() - self._loaded_at < self._ttl

    async def get(self) -> Any:
        if self._fresh():
            return self._value
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run())
        # shield so one cancelled waiter does not cancel the shared load
        return await asyncio.shield(self._inflight)

    async def _run(self) -> Any:
        self.load_count += 1
        try:
            value = await self._loader()
        except Exception as e:
            logger.error(f"❌ {self._name} load failed: {e}")
            raise
        finally:
            self._inflight = None
        self._value = value
        self._loaded_at = self._clock()
        logger.info(f"✅ {self._name} loaded")
        return value

    def peek(self) -> Any:
        """Cached value without triggering a load (None if not loaded)"""
        return None if self._value is _MISSING else self._value

    def invalidate(self) -> None:
        self._value = _MISSING
        self._loaded_at = 0.0
