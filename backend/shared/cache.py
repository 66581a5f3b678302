"""In-process TTL cache with stale fallback for hot-path lookups.

Each repository owns its cache instances, so two pipelines in the same process
never share cached records. When the persistence store raises, reads fall back
to the last value successfully loaded for that key so event handling keeps
running through a short outage.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from cachetools import TTLCache

logger = logging.getLogger(__name__)

# Distinguishes "not cached" from a cached None
MISSING = object()


class AsyncTTLCache:
    """TTL cache (cachetools) backed by a bounded last-known-good tier.

    ``invalidate`` drops both tiers for a key, since its old value is known to
    be wrong; ``clear`` only expires fresh entries. The stale tier is consulted
    solely when a load fails.
    """

    def __init__(
        self,
        maxsize: int = 128,
        ttl: float = 60.0,
        *,
        retry: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        self.maxsize = maxsize
        self.retry = max(retry, 1)
        self.retry_delay = retry_delay
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._stale: OrderedDict[str, Any] = OrderedDict()
        self._loading: dict[str, asyncio.Lock] = {}
        # Bumped on every invalidation; a load that straddles one is not cached
        self._generation: dict[str, int] = {}
        self._epoch = 0

    def peek(self, key: str) -> Any:
        return self._fresh.get(key, MISSING)

    def put(self, key: str, value: Any) -> None:
        self._fresh[key] = value
        self._stale[key] = value
        self._stale.move_to_end(key)
        if len(self._stale) > self.maxsize:
            self._stale.popitem(last=False)

    def invalidate(self, key: str) -> None:
        self._fresh.pop(key, None)
        self._stale.pop(key, None)
        self._generation[key] = self._generation.get(key, 0) + 1

    def clear(self) -> None:
        self._fresh.clear()
        self._epoch += 1

    def _version(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generation.get(key, 0)

    @property
    def size(self) -> int:
        return len(self._fresh)

    @property
    def stale_size(self) -> int:
        return len(self._stale)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the fresh value for *key*, loading it once per miss.

        Concurrent misses on the same key share one load. A load that keeps
        failing after ``retry`` attempts falls back to the stale tier, and
        re-raises only when nothing was ever loaded for the key.
        """
        value = self.peek(key)
        if value is not MISSING:
            return value

        lock = self._loading.setdefault(key, asyncio.Lock())
        async with lock:
            value = self.peek(key)
            if value is not MISSING:
                return value
            return await self._load(key, loader)

    async def _load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        version = self._version(key)
        for attempt in range(1, self.retry + 1):
            try:
                value = await loader()
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt < self.retry:
                    delay = self.retry_delay * attempt
                    logger.warning(
                        f"Load {attempt}/{self.retry} failed for {key}: "
                        f"{type(e).__name__}, retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                stale = self._stale.get(key, MISSING)
                if stale is MISSING:
                    raise
                logger.warning(f"Serving stale value for {key} ({type(e).__name__}: {e})")
                return stale
        if self._version(key) != version:
            logger.debug(f"{key} invalidated while loading, result not cached")
            return value
        self.put(key, value)
        return value


def cached(cache_attr: str, key_func: Callable[..., str]):
    """Cache an async method's result in the instance's ``cache_attr`` cache."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args: Any, **kwargs: Any) -> Any:
            cache: AsyncTTLCache = getattr(self, cache_attr)
            return await cache.get_or_load(
                key_func(self, *args, **kwargs),
                lambda: func(self, *args, **kwargs),
            )

        return wrapper

    return decorator
