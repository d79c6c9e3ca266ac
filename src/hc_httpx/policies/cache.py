from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Literal

from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig, Response

logger = logging.getLogger(__name__)

KeyGenerator = Callable[[RequestConfig], str]


def default_cache_key(config: RequestConfig) -> str:
    params = json.dumps(config.params or {}, sort_keys=True, default=str)
    return f"{config.method}:{config.url}:{params}"


@dataclass(frozen=True, slots=True)
class CacheOptions:
    """Configuration for CachePolicy.

    Attributes:
        max_age_ms: Entry lifetime.
        max_size: Maximum number of entries kept.
        key_generator: Derives the cache key from a request.
        eviction: ``"insertion"`` evicts the oldest stored entry, ``"lru"``
            the least recently read one.
    """

    max_age_ms: float = 300_000
    max_size: int = 100
    key_generator: KeyGenerator | None = None
    eviction: Literal["insertion", "lru"] = "insertion"


class _CacheEntry:
    __slots__ = ("response", "stored_at")

    def __init__(self, response: Response, stored_at: float):
        self.response = response
        self.stored_at = stored_at


class ResponseCache:
    """Bounded, age-limited response store.

    Times are milliseconds from the caller-supplied clock.
    """

    def __init__(self, max_size: int, max_age_ms: float, *, lru: bool = False) -> None:
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self.max_size = max(1, int(max_size))
        self.max_age_ms = max(0.0, float(max_age_ms))
        self.lru = lru
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _expired(self, entry: _CacheEntry, now_ms: float) -> bool:
        return now_ms - entry.stored_at >= self.max_age_ms

    def get(self, key: str, now_ms: float) -> Response | None:
        entry = self._entries.get(key)
        if entry is None or self._expired(entry, now_ms):
            self.misses += 1
            return None
        if self.lru:
            self._entries.move_to_end(key)
        self.hits += 1
        return entry.response

    def set(self, key: str, response: Response, now_ms: float) -> None:
        self.sweep(now_ms)
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("Evicted cache entry %s", evicted)
        self._entries[key] = _CacheEntry(response, now_ms)

    def sweep(self, now_ms: float) -> int:
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now_ms)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CachePolicy(InterceptorPolicy):
    """Serves repeated GET requests from memory.

    Lookup problems (a failing key generator, a corrupt entry) count as a
    miss; the policy never fails a request.
    """

    name = "cache"
    phases = (Phase.REQUEST, Phase.RESPONSE)
    options_type = CacheOptions

    def __init__(self, context: Any, options: CacheOptions | None = None) -> None:
        super().__init__(context, options)
        self.cache = ResponseCache(self.options.max_size, self.options.max_age_ms, lru=self.options.eviction == "lru")

    def _key(self, config: RequestConfig | None) -> str | None:
        if config is None or config.method != "GET":
            return None
        generate = self.options.key_generator or default_cache_key
        try:
            return generate(config)
        except Exception:
            logger.debug("Cache key generation failed for %s", config.url, exc_info=True)
            return None

    def on_request(self, config: RequestConfig) -> Response | None:
        key = self._key(config)
        if key is None:
            return None
        cached = self.cache.get(key, self.context.now_ms())
        if cached is None:
            return None
        logger.debug("Cache hit for %s", key)
        return cached.model_copy(update={"config": config, "from_cache": True})

    def on_response(self, response: Response) -> None:
        if response.from_cache or not response.ok:
            return None
        key = self._key(response.config)
        if key is not None:
            self.cache.set(key, response, self.context.now_ms())
        return None

    def reset(self) -> None:
        self.cache.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self.cache),
            "max_size": self.cache.max_size,
            "hits": self.cache.hits,
            "misses": self.cache.misses,
            "evictions": self.cache.evictions,
        }
