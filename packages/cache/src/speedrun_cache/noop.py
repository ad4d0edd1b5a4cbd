"""No-op cache, used when caching is disabled.

Using a NoOpCache rather than None lets the gateway, agent and tools always
call cache.get()/cache.set() without conditional checks.
"""

from __future__ import annotations

from typing import Any

from speedrun_cache.base import BaseCache
from speedrun_cache.models import CacheStats


class NoOpCache(BaseCache):
    """Always misses, silently discards writes."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        pass  # intentional no-op

    def delete(self, key: str) -> None:
        pass

    def cleanup(self) -> int:
        return 0

    def clear(self) -> None:
        pass

    def stats(self) -> CacheStats:
        return CacheStats()
