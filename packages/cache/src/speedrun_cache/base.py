"""Abstract cache interface.

Every networked read in speedrun goes through a BaseCache. The gateway, the
agent and the tools depend on BaseCache, not on a concrete backend, so
caching can be switched off (NoOpCache) without touching any caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from speedrun_cache.models import CacheStats


class BaseCache(ABC):
    """Key/value store with per-entry expiry.

    Implementations must be safe to call from several worker threads at once:
    the enrichment fetches for every PR run in parallel and all of them share
    one cache instance.

    Values are anything JSON-serializable. ``None`` is reserved as the miss
    marker and is never stored.
    """

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss.

        Expired and undecodable entries are misses. Never raises for them.
        """

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value for ``ttl`` seconds (default: the configured max age).

        A ``ttl`` of zero or less, or a ``None`` value, stores nothing.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove an entry. Deleting a missing key is not an error."""

    @abstractmethod
    def cleanup(self) -> int:
        """Remove every expired entry and return how many were removed."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry, expired or not."""

    @abstractmethod
    def stats(self) -> CacheStats:
        """Return entry counts for the cache."""

    def close(self) -> None:
        """Release any resources held by the cache (connections, file handles).

        Default is a no-op so callers can always call close() safely.
        """
