"""Tree options and runtime cache statistics."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass
class Statistics:
    """Counters of node-cache hits and misses, safe to update from many threads."""

    cache_hit: int = 0
    cache_miss: int = 0
    fast_cache_hit: int = 0
    fast_cache_miss: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def _bump(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def inc_cache_hit(self) -> None:
        """Count a node lookup served from the cache."""
        self._bump("cache_hit")

    def inc_cache_miss(self) -> None:
        """Count a node lookup that missed the cache."""
        self._bump("cache_miss")

    def inc_fast_cache_hit(self) -> None:
        """Count a fast-node lookup served from the cache."""
        self._bump("fast_cache_hit")

    def inc_fast_cache_miss(self) -> None:
        """Count a fast-node lookup that missed the cache."""
        self._bump("fast_cache_miss")

    def reset(self) -> None:
        """Set every counter back to zero."""
        with self._lock:
            self.cache_hit = 0
            self.cache_miss = 0
            self.fast_cache_hit = 0
            self.fast_cache_miss = 0


@dataclass
class Options:
    """Options for a tree.

    ``sync`` flushes every write to storage synchronously.
    ``initial_version`` is the number given to the first saved version; loading
    a tree that holds an earlier version is an error.
    ``stat`` collects cache statistics when set.
    """

    sync: bool = False
    initial_version: int = 0
    stat: Statistics | None = None


def default_options() -> Options:
    """Return the default tree options."""
    return Options()