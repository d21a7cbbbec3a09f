"""Byte-aware LRU cache for stored raster blobs."""

import logging
from typing import Any, Callable, Optional

from cachetools import LRUCache

log = logging.getLogger(__name__)


class ByteLRUCache(LRUCache):
    """An LRU Cache that respects the size of its items in bytes."""

    def __init__(
        self,
        max_bytes: int,
        size_of: Callable[[Any], int] = len,
        on_evict: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(maxsize=max_bytes, getsizeof=size_of)
        self.on_evict = on_evict
        self.hits = 0
        self.misses = 0
        log.info(f"Initialized byte-aware LRU cache with {max_bytes / 1024**2:.2f} MB capacity.")

    def lookup(self, key) -> Optional[bytes]:
        """Get with hit/miss accounting."""
        value = self.get(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def __setitem__(self, key, value):
        # Eviction of older entries is handled by the parent via popitem
        super().__setitem__(key, value)
        log.debug(f"Cached item '{key}'. Cache size: {self.currsize / 1024**2:.2f} MB")

    def popitem(self):
        """Extend popitem to log eviction."""
        key, value = super().popitem()
        log.debug(f"Evicted item '{key}' to free up space. Cache size: {self.currsize / 1024**2:.2f} MB")
        if self.on_evict:
            self.on_evict(key)
        return key, value


def build_cache_key(subject_id: str, photo_version: int) -> str:
    """Builds a render reference that changes whenever the committed asset does."""
    return f"{subject_id}::{photo_version}"
