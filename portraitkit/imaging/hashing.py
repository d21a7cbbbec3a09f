"""Average-hash fingerprints for judging whether two rasters show the same picture."""

import hashlib
import logging
import math
import threading
from typing import Optional, Union

import numpy as np
from cachetools import LRUCache
from PIL import Image

from portraitkit.imaging.editor import center_square
from portraitkit.imaging.resources import ImageSource, InvalidImageError, ResourceTracker

log = logging.getLogger(__name__)

GRID_SIZE = 32
BLOCKS = 8
NEAR_DUPLICATE_THRESHOLD = 4

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def compute_fingerprint(img: Image.Image, size: int = GRID_SIZE, blocks: int = BLOCKS) -> str:
    """Average hash of a decoded image as a string of '0'/'1', blocks*blocks long."""
    small = center_square(img.convert("RGB")).resize((size, size), Image.Resampling.BILINEAR)
    rgb = np.asarray(small, dtype=np.float64)
    luma = np.floor(rgb @ LUMA_WEIGHTS)

    cell = size // blocks
    if cell < 1:
        raise ValueError(f"grid size {size} is smaller than block count {blocks}")
    usable = cell * blocks
    grid = luma[:usable, :usable].reshape(blocks, cell, blocks, cell)
    means = grid.mean(axis=(1, 3)).ravel()
    bits = means >= means.mean()
    return "".join("1" if b else "0" for b in bits)


def fingerprint(
    data: ImageSource,
    tracker: Optional[ResourceTracker] = None,
    size: int = GRID_SIZE,
    blocks: int = BLOCKS,
) -> str:
    """Fingerprint raster bytes. Returns "" when the raster cannot be read."""
    if data is None:
        return ""
    tracker = tracker or ResourceTracker("hash")
    try:
        with tracker.acquire(data) as img:
            return compute_fingerprint(img, size, blocks)
    except (InvalidImageError, OSError, ValueError) as e:
        log.warning(f"Could not fingerprint raster: {e}")
        return ""


def distance(a: str, b: str) -> Union[int, float]:
    """Hamming distance; math.inf when either is empty or the lengths differ."""
    if not a or not b or len(a) != len(b):
        return math.inf
    return sum(1 for x, y in zip(a, b) if x != y)


def is_near_duplicate(a: str, b: str, threshold: int = NEAR_DUPLICATE_THRESHOLD) -> bool:
    return distance(a, b) <= threshold


class Fingerprinter:
    """Fingerprints rasters, memoised by content digest."""

    def __init__(
        self,
        tracker: Optional[ResourceTracker] = None,
        size: int = GRID_SIZE,
        blocks: int = BLOCKS,
        threshold: int = NEAR_DUPLICATE_THRESHOLD,
        cache_entries: int = 256,
    ):
        self.tracker = tracker or ResourceTracker("hash")
        self.size = size
        self.blocks = blocks
        self.threshold = threshold
        self._cache = LRUCache(maxsize=max(1, cache_entries))
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, tracker: Optional[ResourceTracker] = None) -> "Fingerprinter":
        return cls(
            tracker=tracker,
            size=settings.grid_size,
            blocks=settings.blocks,
            threshold=settings.near_duplicate_threshold,
            cache_entries=settings.cache_entries,
        )

    def __call__(self, data: Optional[bytes]) -> str:
        if not data:
            return ""
        digest = hashlib.sha1(data).hexdigest()
        with self._lock:
            cached = self._cache.get(digest)
        if cached is not None:
            log.debug("Fingerprint cache hit %s", digest[:10])
            return cached
        fp = fingerprint(data, self.tracker, self.size, self.blocks)
        # Failures are not cached so a later read can recover
        if fp:
            with self._lock:
                self._cache[digest] = fp
        return fp

    def distance(self, a: str, b: str):
        return distance(a, b)

    def same(self, a: str, b: str) -> bool:
        return is_near_duplicate(a, b, self.threshold)
