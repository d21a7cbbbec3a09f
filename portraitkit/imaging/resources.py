"""Tracks transient decoded-image handles so each one is released exactly once."""

import itertools
import logging
import threading
from io import BytesIO
from typing import Dict, Optional, Union

from PIL import Image, UnidentifiedImageError

log = logging.getLogger(__name__)

ImageSource = Union[bytes, bytearray, memoryview, Image.Image]


class InvalidImageError(ValueError):
    """The source bytes could not be decoded as an image."""


class ImageHandle:
    """A decoded image owned by a ResourceTracker.

    Used as a context manager the handle is a scoped guard: the image is
    released on every exit path of the `with` block.
    """

    __slots__ = ("handle_id", "image", "owned", "_tracker", "_released")

    def __init__(self, tracker: "ResourceTracker", handle_id: int, image: Image.Image, owned: bool):
        self._tracker = tracker
        self.handle_id = handle_id
        self.image = image
        self.owned = owned
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        return self._tracker.release(self)

    def __enter__(self) -> Image.Image:
        return self.image

    def __exit__(self, exc_type, exc, tb):
        self._tracker.release(self)
        return False

    def __repr__(self):
        state = "released" if self._released else "live"
        return f"ImageHandle(#{self.handle_id}, owned={self.owned}, {state})"


class ResourceTracker:
    """Owns the set of decoded images currently alive."""

    def __init__(self, name: str = "tracker"):
        self.name = name
        self._lock = threading.Lock()
        self._live: Dict[int, ImageHandle] = {}
        self._ids = itertools.count(1)

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def acquire(self, source: ImageSource) -> ImageHandle:
        """Decode `source` into a tracked handle.

        An already decoded PIL image passes through untouched: the handle is
        tracked but releasing it does not close the caller's image.
        """
        if isinstance(source, Image.Image):
            image, owned = source, False
        else:
            image, owned = self._decode(source), True

        with self._lock:
            handle = ImageHandle(self, next(self._ids), image, owned)
            self._live[handle.handle_id] = handle
        return handle

    def release(self, handle: ImageHandle) -> bool:
        """Release a handle. Returns False if it was already released."""
        with self._lock:
            if handle._released or self._live.pop(handle.handle_id, None) is None:
                log.debug("%s: handle #%d already released", self.name, handle.handle_id)
                return False
            handle._released = True
        if handle.owned:
            handle.image.close()
        return True

    def promote(self, handle: ImageHandle) -> Image.Image:
        """Detach a handle's image from tracking; the caller takes ownership."""
        with self._lock:
            if handle._released or self._live.pop(handle.handle_id, None) is None:
                raise ValueError(f"cannot promote released handle #{handle.handle_id}")
            handle._released = True
        return handle.image

    def release_all(self) -> int:
        """Release every live handle. Returns how many were released."""
        with self._lock:
            handles = list(self._live.values())
        count = sum(1 for h in handles if self.release(h))
        if count:
            log.debug("%s: released %d live handle(s)", self.name, count)
        return count

    def _decode(self, data) -> Image.Image:
        try:
            img = Image.open(BytesIO(bytes(data)))
            img.load()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise InvalidImageError(f"cannot decode image ({len(data)} bytes): {e}") from e
        return img


def decode_size(data: bytes) -> Optional[tuple]:
    """Header-only size probe. Returns None if the bytes are not an image."""
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None
