"""Key-addressed binary store for subject rasters."""

import abc
import enum
import errno
import logging
import threading
from io import BytesIO
from pathlib import Path
from typing import Dict, Iterable, Optional
from urllib.parse import quote, unquote

from PIL import Image, UnidentifiedImageError

from portraitkit.imaging.cache import ByteLRUCache

log = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 8 * 1024 * 1024
DEFAULT_FORMATS = ("JPEG", "PNG", "WEBP", "GIF", "BMP")


# ----------------------------
# Key derivation
# ----------------------------

def display_key(subject_id: str) -> str:
    return subject_id


def full_key(subject_id: str) -> str:
    return f"{subject_id}_full"


def original_key(subject_id: str) -> str:
    return f"{subject_id}_orig"


def crop_base_key(subject_id: str) -> str:
    return f"{subject_id}_cropBase"


def legacy_original_key(family_key: Optional[str], path: Optional[str]) -> Optional[str]:
    """Path-qualified original key used by records created before per-id keys."""
    if not family_key or not path:
        return None
    return f"orig:{family_key}:{path}"


# ----------------------------
# Errors
# ----------------------------

class StoreFailure(enum.Enum):
    TOO_LARGE = "too-large"
    UNSUPPORTED_FORMAT = "unsupported-format"
    QUOTA_EXCEEDED = "quota-exceeded"


_USER_MESSAGES = {
    StoreFailure.TOO_LARGE: "The photo is too large. Please choose an image under {limit} MB.",
    StoreFailure.UNSUPPORTED_FORMAT: "This file type is not supported. Use JPEG, PNG, WebP, GIF or BMP.",
    StoreFailure.QUOTA_EXCEEDED: "Storage is full. Remove some photos and try again.",
}


class StoreError(Exception):
    """A put was refused. `reason` says why in terms the user can act on."""

    def __init__(self, reason: StoreFailure, key: str = "", detail: str = "", limit_bytes: int = DEFAULT_MAX_BYTES):
        self.reason = reason
        self.key = key
        self.detail = detail
        self.limit_bytes = limit_bytes
        super().__init__(f"{reason.value} for key {key!r}" + (f": {detail}" if detail else ""))

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self.reason].format(limit=round(self.limit_bytes / (1024 * 1024)))


def sniff_format(data: bytes) -> Optional[str]:
    """Container format as Pillow names it, read from the header only."""
    try:
        with Image.open(BytesIO(data)) as img:
            return img.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None


# ----------------------------
# Stores
# ----------------------------

class BinaryStore(abc.ABC):
    """get/put/clear over opaque keys. Puts are validated before any write."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES, allowed_formats: Iterable[str] = DEFAULT_FORMATS):
        self.max_bytes = max_bytes
        self.allowed_formats = frozenset(f.upper() for f in allowed_formats)

    def validate(self, key: str, data: bytes):
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError(f"store values must be bytes, got {type(data).__name__}")
        if len(data) > self.max_bytes:
            raise StoreError(StoreFailure.TOO_LARGE, key, f"{len(data)} bytes", self.max_bytes)
        fmt = sniff_format(bytes(data))
        if fmt is None or fmt.upper() not in self.allowed_formats:
            raise StoreError(StoreFailure.UNSUPPORTED_FORMAT, key, f"format {fmt!r}", self.max_bytes)

    def put(self, key: str, data: bytes):
        self.validate(key, data)
        self._write(key, bytes(data))
        log.debug("Stored %d bytes under %r", len(data), key)

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    @abc.abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abc.abstractmethod
    def clear(self, key: str):
        ...

    @abc.abstractmethod
    def keys(self) -> list:
        ...

    @abc.abstractmethod
    def _write(self, key: str, data: bytes):
        ...


class MemoryStore(BinaryStore):
    """Dict-backed store. `quota` bounds the total bytes held, if set."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES, allowed_formats: Iterable[str] = DEFAULT_FORMATS,
                 quota: Optional[int] = None):
        super().__init__(max_bytes, allowed_formats)
        self.quota = quota
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def clear(self, key):
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return sorted(self._data)

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._data.values())

    def _write(self, key, data):
        with self._lock:
            if self.quota is not None:
                used = sum(len(v) for k, v in self._data.items() if k != key)
                if used + len(data) > self.quota:
                    raise StoreError(StoreFailure.QUOTA_EXCEEDED, key, f"{used + len(data)} > {self.quota}",
                                     self.max_bytes)
            self._data[key] = data


class FileStore(BinaryStore):
    """One file per key under `directory`, written atomically."""

    SUFFIX = ".bin"

    def __init__(self, directory: Path, max_bytes: int = DEFAULT_MAX_BYTES,
                 allowed_formats: Iterable[str] = DEFAULT_FORMATS, read_cache_mb: float = 32.0):
        super().__init__(max_bytes, allowed_formats)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._cache = ByteLRUCache(max(1, int(read_cache_mb * 1024 * 1024)))

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + self.SUFFIX)

    def get(self, key):
        with self._lock:
            cached = self._cache.lookup(key)
            if cached is not None:
                return cached
            path = self._path(key)
            if not path.exists():
                return None
            data = path.read_bytes()
            if len(data) <= self._cache.maxsize:
                self._cache[key] = data
            return data

    def clear(self, key):
        with self._lock:
            self._cache.pop(key, None)
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                pass

    def keys(self):
        return sorted(unquote(p.name[: -len(self.SUFFIX)]) for p in self.directory.glob("*" + self.SUFFIX))

    def _write(self, key, data):
        path = self._path(key)
        temp_path = path.with_suffix(".tmp")
        with self._lock:
            self._cache.pop(key, None)
            try:
                with temp_path.open("wb") as f:
                    f.write(data)
                # Atomic rename
                temp_path.replace(path)
            except OSError as e:
                temp_path.unlink(missing_ok=True)
                if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                    raise StoreError(StoreFailure.QUOTA_EXCEEDED, key, str(e), self.max_bytes) from e
                raise


def open_store(settings, directory: Optional[Path] = None) -> BinaryStore:
    """FileStore under `directory`, or a MemoryStore when no directory is given."""
    if directory is None:
        return MemoryStore(settings.max_bytes, settings.allowed_formats)
    return FileStore(directory, settings.max_bytes, settings.allowed_formats, settings.read_cache_mb)
