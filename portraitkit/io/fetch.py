"""Resolves the sources accepted by proposeEdit into raw bytes."""

import logging
from pathlib import Path
from typing import Optional, Union

import requests

from portraitkit.io.store import BinaryStore, StoreError, StoreFailure
from portraitkit.scope import CancelScope

log = logging.getLogger(__name__)

STORE_PREFIX = "store:"
TIMEOUT = 10
CHUNK_SIZE = 64 * 1024

Source = Union[bytes, bytearray, memoryview, str, Path]


class FetchError(OSError):
    """A referenced image could not be retrieved."""


def is_url(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


def fetch_url(
    url: str,
    timeout: float = TIMEOUT,
    chunk_size: int = CHUNK_SIZE,
    scope: Optional[CancelScope] = None,
    max_bytes: Optional[int] = None,
) -> bytes:
    """Stream `url` into memory, checking `scope` between chunks."""
    log.debug(f"Fetching {url}")
    chunks = []
    received = 0
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=chunk_size):
                if scope is not None:
                    scope.check()
                if not chunk:
                    continue
                received += len(chunk)
                if max_bytes is not None and received > max_bytes:
                    raise StoreError(StoreFailure.TOO_LARGE, url, f"more than {max_bytes} bytes", max_bytes)
                chunks.append(chunk)
    except requests.Timeout as e:
        raise FetchError(f"Timed out fetching {url}") from e
    except requests.RequestException as e:
        raise FetchError(f"Failed to fetch {url}: {e}") from e
    log.debug(f"Fetched {received} bytes from {url}")
    return b"".join(chunks)


def fetch_source(
    source: Source,
    store: Optional[BinaryStore] = None,
    timeout: float = TIMEOUT,
    chunk_size: int = CHUNK_SIZE,
    scope: Optional[CancelScope] = None,
    max_bytes: Optional[int] = None,
) -> bytes:
    """Raw bytes, a file path, an http(s) URL or a `store:<key>` reference."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    if isinstance(source, str) and is_url(source):
        return fetch_url(source, timeout, chunk_size, scope, max_bytes)
    if isinstance(source, str) and source.startswith(STORE_PREFIX):
        key = source[len(STORE_PREFIX):]
        data = store.get(key) if store is not None else None
        if data is None:
            raise FetchError(f"No stored raster under {key!r}")
        return data
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            return path.read_bytes()
        except OSError as e:
            raise FetchError(f"Cannot read {path}: {e}") from e
    raise TypeError(f"unsupported image source: {type(source).__name__}")
