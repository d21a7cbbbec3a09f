"""Shared image fixtures."""

import io
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image

from portraitkit.io.records import RecordManager
from portraitkit.io.store import MemoryStore
from portraitkit.session import PhotoSession

DARK = (0, 0, 0)
LIGHT = (255, 255, 255)


def encode(img: Image.Image, fmt: str = "PNG", **kwargs) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def quadrant_image(size: int = 256) -> Image.Image:
    """White square with a black top-left quadrant; every rotation and flip looks different."""
    img = Image.new("RGB", (size, size), LIGHT)
    img.paste(DARK, (0, 0, size // 2, size // 2))
    return img


def right_half_image(size: int = 256) -> Image.Image:
    img = Image.new("RGB", (size, size), LIGHT)
    img.paste(DARK, (size // 2, 0, size, size))
    return img


@pytest.fixture
def quadrant_png() -> bytes:
    return encode(quadrant_image())


@pytest.fixture
def other_png() -> bytes:
    return encode(right_half_image())


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def session(store):
    executor = ThreadPoolExecutor(max_workers=3)
    s = PhotoSession(store, RecordManager(), executor=executor)
    yield s
    s.shutdown()
    executor.shutdown(wait=True)
