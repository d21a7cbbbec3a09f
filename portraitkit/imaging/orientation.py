"""Reads the EXIF orientation tag straight from JPEG bytes and applies it.

The parser walks the JPEG marker segments itself instead of asking Pillow,
so a damaged or hostile APP1 block can only ever degrade to "upright".
"""

import logging
import struct
from typing import Iterator, Optional, Tuple

from PIL import Image

log = logging.getLogger(__name__)

IDENTITY = 1
ORIENTATION_TAG = 0x0112
EXIF_SIGNATURE = b"Exif\x00\x00"
TIFF_MAGIC = 42
TYPE_SHORT = 3

SOI = 0xD8
EOI = 0xD9
SOS = 0xDA
APP1 = 0xE1
# Markers that carry no length field.
STANDALONE_MARKERS = {0x01, SOI, EOI} | set(range(0xD0, 0xD8))

# Transpose needed to display each orientation code upright.
TRANSPOSE_FOR_ORIENTATION = {
    2: Image.Transpose.FLIP_LEFT_RIGHT,
    3: Image.Transpose.ROTATE_180,
    4: Image.Transpose.FLIP_TOP_BOTTOM,
    5: Image.Transpose.TRANSPOSE,
    6: Image.Transpose.ROTATE_270,  # 90 degrees clockwise
    7: Image.Transpose.TRANSVERSE,
    8: Image.Transpose.ROTATE_90,   # 90 degrees counter-clockwise
}


def iter_segments(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yields (marker, payload) for each length-prefixed segment before the scan data.

    Stops quietly at the first structural problem: missing SOI, a byte that is
    not a marker, a truncated segment, or the start of entropy-coded data.
    """
    if len(data) < 4 or data[0] != 0xFF or data[1] != SOI:
        return
    pos = 2
    end = len(data)
    while pos < end:
        if data[pos] != 0xFF:
            log.debug("Expected marker at offset %d, found 0x%02X", pos, data[pos])
            return
        # Skip fill bytes
        while pos < end and data[pos] == 0xFF:
            pos += 1
        if pos >= end:
            return
        marker = data[pos]
        pos += 1
        if marker in STANDALONE_MARKERS:
            if marker == EOI:
                return
            continue
        if marker == SOS:
            return
        if pos + 2 > end:
            return
        (length,) = struct.unpack(">H", data[pos:pos + 2])
        if length < 2:
            # Zero-length segment: nothing to read, step over the length field
            pos += 2
            continue
        if pos + length > end:
            log.debug("Truncated segment 0x%02X at offset %d", marker, pos)
            return
        yield marker, data[pos + 2:pos + length]
        pos += length


def parse_exif_orientation(payload: bytes) -> Optional[int]:
    """Returns the orientation from an APP1 payload, or None if it has none or is malformed."""
    if not payload.startswith(EXIF_SIGNATURE):
        return None
    tiff = payload[len(EXIF_SIGNATURE):]
    if len(tiff) < 8:
        return None

    order = tiff[:2]
    if order == b"II":
        endian = "<"
    elif order == b"MM":
        endian = ">"
    else:
        return None

    (magic,) = struct.unpack(endian + "H", tiff[2:4])
    if magic != TIFF_MAGIC:
        return None

    (ifd_offset,) = struct.unpack(endian + "I", tiff[4:8])
    if ifd_offset < 8 or ifd_offset + 2 > len(tiff):
        return None

    (count,) = struct.unpack(endian + "H", tiff[ifd_offset:ifd_offset + 2])
    for i in range(count):
        entry = ifd_offset + 2 + 12 * i
        if entry + 12 > len(tiff):
            return None
        tag, field_type, value_count = struct.unpack(endian + "HHI", tiff[entry:entry + 8])
        if tag != ORIENTATION_TAG:
            continue
        if field_type != TYPE_SHORT or value_count != 1:
            return None
        (value,) = struct.unpack(endian + "H", tiff[entry + 8:entry + 10])
        return value if 1 <= value <= 8 else None
    return None


def read_orientation(data) -> int:
    """Returns the EXIF orientation code (1-8) of JPEG bytes.

    Never raises: anything missing, truncated or invalid yields 1 (identity).
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        return IDENTITY
    data = bytes(data)
    try:
        for marker, payload in iter_segments(data):
            if marker != APP1 or not payload.startswith(EXIF_SIGNATURE):
                # XMP and other APP1 payloads share the marker; keep scanning
                continue
            try:
                value = parse_exif_orientation(payload)
            except struct.error as e:
                log.debug("Malformed EXIF block skipped: %s", e)
                continue
            if value is not None:
                return value
    except (struct.error, IndexError, ValueError) as e:
        log.debug("Orientation scan aborted: %s", e)
    return IDENTITY


def apply_orientation(img: Image.Image, code: int) -> Image.Image:
    """Remaps `img` so that an image tagged with `code` displays upright."""
    method = TRANSPOSE_FOR_ORIENTATION.get(code)
    if method is None:
        return img
    return img.transpose(method)
