"""Square portrait transforms: orientation, rotation, flips, crop and fit."""

import dataclasses
import logging
import math
from io import BytesIO
from typing import Optional, Tuple, Union

from PIL import Image

from portraitkit.imaging.orientation import apply_orientation, read_orientation
from portraitkit.imaging.resources import ImageSource, ResourceTracker
from portraitkit.models import Region, TransformFlags

log = logging.getLogger(__name__)

FILL_COLOR = (0, 0, 0)


# ----------------------------
# Operations
# ----------------------------

@dataclasses.dataclass(frozen=True)
class OrientationCorrect:
    code: int


@dataclasses.dataclass(frozen=True)
class Rotate:
    degrees: float


@dataclasses.dataclass(frozen=True)
class Rotate90:
    direction: int = 1  # +1 clockwise, -1 counter-clockwise

    def __post_init__(self):
        if self.direction not in (1, -1):
            raise ValueError(f"direction must be +1 or -1, got {self.direction!r}")


@dataclasses.dataclass(frozen=True)
class Flip:
    flip_x: bool = False
    flip_y: bool = False


@dataclasses.dataclass(frozen=True)
class Geometry:
    """Flip and rotation applied together in one resampling pass."""
    flip_x: bool = False
    flip_y: bool = False
    rotate_deg: float = 0.0

    @classmethod
    def from_flags(cls, flags: TransformFlags) -> "Geometry":
        return cls(flags.flip_x, flags.flip_y, flags.rotate_deg)


@dataclasses.dataclass(frozen=True)
class CropInteractive:
    region: Region


@dataclasses.dataclass(frozen=True)
class FitInteractive:
    region: Region


Operation = Union[OrientationCorrect, Rotate, Rotate90, Flip, Geometry, CropInteractive, FitInteractive]


@dataclasses.dataclass
class Ingested:
    """Result of ingesting an uploaded image."""
    display: bytes
    full: bytes
    orientation: int
    source_size: Tuple[int, int]


# ----------------------------
# Rotate + Autocrop helper
# ----------------------------

def _rotated_rect_with_max_area(w: int, h: int, angle_rad: float) -> tuple[int, int]:
    """
    Largest axis-aligned rectangle within a w x h rectangle rotated by angle_rad.
    Returns (crop_w, crop_h) in pixels.
    """
    if w <= 0 or h <= 0:
        return 0, 0

    # fold angle into [0, pi/2)
    angle_rad = abs(angle_rad) % (math.pi / 2)
    if angle_rad > math.pi / 4:
        angle_rad = (math.pi / 2) - angle_rad

    sin_a = abs(math.sin(angle_rad))
    cos_a = abs(math.cos(angle_rad))

    # if basically unrotated
    if sin_a < 1e-12:
        return w, h

    width_is_longer = w >= h
    side_long = w if width_is_longer else h
    side_short = h if width_is_longer else w

    # "half constrained" case
    if side_short <= 2.0 * sin_a * cos_a * side_long or abs(sin_a - cos_a) < 1e-12:
        x = 0.5 * side_short
        if width_is_longer:
            wr = x / sin_a
            hr = x / cos_a
        else:
            wr = x / cos_a
            hr = x / sin_a
    else:
        cos_2a = cos_a * cos_a - sin_a * sin_a
        wr = (w * cos_a - h * sin_a) / cos_2a
        hr = (h * cos_a - w * sin_a) / cos_2a

    cw = round(abs(wr))
    ch = round(abs(hr))
    cw = max(1, min(w, cw))
    ch = max(1, min(h, ch))
    return cw, ch


def _inscribed_square_side(n: int, angle_deg: float, inset: int) -> int:
    """Side of the largest square inside an n x n square rotated by angle_deg."""
    cw, ch = _rotated_rect_with_max_area(n, n, math.radians(angle_deg))
    side = min(cw, ch)
    if side != n and inset > 0 and side > 2 * inset:
        side -= 2 * inset
    return max(1, side)


def _quarter_turn_trig(angle_deg: float) -> Optional[Tuple[int, int]]:
    """Exact (cos, sin) for multiples of 90 degrees, else None."""
    a = angle_deg % 360.0
    for quarter, trig in ((0.0, (1, 0)), (90.0, (0, 1)), (180.0, (-1, 0)), (270.0, (0, -1)), (360.0, (1, 0))):
        if abs(a - quarter) < 1e-9:
            return trig
    return None


def is_quarter_turn(angle_deg: float) -> bool:
    return _quarter_turn_trig(angle_deg) is not None


def center_square(img: Image.Image) -> Image.Image:
    w, h = img.size
    s = min(w, h)
    if w == h:
        return img
    left = (w - s) // 2
    top = (h - s) // 2
    return img.crop((left, top, left + s, top + s))


def geometry_square(img: Image.Image, geometry: Geometry, max_dim: int, inset: int = 2) -> Image.Image:
    """
    Flip, rotate clockwise about the center and crop to the largest inscribed
    square, all as a single affine resample. Output side is capped at max_dim.
    """
    img = img.convert("RGB")
    w, h = img.size
    n = min(w, h)

    trig = _quarter_turn_trig(geometry.rotate_deg)
    if trig is not None:
        cos_t, sin_t = trig
        side = n
    else:
        theta = math.radians(geometry.rotate_deg)
        cos_t, sin_t = math.cos(theta), math.sin(theta)
        side = _inscribed_square_side(n, geometry.rotate_deg, inset)

    out = max(1, min(side, max_dim))
    k = side / out
    fx = -1.0 if geometry.flip_x else 1.0
    fy = -1.0 if geometry.flip_y else 1.0

    # Inverse mapping dst -> src: src = C_src + F . R(-theta) . k . (dst - C_dst)
    m00 = fx * cos_t * k
    m01 = fx * sin_t * k
    m10 = -fy * sin_t * k
    m11 = fy * cos_t * k
    half = out / 2.0
    cx, cy = w / 2.0, h / 2.0
    data = (
        m00, m01, cx - m00 * half - m01 * half,
        m10, m11, cy - m10 * half - m11 * half,
    )

    exact = trig is not None and out == side
    resample = Image.Resampling.NEAREST if exact else Image.Resampling.BICUBIC
    return img.transform((out, out), Image.Transform.AFFINE, data, resample=resample, fillcolor=FILL_COLOR)


def rotate_autocrop_square(img: Image.Image, angle_deg: float, max_dim: int, inset: int = 2) -> Image.Image:
    """
    Rotate by any angle and then crop to the largest square that contains
    ONLY valid pixels (no wedges).
    """
    return geometry_square(img, Geometry(rotate_deg=angle_deg), max_dim, inset)


def _region_box(region: Region, w: int, h: int, clamp: bool) -> Tuple[int, int, int, int]:
    if region.size <= 0:
        raise ValueError(f"region size must be positive, got {region.size}")
    size = int(round(region.size))
    left = int(round(region.left))
    top = int(round(region.top))
    if clamp:
        size = max(1, min(size, w, h))
        left = max(0, min(w - size, left))
        top = max(0, min(h - size, top))
    return left, top, left + size, top + size


class TransformEngine:
    """Maps (source bytes, operation) to re-encoded square JPEG bytes.

    Every output is square, at most `max_dimension` per side and encoded at a
    fixed quality, so the same inputs always give the same bytes.
    """

    def __init__(
        self,
        tracker: Optional[ResourceTracker] = None,
        max_dimension: int = 512,
        quality: int = 72,
        full_quality: int = 92,
        rotate_inset: int = 2,
    ):
        self.tracker = tracker or ResourceTracker("engine")
        self.max_dimension = max_dimension
        self.quality = quality
        self.full_quality = full_quality
        self.rotate_inset = rotate_inset

    @classmethod
    def from_settings(cls, settings, tracker: Optional[ResourceTracker] = None) -> "TransformEngine":
        return cls(
            tracker=tracker,
            max_dimension=settings.max_dimension,
            quality=settings.jpeg_quality,
            full_quality=settings.full_quality,
            rotate_inset=settings.rotate_inset,
        )

    # -- public API --

    def apply(self, source: ImageSource, op: Operation) -> bytes:
        with self.tracker.acquire(source) as img:
            return self.encode(self._apply_to_image(img, op))

    def ingest(self, source: bytes) -> Ingested:
        """Orientation-correct an upload once and derive its display raster."""
        code = read_orientation(source)
        with self.tracker.acquire(source) as img:
            size = img.size
            upright = apply_orientation(img.convert("RGB"), code)
            full = self.encode(upright, quality=self.full_quality)
            display = self.encode(self._fit_display(center_square(upright)))
        if code != 1:
            log.debug("Applied orientation %d to %dx%d upload", code, size[0], size[1])
        return Ingested(display=display, full=full, orientation=code, source_size=size)

    def render(self, base: ImageSource, flags: TransformFlags) -> bytes:
        """Re-render the edit base with the flags' combined flip and rotation."""
        return self.apply(base, Geometry.from_flags(flags))

    def to_display(self, source: ImageSource) -> bytes:
        """Re-derive a display-sized square raster from any stored raster."""
        with self.tracker.acquire(source) as img:
            return self.encode(self._fit_display(center_square(img.convert("RGB"))))

    def encode(self, img: Image.Image, quality: Optional[int] = None) -> bytes:
        buf = BytesIO()
        img.convert("RGB").save(buf, format="JPEG", quality=quality or self.quality)
        return buf.getvalue()

    # -- internals --

    def _fit_display(self, img: Image.Image) -> Image.Image:
        if max(img.size) <= self.max_dimension:
            return img
        side = self.max_dimension
        return img.resize((side, side), Image.Resampling.LANCZOS)

    def _apply_to_image(self, img: Image.Image, op: Operation) -> Image.Image:
        if isinstance(op, OrientationCorrect):
            upright = apply_orientation(img.convert("RGB"), op.code)
            return self._fit_display(center_square(upright))
        if isinstance(op, Geometry):
            return geometry_square(img, op, self.max_dimension, self.rotate_inset)
        if isinstance(op, Rotate):
            return geometry_square(img, Geometry(rotate_deg=op.degrees), self.max_dimension, self.rotate_inset)
        if isinstance(op, Rotate90):
            return geometry_square(img, Geometry(rotate_deg=90.0 * op.direction), self.max_dimension, self.rotate_inset)
        if isinstance(op, Flip):
            return geometry_square(img, Geometry(flip_x=op.flip_x, flip_y=op.flip_y), self.max_dimension, self.rotate_inset)
        if isinstance(op, (CropInteractive, FitInteractive)):
            rgb = img.convert("RGB")
            clamp = isinstance(op, CropInteractive)
            box = _region_box(op.region, rgb.width, rgb.height, clamp=clamp)
            # Pillow fills the part of a box outside the image with black
            return self._fit_display(rgb.crop(box))
        raise TypeError(f"unsupported operation: {op!r}")
