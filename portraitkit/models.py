"""Core data types and enumerations for portraitkit."""

import dataclasses
import enum
import time
from typing import Optional


@dataclasses.dataclass(frozen=True)
class Subject:
    """The person whose portrait is being edited."""
    subject_id: str
    family_key: Optional[str] = None
    path: Optional[str] = None


@dataclasses.dataclass
class TransformFlags:
    """Which transforms the pending/committed image carries.

    `rotated`, `cropped` and `fitted` are persisted into the subject record on
    commit. `flip_x`, `flip_y` and `rotate_deg` describe the geometry applied
    on top of the session's edit base and are zeroed whenever the base changes.
    """
    rotated: bool = False
    cropped: bool = False
    fitted: bool = False
    flip_x: bool = False
    flip_y: bool = False
    rotate_deg: float = 0.0

    def copy(self) -> "TransformFlags":
        return dataclasses.replace(self)

    def without_geometry(self) -> "TransformFlags":
        return dataclasses.replace(self, flip_x=False, flip_y=False, rotate_deg=0.0)

    @property
    def has_geometry(self) -> bool:
        return self.flip_x or self.flip_y or (self.rotate_deg % 360.0) != 0.0


@dataclasses.dataclass
class HistorySnapshot:
    """One entry of the undo/redo stack."""
    pending: Optional[bytes]
    flags: TransformFlags
    timestamp: float = dataclasses.field(default_factory=time.time)
    # Edit base the flags' geometry applies to; None means the committed raster.
    base: Optional[bytes] = None


@dataclasses.dataclass
class SubjectRecord:
    """Per-subject photo metadata mirrored into the records sidecar."""
    has_original: bool = False
    rotated: bool = False
    cropped: bool = False
    fitted: bool = False
    photo_version: int = 0
    family_key: Optional[str] = None
    path: Optional[str] = None
    # Older subject id whose raster has not been migrated yet.
    legacy_ref: Optional[str] = None

    def clear_flags(self):
        self.has_original = False
        self.rotated = False
        self.cropped = False
        self.fitted = False

    def transform_flags(self) -> TransformFlags:
        return TransformFlags(rotated=self.rotated, cropped=self.cropped, fitted=self.fitted)


@dataclasses.dataclass(frozen=True)
class Region:
    """A square region in source pixel coordinates."""
    left: float
    top: float
    size: float


class Classification(enum.Enum):
    SAME_AS_CURRENT = "same-current"
    SAME_AS_ORIGINAL = "same-original"
    DIFFERENT = "different"


class SessionState(enum.Enum):
    IDLE = "idle"
    OPEN = "open"
    EDITING = "editing"


class CommandStatus(enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    RESTORE_OFFERED = "restore-offered"
    BUSY = "busy"
    CANCELLED = "cancelled"
    FAILED = "failed"
    NOOP = "noop"


@dataclasses.dataclass
class CommandResult:
    """Outcome of a session command."""
    status: CommandStatus
    classification: Optional[Classification] = None
    reason: Optional[object] = None  # io.store.StoreFailure
    message: str = ""
