"""Photo session: one open subject, its pending edit, history and busy gate."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Union

from portraitkit.config import PhotoSettings
from portraitkit.events import Command, Event, EventBus
from portraitkit.history import EditHistory, SnapshotManager
from portraitkit.imaging.cache import build_cache_key
from portraitkit.imaging.classifier import ChangeClassifier
from portraitkit.imaging.editor import CropInteractive, FitInteractive, TransformEngine, is_quarter_turn
from portraitkit.imaging.hashing import Fingerprinter
from portraitkit.imaging.resources import InvalidImageError, ResourceTracker
from portraitkit.io.fetch import FetchError, Source, fetch_source
from portraitkit.io.records import RecordManager
from portraitkit.io.store import (
    BinaryStore,
    StoreError,
    crop_base_key,
    display_key,
    full_key,
    legacy_original_key,
    original_key,
)
from portraitkit.models import (
    Classification,
    CommandResult,
    CommandStatus,
    HistorySnapshot,
    Region,
    SessionState,
    Subject,
    TransformFlags,
)
from portraitkit.scope import CancelScope, OperationCancelled

log = logging.getLogger(__name__)

FLIP_AXES = {"x": (True, False), "horizontal": (True, False), "y": (False, True), "vertical": (False, True)}


def _noop(message: str) -> CommandResult:
    return CommandResult(CommandStatus.NOOP, message=message)


class PhotoSession:
    """Owns the editing state of the currently open subject.

    Every mutating command goes through a single-flight busy gate. A second
    command issued while one is in flight is rejected with BUSY, not queued.
    Opening another subject cancels the previous subject's scope so any work
    still bound to it finishes as a silent no-op.
    """

    def __init__(
        self,
        store: BinaryStore,
        records: Optional[RecordManager] = None,
        settings: Optional[PhotoSettings] = None,
        events: Optional[EventBus] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.settings = settings or PhotoSettings()
        self.store = store
        self.records = records or RecordManager()
        self.events = events or EventBus()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self.settings.workers), thread_name_prefix="portraitkit"
        )

        self.tracker = ResourceTracker("session")
        self.engine = TransformEngine.from_settings(self.settings, self.tracker)
        self.fingerprinter = Fingerprinter.from_settings(self.settings, self.tracker)
        self.classifier = ChangeClassifier(self.fingerprinter, self.executor)
        self.snapshots = SnapshotManager(self.store, self.records, self.engine, self.executor)
        self.history = EditHistory(self.settings.history_limit)

        self._state_lock = threading.RLock()
        self._gate_lock = threading.Lock()
        self._gate_owner: Optional[CancelScope] = None

        self._subject: Optional[Subject] = None
        self._scope: Optional[CancelScope] = None
        self._committed: Optional[bytes] = None
        self._pending: Optional[bytes] = None
        self._base: Optional[bytes] = None
        self._flags = TransformFlags()
        self._ingest_full: Optional[bytes] = None
        self._previous: Optional[tuple] = None  # (raster, TransformFlags) before the last commit

        self._commands = {
            Command.OPEN: self.open_subject,
            Command.CLOSE: self.close,
            Command.PROPOSE_EDIT: self.propose_edit,
            Command.ROTATE_90: self.rotate90,
            Command.ROTATE_FREE: self.rotate_free,
            Command.FLIP: self.flip,
            Command.CROP_REGION: self.crop_region,
            Command.FIT_REGION: self.fit_region,
            Command.UNDO: self.undo,
            Command.REDO: self.redo,
            Command.RESET: self.reset,
            Command.COMMIT: self.commit,
            Command.REMOVE: self.remove,
            Command.RESTORE_ORIGINAL: self.restore_original,
            Command.RESTORE_CROP_BASELINE: self.restore_crop_baseline,
            Command.REVERT_LAST_COMMIT: self.revert_last_commit,
        }

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def subject(self) -> Optional[Subject]:
        return self._subject

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            if self._subject is None:
                return SessionState.IDLE
            return SessionState.EDITING if self._pending is not None else SessionState.OPEN

    @property
    def busy(self) -> bool:
        with self._gate_lock:
            return self._gate_owner is not None

    @property
    def pending(self) -> Optional[bytes]:
        return self._pending

    @property
    def committed(self) -> Optional[bytes]:
        return self._committed

    @property
    def flags(self) -> TransformFlags:
        with self._state_lock:
            return self._flags.copy()

    @property
    def displayed(self) -> Optional[bytes]:
        """What the render collaborator should paint: the pending edit, else the committed raster."""
        with self._state_lock:
            return self._pending if self._pending is not None else self._committed

    def display_ref(self) -> Optional[str]:
        """Cache-busting reference to the committed asset."""
        subject = self._subject
        if subject is None:
            return None
        record = self.records.get_record(subject.subject_id)
        return build_cache_key(subject.subject_id, record.photo_version)

    # ------------------------------------------------------------------
    # Busy gate
    # ------------------------------------------------------------------

    def _acquire_gate(self, scope: CancelScope) -> bool:
        with self._gate_lock:
            if self._gate_owner is not None:
                return False
            self._gate_owner = scope
        self.events.emit(Event.BUSY_CHANGED, scope.label, True)
        return True

    def _take_gate(self, scope: CancelScope):
        """Unconditional acquire used when a subject switch pre-empts in-flight work."""
        with self._gate_lock:
            self._gate_owner = scope
        self.events.emit(Event.BUSY_CHANGED, scope.label, True)

    def _release_gate(self, scope: CancelScope):
        with self._gate_lock:
            # A cancelled operation must not release the gate of the next subject
            if self._gate_owner is not scope:
                return
            self._gate_owner = None
        self.events.emit(Event.BUSY_CHANGED, scope.label, False)

    def _run(self, name: str, fn: Callable, *args) -> CommandResult:
        with self._state_lock:
            scope, subject = self._scope, self._subject
        if scope is None or subject is None:
            return _noop("no subject open")
        if not self._acquire_gate(scope):
            log.debug("%s rejected: session busy", name)
            return CommandResult(CommandStatus.BUSY, message="busy, try again")
        try:
            scope.check()
            return fn(scope, subject, *args)
        except OperationCancelled:
            log.debug("%s cancelled for %s", name, subject.subject_id)
            return CommandResult(CommandStatus.CANCELLED)
        except StoreError as e:
            log.warning(f"{name} failed for {subject.subject_id}: {e}")
            return CommandResult(CommandStatus.FAILED, reason=e.reason, message=e.user_message)
        except (InvalidImageError, FetchError) as e:
            log.warning(f"{name} failed for {subject.subject_id}: {e}")
            return CommandResult(CommandStatus.FAILED, message=str(e))
        except Exception:
            if scope.cancelled:
                # Handles of a superseded subject may be released under us
                log.debug("%s aborted after cancellation", name, exc_info=True)
                return CommandResult(CommandStatus.CANCELLED)
            raise
        finally:
            self._release_gate(scope)

    # ------------------------------------------------------------------
    # Internal state helpers (call with _state_lock held)
    # ------------------------------------------------------------------

    def _edit_base(self) -> Optional[bytes]:
        return self._base if self._base is not None else self._committed

    def _snapshot(self) -> HistorySnapshot:
        return HistorySnapshot(pending=self._pending, flags=self._flags.copy(), base=self._base)

    def _record_flags(self, subject: Subject) -> TransformFlags:
        return self.records.get_record(subject.subject_id).transform_flags()

    def _reseed(self, committed: Optional[bytes], flags: TransformFlags):
        self._committed = committed
        self._pending = None
        self._base = None
        self._flags = flags
        self._ingest_full = None
        self.history.clear()
        self.history.push(self._snapshot())

    def _notify(self, subject: Subject, pending: bool = False, committed: bool = False):
        if pending:
            self.events.emit(Event.PENDING_CHANGED, subject.subject_id, self._pending is not None)
        if committed:
            self.events.emit(Event.COMMITTED_CHANGED, subject.subject_id, self.display_ref())

    # ------------------------------------------------------------------
    # Subject lifecycle
    # ------------------------------------------------------------------

    def open_subject(self, subject: Union[Subject, str]) -> CommandResult:
        """Open a subject, aborting whatever was in flight for the previous one."""
        if isinstance(subject, str):
            subject = Subject(subject)
        scope = CancelScope(subject.subject_id)
        with self._state_lock:
            if self._scope is not None:
                self._scope.cancel()
            self._scope = scope
            self._subject = subject
            self._pending = None
            self._base = None
            self._committed = None
            self._flags = TransformFlags()
            self._ingest_full = None
            self._previous = None
            self.history.clear()
        self._take_gate(scope)
        try:
            subject = self._load_subject(scope, subject)
        except OperationCancelled:
            return CommandResult(CommandStatus.CANCELLED)
        finally:
            self._release_gate(scope)
        log.info(f"Opened subject {subject.subject_id}")
        self.events.emit(Event.SUBJECT_CHANGED, subject.subject_id, subject.subject_id)
        self._notify(subject, pending=True, committed=True)
        return CommandResult(CommandStatus.APPLIED)

    def _load_subject(self, scope: CancelScope, subject: Subject) -> Subject:
        sid = subject.subject_id
        record = self.records.get_record(sid)
        if subject.family_key or subject.path:
            if (record.family_key, record.path) != (subject.family_key, subject.path):
                self.records.update(sid, family_key=subject.family_key, path=subject.path)
        elif record.family_key or record.path:
            subject = Subject(sid, record.family_key, record.path)

        committed = self.store.get(display_key(sid))
        if committed is None and record.legacy_ref:
            committed = self._migrate_legacy(sid, record.legacy_ref)

        with self._state_lock:
            scope.check()
            self._subject = subject
            self._reseed(committed, record.transform_flags())
        return subject

    def _migrate_legacy(self, subject_id: str, legacy_ref: str) -> Optional[bytes]:
        data = self.store.get(display_key(legacy_ref))
        if data is None:
            log.warning(f"Legacy raster {legacy_ref!r} for {subject_id} is missing")
            return None
        try:
            self.store.put(display_key(subject_id), data)
        except StoreError as e:
            log.warning(f"Could not migrate legacy raster {legacy_ref!r} to {subject_id}: {e}")
            return data
        self.records.update(subject_id, legacy_ref=None)
        self.records.bump_version(subject_id)
        log.info(f"Migrated legacy raster {legacy_ref!r} to {subject_id}")
        return data

    def close(self, keep_crop_baseline: bool = False) -> CommandResult:
        """Cancel in-flight work, release every handle and forget the subject."""
        with self._state_lock:
            scope, subject = self._scope, self._subject
            if scope is None:
                return _noop("no subject open")
            scope.cancel()
            self._scope = None
            self._subject = None
            self._committed = None
            self._pending = None
            self._base = None
            self._flags = TransformFlags()
            self._ingest_full = None
            self._previous = None
            self.history.clear()
        with self._gate_lock:
            self._gate_owner = None
        self.snapshots.wait_invalidations(subject.subject_id)
        if not keep_crop_baseline:
            self.snapshots.clear_crop_baseline(subject.subject_id)
        self.tracker.release_all()
        log.info(f"Closed subject {subject.subject_id}")
        self.events.emit(Event.SUBJECT_CHANGED, subject.subject_id, None)
        return CommandResult(CommandStatus.APPLIED)

    def shutdown(self, keep_crop_baseline: bool = False):
        if self._subject is not None:
            self.close(keep_crop_baseline)
        self.tracker.release_all()
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    def dispatch(self, command: Command, *args) -> CommandResult:
        return self._commands[command](*args)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def propose_edit(self, source: Source) -> CommandResult:
        """Classify an incoming image and make it the pending edit if it is new."""
        return self._run("proposeEdit", self._propose_edit, source)

    def _propose_edit(self, scope: CancelScope, subject: Subject, source: Source) -> CommandResult:
        raw = fetch_source(
            source,
            self.store,
            self.settings.fetch_timeout,
            self.settings.chunk_size,
            scope,
            max_bytes=self.settings.max_bytes,
        )
        scope.check()
        ingested = self.engine.ingest(raw)
        scope.check()

        with self._state_lock:
            committed = self._committed
        record = self.records.get_record(subject.subject_id)
        original = self.snapshots.load_original(subject) if record.has_original else None
        kind = self.classifier.classify(ingested.display, committed, original, record.has_original, scope)

        if kind is Classification.SAME_AS_CURRENT:
            log.info(f"Proposed image for {subject.subject_id} matches the current one")
            return CommandResult(CommandStatus.UNCHANGED, kind, message="same as the current photo")
        if kind is Classification.SAME_AS_ORIGINAL:
            return CommandResult(CommandStatus.RESTORE_OFFERED, kind, message="this is the original photo")

        with self._state_lock:
            scope.check()
            self._pending = ingested.display
            self._base = ingested.display
            self._flags = TransformFlags()
            self._ingest_full = ingested.full
            self.history.push(self._snapshot())
        # The old original and crop baseline belong to the previous picture
        self.snapshots.invalidate_baselines(subject)
        self._notify(subject, pending=True)
        return CommandResult(CommandStatus.APPLIED, kind)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def rotate90(self, direction: int = 1) -> CommandResult:
        """Quarter turn: +1 clockwise, -1 counter-clockwise."""
        if direction not in (1, -1):
            raise ValueError(f"direction must be +1 or -1, got {direction!r}")
        return self.rotate_free(90.0 * direction, name="rotate90")

    def rotate_free(self, degrees: float, name: str = "rotateFree") -> CommandResult:
        """Rotate clockwise by any angle, cumulative with earlier rotations of the same base."""

        def update(flags: TransformFlags) -> TransformFlags:
            flags.rotate_deg = (flags.rotate_deg + degrees) % 360.0
            flags.rotated = True
            return flags

        return self._run(name, self._apply_geometry, update)

    def flip(self, axis: str) -> CommandResult:
        if axis not in FLIP_AXES:
            raise ValueError(f"unknown flip axis {axis!r}")
        fx, fy = FLIP_AXES[axis]

        def update(flags: TransformFlags) -> TransformFlags:
            flags.flip_x ^= fx
            flags.flip_y ^= fy
            # Mirroring what is on screen reverses the sense of the rotation already applied
            flags.rotate_deg = (-flags.rotate_deg) % 360.0
            return flags

        return self._run("flip", self._apply_geometry, update)

    def _apply_geometry(self, scope: CancelScope, subject: Subject, update) -> CommandResult:
        with self._state_lock:
            base = self._edit_base()
            flags = self._flags.copy()
            committed = self._committed
        if base is None:
            return _noop("no photo to transform")
        self.snapshots.ensure_original_once(subject, base)
        new_flags = update(flags)
        scope.check()
        result = self.engine.render(base, new_flags)
        # Free-angle results always stay pending so small steps accumulate
        check_same = is_quarter_turn(new_flags.rotate_deg)
        return self._offer(scope, subject, result, new_flags, committed, base, check_same)

    def crop_region(self, region: Region) -> CommandResult:
        """Crop the displayed raster to a square region clamped inside it."""
        return self._run("cropRegion", self._apply_region, region, False)

    def fit_region(self, region: Region) -> CommandResult:
        """Reposition: the square region may extend past the image, padded with black."""
        return self._run("fitRegion", self._apply_region, region, True)

    def _apply_region(self, scope: CancelScope, subject: Subject, region: Region, fit: bool) -> CommandResult:
        with self._state_lock:
            shown = self._pending if self._pending is not None else self._committed
            base = self._edit_base()
            flags = self._flags.copy()
            committed = self._committed
        if shown is None:
            return _noop("no photo to crop")
        op = FitInteractive(region) if fit else CropInteractive(region)
        # A rejected region must leave the stored baselines untouched
        result = self.engine.apply(shown, op)
        scope.check()
        self.snapshots.ensure_original_once(subject, base)
        self.snapshots.save_crop_baseline(subject.subject_id, shown)
        # The cropped raster becomes the new edit base; geometry is baked in
        new_flags = flags.without_geometry()
        if fit:
            new_flags.fitted = True
        else:
            new_flags.cropped = True
        return self._offer(scope, subject, result, new_flags, committed, result)

    def _offer(self, scope, subject, result, flags, committed, base, check_same=True) -> CommandResult:
        """Make `result` the pending edit unless it is the committed picture again."""
        unchanged = check_same and self.classifier.same_image(result, committed)
        with self._state_lock:
            scope.check()
            if unchanged:
                self._pending = None
                self._base = None
                self._flags = self._record_flags(subject)
            else:
                self._pending = result
                self._base = base
                self._flags = flags
            self.history.push(self._snapshot())
        self._notify(subject, pending=True)
        if unchanged:
            log.debug("Transform result matches committed photo for %s; pending edit dropped", subject.subject_id)
            return CommandResult(CommandStatus.UNCHANGED, Classification.SAME_AS_CURRENT)
        return CommandResult(CommandStatus.APPLIED)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> CommandResult:
        return self._run("undo", self._navigate, -1)

    def redo(self) -> CommandResult:
        return self._run("redo", self._navigate, 1)

    def goto(self, index: int) -> CommandResult:
        return self._run("goto", self._navigate, None, index)

    def _navigate(self, scope: CancelScope, subject: Subject, step: Optional[int], index: int = 0) -> CommandResult:
        with self._state_lock:
            scope.check()
            if step is None:
                snap = self.history.goto(index)
            elif step < 0:
                snap = self.history.undo()
            else:
                snap = self.history.redo()
            if snap is None:
                return _noop("nothing to navigate to")
            self._pending = snap.pending
            self._base = snap.base
            self._flags = snap.flags.copy()
        self._notify(subject, pending=True)
        return CommandResult(CommandStatus.APPLIED)

    def reset(self) -> CommandResult:
        """Discard the pending edit and show the committed photo again."""
        return self._run("reset", self._reset)

    def _reset(self, scope: CancelScope, subject: Subject) -> CommandResult:
        with self._state_lock:
            scope.check()
            if self._pending is None:
                return _noop("no pending edit")
            self._pending = None
            self._base = None
            self._ingest_full = None
            self._flags = self._record_flags(subject)
            self.history.push(self._snapshot())
        self._notify(subject, pending=True)
        return CommandResult(CommandStatus.APPLIED)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def commit(self) -> CommandResult:
        """Write the pending edit as the committed photo. History is kept."""
        return self._run("commit", self._commit)

    def _commit(self, scope: CancelScope, subject: Subject) -> CommandResult:
        sid = subject.subject_id
        with self._state_lock:
            pending = self._pending
            flags = self._flags.copy()
            base = self._edit_base()
            full = self._ingest_full
            committed = self._committed
        if pending is None:
            return _noop("no pending edit")

        self.snapshots.ensure_original_once(subject, base)
        scope.check()
        record = self.records.get_record(sid)
        previous_flags = record.transform_flags()
        # A refused put leaves the pending edit in place for a retry
        self.store.put(display_key(sid), pending)
        if full is not None:
            try:
                self.store.put(full_key(sid), full)
            except StoreError as e:
                log.warning(f"Could not store full-resolution backup for {sid}: {e}")
        self.records.update(sid, rotated=flags.rotated, cropped=flags.cropped, fitted=flags.fitted)
        self.records.bump_version(sid)

        with self._state_lock:
            scope.check()
            self._previous = (committed, previous_flags) if committed is not None else None
            self._committed = pending
            self._pending = None
            self._ingest_full = None
        log.info(f"Committed photo for {sid}")
        self._notify(subject, pending=True, committed=True)
        return CommandResult(CommandStatus.APPLIED)

    def revert_last_commit(self) -> CommandResult:
        """Put back the photo the last commit overwrote. One level only."""
        return self._run("revertLastCommit", self._revert_last_commit)

    def _revert_last_commit(self, scope: CancelScope, subject: Subject) -> CommandResult:
        with self._state_lock:
            previous = self._previous
        if previous is None:
            return _noop("no commit to revert")
        raster, flags = previous
        sid = subject.subject_id
        self.store.put(display_key(sid), raster)
        self.records.update(sid, rotated=flags.rotated, cropped=flags.cropped, fitted=flags.fitted)
        self.records.bump_version(sid)
        with self._state_lock:
            scope.check()
            self._previous = None
            self._reseed(raster, flags)
        log.info(f"Reverted last commit for {sid}")
        self._notify(subject, pending=True, committed=True)
        return CommandResult(CommandStatus.APPLIED)

    def remove(self) -> CommandResult:
        """Discard the pending edit if there is one, otherwise delete the subject's photo."""
        return self._run("remove", self._remove)

    def _remove(self, scope: CancelScope, subject: Subject) -> CommandResult:
        with self._state_lock:
            has_pending = self._pending is not None
        if has_pending:
            return self._reset(scope, subject)

        sid = subject.subject_id
        self.snapshots.wait_invalidations(sid)
        keys = [display_key(sid), full_key(sid), original_key(sid), crop_base_key(sid)]
        legacy = legacy_original_key(subject.family_key, subject.path)
        if legacy:
            keys.append(legacy)
        for key in keys:
            self.store.clear(key)
        record = self.records.get_record(sid)
        record.clear_flags()
        self.records.save()
        self.records.bump_version(sid)

        with self._state_lock:
            scope.check()
            self._previous = None
            self._reseed(None, TransformFlags())
        log.info(f"Removed photo for {sid}")
        self._notify(subject, pending=True, committed=True)
        return CommandResult(CommandStatus.APPLIED)

    def restore_original(self) -> CommandResult:
        return self._run("restoreOriginal", self._restore, self.snapshots.restore_original)

    def restore_crop_baseline(self) -> CommandResult:
        return self._run("restoreCropBaseline", self._restore, self.snapshots.restore_crop_baseline)

    def _restore(self, scope: CancelScope, subject: Subject, restore) -> CommandResult:
        scope.check()
        with self._state_lock:
            committed = self._committed
        previous_flags = self._record_flags(subject)
        display = restore(subject)
        if display is None:
            return _noop("nothing to restore")
        with self._state_lock:
            scope.check()
            if committed is not None:
                self._previous = (committed, previous_flags)
            self._reseed(display, self._record_flags(subject))
        self._notify(subject, pending=True, committed=True)
        return CommandResult(CommandStatus.APPLIED)

    def can_restore_original(self) -> bool:
        """True when an original exists and differs visibly from the committed photo."""
        subject = self._subject
        if subject is None:
            return False
        original = self.snapshots.load_original(subject)
        if original is None:
            return False
        return not self.classifier.same_image(original, self._committed)
