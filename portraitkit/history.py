"""Undo/redo history and the per-subject original / crop-baseline snapshots."""

import logging
import threading
from concurrent.futures import Executor, Future, wait
from typing import Dict, List, Optional

from portraitkit.imaging.editor import TransformEngine
from portraitkit.io.records import RecordManager
from portraitkit.io.store import (
    BinaryStore,
    StoreError,
    crop_base_key,
    display_key,
    legacy_original_key,
    original_key,
)
from portraitkit.models import HistorySnapshot, Subject

log = logging.getLogger(__name__)


class EditHistory:
    """Append-ordered snapshots with a cursor; -1 <= cursor <= len - 1."""

    def __init__(self, limit: int = 0):
        self.limit = limit
        self._snapshots: List[HistorySnapshot] = []
        self._cursor = -1

    def __len__(self):
        return len(self._snapshots)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def current(self) -> Optional[HistorySnapshot]:
        if self._cursor < 0:
            return None
        return self._snapshots[self._cursor]

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._snapshots) - 1

    def push(self, snapshot: HistorySnapshot):
        # A new action discards everything after the cursor
        del self._snapshots[self._cursor + 1:]
        self._snapshots.append(snapshot)
        if self.limit and len(self._snapshots) > self.limit:
            del self._snapshots[: len(self._snapshots) - self.limit]
        self._cursor = len(self._snapshots) - 1

    def goto(self, index: int) -> Optional[HistorySnapshot]:
        """Move the cursor to `index`, clamped into range, and return that snapshot."""
        if not self._snapshots:
            return None
        self._cursor = max(0, min(len(self._snapshots) - 1, index))
        return self._snapshots[self._cursor]

    def undo(self) -> Optional[HistorySnapshot]:
        if not self.can_undo:
            return None
        return self.goto(self._cursor - 1)

    def redo(self) -> Optional[HistorySnapshot]:
        if not self.can_redo:
            return None
        return self.goto(self._cursor + 1)

    def clear(self):
        self._snapshots.clear()
        self._cursor = -1


class SnapshotManager:
    """Keeps the once-per-subject original and the latest crop baseline in the store.

    The presence of the original is mirrored into the subject record so that
    repeated calls stay idempotent without re-reading the store.
    """

    def __init__(
        self,
        store: BinaryStore,
        records: RecordManager,
        engine: TransformEngine,
        executor: Optional[Executor] = None,
    ):
        self.store = store
        self.records = records
        self.engine = engine
        self.executor = executor
        self._pending: Dict[str, List[Future]] = {}
        self._lock = threading.Lock()

    # -- original --

    def ensure_original_once(self, subject: Subject, raster: Optional[bytes]) -> bool:
        """Store `raster` as the subject's original unless one is already recorded.

        Returns True only when this call wrote the original.
        """
        if not raster:
            return False
        sid = subject.subject_id
        self.wait_invalidations(sid)
        record = self.records.get_record(sid)
        if record.has_original:
            return False
        key = original_key(sid)
        if self.store.contains(key):
            log.debug("Original for %s already stored; mirroring flag", sid)
            self.records.update(sid, has_original=True)
            return False

        try:
            self.store.put(key, raster)
        except StoreError as e:
            log.warning(f"Could not store original for {sid}: {e}")
            return False
        if self.store.get(key) != raster:
            log.warning(f"Original for {sid} did not read back intact; flag left unset")
            return False

        legacy = legacy_original_key(subject.family_key, subject.path)
        if legacy:
            try:
                self.store.put(legacy, raster)
            except StoreError as e:
                log.warning(f"Could not store legacy original {legacy}: {e}")
        self.records.update(sid, has_original=True)
        log.info(f"Preserved original for {sid}")
        return True

    def load_original(self, subject: Subject) -> Optional[bytes]:
        """The original raster, or None when the record does not flag one."""
        record = self.records.peek(subject.subject_id)
        if record is None or not record.has_original:
            return None
        data = self.store.get(original_key(subject.subject_id))
        if data is None:
            legacy = legacy_original_key(subject.family_key, subject.path)
            if legacy:
                data = self.store.get(legacy)
        return data

    def restore_original(self, subject: Subject) -> Optional[bytes]:
        """Write a display-sized copy of the original back as the committed raster."""
        data = self.load_original(subject)
        if data is None:
            return None
        display = self.engine.to_display(data)
        sid = subject.subject_id
        self.store.put(display_key(sid), display)
        self.records.update(sid, rotated=False, cropped=False, fitted=False)
        self.records.bump_version(sid)
        log.info(f"Restored original for {sid}")
        return display

    # -- crop baseline --

    def save_crop_baseline(self, subject_id: str, raster: Optional[bytes]) -> bool:
        """Overwrite the crop baseline with the pre-crop raster."""
        if not raster:
            return False
        self.wait_invalidations(subject_id)
        try:
            self.store.put(crop_base_key(subject_id), raster)
        except StoreError as e:
            log.warning(f"Could not save crop baseline for {subject_id}: {e}")
            return False
        return True

    def load_crop_baseline(self, subject_id: str) -> Optional[bytes]:
        return self.store.get(crop_base_key(subject_id))

    def restore_crop_baseline(self, subject: Subject) -> Optional[bytes]:
        """One-level crop undo: commit the baseline and drop it."""
        sid = subject.subject_id
        data = self.load_crop_baseline(sid)
        if data is None:
            return None
        display = self.engine.to_display(data)
        self.store.put(display_key(sid), display)
        self.records.update(sid, cropped=False, fitted=False)
        self.records.bump_version(sid)
        self.store.clear(crop_base_key(sid))
        log.info(f"Restored crop baseline for {sid}")
        return display

    def clear_crop_baseline(self, subject_id: str):
        self.store.clear(crop_base_key(subject_id))

    # -- invalidation --

    def _clear_baselines(self, subject: Subject):
        self.store.clear(original_key(subject.subject_id))
        legacy = legacy_original_key(subject.family_key, subject.path)
        if legacy:
            self.store.clear(legacy)
        self.store.clear(crop_base_key(subject.subject_id))
        log.debug("Cleared baselines for %s", subject.subject_id)

    def invalidate_baselines(self, subject: Subject) -> Optional[Future]:
        """Forget the original and crop baseline tied to the previous image identity.

        The record flags are cleared now; the stored artifacts are deleted on the
        executor when there is one.
        """
        self.records.update(
            subject.subject_id, has_original=False, rotated=False, cropped=False, fitted=False
        )
        if self.executor is None:
            self._clear_baselines(subject)
            return None
        future = self.executor.submit(self._clear_baselines, subject)
        with self._lock:
            pending = self._pending.setdefault(subject.subject_id, [])
            pending[:] = [f for f in pending if not f.done()]
            pending.append(future)
        return future

    def wait_invalidations(self, subject_id: str, timeout: Optional[float] = None):
        """Block until queued deletes for the subject have run."""
        with self._lock:
            futures = self._pending.pop(subject_id, [])
        if futures:
            wait(futures, timeout=timeout)
            for f in futures:
                if f.done() and f.exception() is not None:
                    log.warning(f"Baseline cleanup for {subject_id} failed: {f.exception()}")
