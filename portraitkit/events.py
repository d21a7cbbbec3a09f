"""Command and event enums plus the handler registry the session notifies through."""

import dataclasses
import enum
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)


class Event(enum.Enum):
    BUSY_CHANGED = "busy-changed"
    PENDING_CHANGED = "pending-changed"
    COMMITTED_CHANGED = "committed-changed"
    SUBJECT_CHANGED = "subject-changed"


class Command(enum.Enum):
    OPEN = "open"
    CLOSE = "close"
    PROPOSE_EDIT = "proposeEdit"
    ROTATE_90 = "rotate90"
    ROTATE_FREE = "rotateFree"
    FLIP = "flip"
    CROP_REGION = "cropRegion"
    FIT_REGION = "fitRegion"
    UNDO = "undo"
    REDO = "redo"
    RESET = "reset"
    COMMIT = "commit"
    REMOVE = "remove"
    RESTORE_ORIGINAL = "restoreOriginal"
    RESTORE_CROP_BASELINE = "restoreCropBaseline"
    REVERT_LAST_COMMIT = "revertLastCommit"


@dataclasses.dataclass(frozen=True)
class Notification:
    event: Event
    subject_id: str = ""
    value: Any = None


Handler = Callable[[Notification], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[Event, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: Event, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers[event].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers[event]:
                    self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: Event, subject_id: str = "", value: Any = None):
        with self._lock:
            handlers = list(self._handlers[event])
        note = Notification(event, subject_id, value)
        for handler in handlers:
            try:
                handler(note)
            except Exception:
                log.exception("Handler %r failed for %s", handler, event.value)
