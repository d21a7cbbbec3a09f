"""Cancellation scopes bound to an open subject."""

import itertools
import logging
import threading

log = logging.getLogger(__name__)

_generation = itertools.count(1)


class OperationCancelled(Exception):
    """Raised inside an operation whose scope was cancelled."""


class CancelScope:
    """One per opened subject. Cancelling it turns every bound operation into a no-op."""

    def __init__(self, label: str = ""):
        self.label = label
        self.generation = next(_generation)
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        if not self._event.is_set():
            log.debug("Cancelling scope %s (gen %d)", self.label, self.generation)
        self._event.set()

    def check(self):
        """Raise OperationCancelled if the scope has been cancelled."""
        if self._event.is_set():
            raise OperationCancelled(f"scope {self.label!r} gen {self.generation} cancelled")

    def __repr__(self):
        state = "cancelled" if self.cancelled else "live"
        return f"CancelScope({self.label!r}, gen={self.generation}, {state})"
