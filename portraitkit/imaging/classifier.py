"""Decides whether a candidate edit is the current image, the original, or new."""

import logging
from concurrent.futures import Executor
from typing import Optional

from portraitkit.imaging.hashing import Fingerprinter
from portraitkit.models import Classification
from portraitkit.scope import CancelScope

log = logging.getLogger(__name__)


class ChangeClassifier:
    def __init__(self, fingerprinter: Fingerprinter, executor: Optional[Executor] = None):
        self.fingerprinter = fingerprinter
        self.executor = executor

    def _fingerprints(self, *rasters):
        # Fan out, then join on every result before any comparison is made
        if self.executor is None:
            return [self.fingerprinter(r) if r else "" for r in rasters]
        futures = [self.executor.submit(self.fingerprinter, r) if r else None for r in rasters]
        return [f.result() if f is not None else "" for f in futures]

    def classify(
        self,
        candidate: bytes,
        current: Optional[bytes],
        original: Optional[bytes] = None,
        has_original: bool = False,
        scope: Optional[CancelScope] = None,
    ) -> Classification:
        """Compare the candidate against current (always) and original (only when flagged present).

        Unreadable rasters have an empty fingerprint, which never matches, so
        the candidate falls through to DIFFERENT.
        """
        use_original = has_original and original is not None
        cand_fp, cur_fp, orig_fp = self._fingerprints(candidate, current, original if use_original else None)
        if scope is not None:
            scope.check()

        if self.fingerprinter.same(cand_fp, cur_fp):
            result = Classification.SAME_AS_CURRENT
        elif use_original and self.fingerprinter.same(cand_fp, orig_fp):
            result = Classification.SAME_AS_ORIGINAL
        else:
            result = Classification.DIFFERENT
        log.debug(
            "Classified candidate: %s (d_current=%s, d_original=%s)",
            result.value,
            self.fingerprinter.distance(cand_fp, cur_fp),
            self.fingerprinter.distance(cand_fp, orig_fp) if use_original else "-",
        )
        return result

    def same_image(self, a: Optional[bytes], b: Optional[bytes]) -> bool:
        """True when both rasters are readable near duplicates of each other."""
        if not a or not b:
            return False
        fa, fb = self._fingerprints(a, b)
        return self.fingerprinter.same(fa, fb)
