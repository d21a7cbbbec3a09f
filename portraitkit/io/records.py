"""Manages reading and writing the subjects.json records sidecar."""

import dataclasses
import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from portraitkit.models import SubjectRecord

log = logging.getLogger(__name__)

RECORDS_VERSION = 1


def _record_from_json(meta: dict) -> SubjectRecord:
    """Builds a SubjectRecord, dropping keys the current model does not know."""
    try:
        valid_keys = {f.name for f in dataclasses.fields(SubjectRecord)}
        return SubjectRecord(**{k: v for k, v in meta.items() if k in valid_keys})
    except TypeError as e:
        log.warning(f"Error parsing subject record: {e}")
        return SubjectRecord()


class RecordManager:
    """Per-subject records, persisted as JSON when a path is given."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self.records: Dict[str, SubjectRecord] = self.load()

    def load(self) -> Dict[str, SubjectRecord]:
        """Loads records from disk if the file exists, otherwise starts empty."""
        if self.path is None:
            return {}
        if not self.path.exists():
            log.info(f"No records file found at {self.path}. Creating new one.")
            return {}
        try:
            with self.path.open("r") as f:
                data = json.load(f)
            if data.get("version") != RECORDS_VERSION:
                log.warning("Unknown records format detected. Starting fresh.")
                return {}
            return {sid: _record_from_json(meta) for sid, meta in data.get("subjects", {}).items()}
        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            log.error(f"Failed to load or parse records file {self.path}: {e}")
            return {}

    def save(self):
        """Saves the records to disk atomically."""
        if self.path is None:
            return
        temp_path = self.path.with_suffix(".tmp")
        with self._lock:
            serializable = {
                "version": RECORDS_VERSION,
                "subjects": {sid: dataclasses.asdict(rec) for sid, rec in self.records.items()},
            }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("w") as f:
                json.dump(serializable, f, indent=2)
            # Atomic rename
            temp_path.replace(self.path)
            log.debug(f"Saved records file to {self.path}")
        except (IOError, TypeError) as e:
            log.error(f"Failed to save records file {self.path}: {e}")

    def get_record(self, subject_id: str) -> SubjectRecord:
        """Gets the record for a subject, creating it if it doesn't exist."""
        with self._lock:
            return self.records.setdefault(subject_id, SubjectRecord())

    def peek(self, subject_id: str) -> Optional[SubjectRecord]:
        with self._lock:
            return self.records.get(subject_id)

    def update(self, subject_id: str, **changes) -> SubjectRecord:
        """Applies field changes to a subject's record and saves."""
        with self._lock:
            record = self.get_record(subject_id)
            for name, value in changes.items():
                if not hasattr(record, name):
                    raise AttributeError(f"SubjectRecord has no field {name!r}")
                setattr(record, name, value)
        self.save()
        return record

    def bump_version(self, subject_id: str) -> int:
        with self._lock:
            record = self.get_record(subject_id)
            record.photo_version += 1
            version = record.photo_version
        self.save()
        return version
