"""Tests for the RecordManager."""

import json
from pathlib import Path

import pytest

from portraitkit.io.records import RecordManager
from portraitkit.models import SubjectRecord


@pytest.fixture
def records_file(tmp_path: Path):
    """Returns a path, optionally pre-populated with JSON content."""
    def _create(content=None, raw: str = None):
        path = tmp_path / "subjects.json"
        if content is not None:
            path.write_text(json.dumps(content))
        elif raw is not None:
            path.write_text(raw)
        return path
    return _create


def test_load_non_existent(records_file):
    rm = RecordManager(records_file())
    assert rm.records == {}


def test_load_existing_filters_unknown_keys(records_file):
    content = {
        "version": 1,
        "subjects": {
            "p1": {"has_original": True, "rotated": True, "photo_version": 3, "mood": "happy"},
            "p2": {"legacy_ref": "old-7"},
        },
    }
    rm = RecordManager(records_file(content))
    assert rm.records["p1"].has_original
    assert rm.records["p1"].rotated
    assert rm.records["p1"].photo_version == 3
    assert not hasattr(rm.records["p1"], "mood")
    assert rm.records["p2"].legacy_ref == "old-7"


def test_wrong_version_starts_fresh(records_file):
    rm = RecordManager(records_file({"version": 99, "subjects": {"p1": {}}}))
    assert rm.records == {}


def test_corrupt_file_starts_fresh(records_file):
    rm = RecordManager(records_file(raw="{not json"))
    assert rm.records == {}


def test_save_roundtrip(records_file):
    path = records_file()
    rm = RecordManager(path)
    rm.update("p1", has_original=True, family_key="fam", path="0/1")
    assert rm.bump_version("p1") == 1
    assert path.exists()
    assert not path.with_suffix(".tmp").exists()

    data = json.loads(path.read_text())
    assert data["version"] == 1
    assert data["subjects"]["p1"]["has_original"] is True

    again = RecordManager(path)
    assert again.get_record("p1") == SubjectRecord(has_original=True, photo_version=1, family_key="fam", path="0/1")


def test_get_record_creates_default():
    rm = RecordManager()
    rec = rm.get_record("new")
    assert rec == SubjectRecord()
    assert rm.get_record("new") is rec
    assert rm.peek("missing") is None


def test_update_unknown_field_raises():
    rm = RecordManager()
    with pytest.raises(AttributeError):
        rm.update("p1", colour="blue")


def test_in_memory_manager_writes_nothing(tmp_path):
    rm = RecordManager(None)
    rm.update("p1", rotated=True)
    assert list(tmp_path.iterdir()) == []
