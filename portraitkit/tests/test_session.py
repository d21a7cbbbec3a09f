"""Tests for PhotoSession commands and its state machine."""

import io
import threading
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from portraitkit.config import PhotoSettings
from portraitkit.events import Command, Event
from portraitkit.io.store import (
    MemoryStore,
    StoreFailure,
    crop_base_key,
    display_key,
    full_key,
    original_key,
)
from portraitkit.io.records import RecordManager
from portraitkit.models import Classification, CommandStatus, Region, SessionState, Subject
from portraitkit.session import PhotoSession

from conftest import encode, quadrant_image


def size_of(data: bytes):
    return Image.open(io.BytesIO(data)).size


@pytest.fixture
def opened(session):
    session.open_subject(Subject("p1", "fam", "0/1"))
    return session


@pytest.fixture
def committed(opened, quadrant_png):
    """Session with the quadrant picture committed for p1."""
    assert opened.propose_edit(quadrant_png).status is CommandStatus.APPLIED
    assert opened.commit().status is CommandStatus.APPLIED
    return opened


def test_commands_without_subject_are_noops(session):
    assert session.state is SessionState.IDLE
    assert session.rotate90().status is CommandStatus.NOOP
    assert session.commit().status is CommandStatus.NOOP
    assert session.close().status is CommandStatus.NOOP


def test_open_seeds_history(opened):
    assert opened.state is SessionState.OPEN
    assert opened.committed is None
    assert len(opened.history) == 1
    assert opened.history.cursor == 0
    assert not opened.busy


def test_propose_new_picture(opened, quadrant_png):
    result = opened.propose_edit(quadrant_png)
    assert result.status is CommandStatus.APPLIED
    assert result.classification is Classification.DIFFERENT
    assert opened.state is SessionState.EDITING
    assert size_of(opened.pending) == (256, 256)
    assert len(opened.history) == 2


def test_commit_writes_display_original_and_full_backup(committed, store):
    assert committed.state is SessionState.OPEN
    assert committed.pending is None
    assert store.get(display_key("p1")) == committed.committed
    assert store.get(original_key("p1")) is not None
    assert size_of(store.get(full_key("p1"))) == (256, 256)
    record = committed.records.get_record("p1")
    assert record.has_original
    assert record.photo_version == 1
    # commit does not touch history
    assert len(committed.history) == 2


def test_same_as_current_mutates_nothing(committed, quadrant_png):
    before = (committed.committed, committed.flags, len(committed.history))
    with patch.object(committed.store, "put", wraps=committed.store.put) as put:
        result = committed.propose_edit(encode(quadrant_image(400), "JPEG"))
    assert result.status is CommandStatus.UNCHANGED
    assert result.classification is Classification.SAME_AS_CURRENT
    put.assert_not_called()
    assert (committed.committed, committed.flags, len(committed.history)) == before
    assert committed.state is SessionState.OPEN


def test_rotate90_then_back_drops_pending(committed):
    result = committed.rotate90(1)
    assert result.status is CommandStatus.APPLIED
    assert committed.state is SessionState.EDITING
    assert committed.flags.rotated and committed.flags.rotate_deg == 90.0

    result = committed.rotate90(-1)
    assert result.status is CommandStatus.UNCHANGED
    assert committed.pending is None
    assert committed.state is SessionState.OPEN
    assert not committed.flags.rotated


def test_rotate90_rejects_bad_direction(committed):
    with pytest.raises(ValueError):
        committed.rotate90(0)
    assert not committed.busy


def test_repeated_rotations_render_from_one_base(committed):
    with patch.object(committed.engine, "render", wraps=committed.engine.render) as render:
        committed.rotate90(1)
        committed.rotate90(1)
        committed.rotate90(1)
    bases = {c.args[0] for c in render.call_args_list}
    assert len(bases) == 1
    assert committed.flags.rotate_deg == 270.0


def test_flip_after_rotation_mirrors_what_is_shown(committed):
    committed.rotate_free(30)
    committed.flip("x")
    flags = committed.flags
    assert flags.flip_x and not flags.flip_y
    assert flags.rotate_deg == pytest.approx(330.0)


def test_flip_unknown_axis(committed):
    with pytest.raises(ValueError):
        committed.flip("z")


def test_free_rotation_commits_square(committed):
    assert committed.rotate_free(45).status is CommandStatus.APPLIED
    assert committed.commit().status is CommandStatus.APPLIED
    w, h = size_of(committed.committed)
    assert w == h <= 512
    assert committed.records.get_record("p1").rotated


def test_small_free_rotations_accumulate(committed):
    assert committed.rotate_free(3).status is CommandStatus.APPLIED
    assert committed.pending is not None
    assert committed.rotate_free(3).status is CommandStatus.APPLIED
    assert committed.flags.rotate_deg == pytest.approx(6.0)
    assert committed.state is SessionState.EDITING


def test_free_rotation_back_to_upright_drops_pending(committed):
    committed.rotate_free(3)
    assert committed.rotate_free(-3).status is CommandStatus.UNCHANGED
    assert committed.pending is None
    assert committed.flags.rotate_deg == 0.0


def test_rejected_crop_region_keeps_baseline(committed, store):
    assert committed.crop_region(Region(0, 0, 128)).status is CommandStatus.APPLIED
    committed.commit()
    baseline = store.get(crop_base_key("p1"))
    assert baseline is not None

    with pytest.raises(ValueError):
        committed.crop_region(Region(0, 0, 0))
    with pytest.raises(ValueError):
        committed.fit_region(Region(10, 10, -5))
    assert store.get(crop_base_key("p1")) == baseline
    assert not committed.busy


def test_different_picture_clears_record_flags(committed, other_png):
    committed.rotate90(1)
    committed.commit()
    assert committed.records.get_record("p1").rotated

    assert committed.propose_edit(other_png).classification is Classification.DIFFERENT
    assert not committed.records.get_record("p1").rotated
    assert committed.reset().status is CommandStatus.APPLIED
    assert not committed.flags.rotated


def test_download_over_size_limit_fails_while_streaming():
    consumed = []

    def chunks():
        for i in range(3):
            consumed.append(i)
            yield b"x" * 600

    response = MagicMock()
    response.iter_content.return_value = chunks()
    settings = PhotoSettings(max_bytes=1000)
    with patch("portraitkit.io.fetch.requests.get") as mock_get:
        mock_get.return_value.__enter__.return_value = response
        with PhotoSession(MemoryStore(), RecordManager(), settings) as session:
            session.open_subject("p1")
            result = session.propose_edit("https://example.org/huge.jpg")
            assert result.status is CommandStatus.FAILED
            assert result.reason is StoreFailure.TOO_LARGE
            assert session.pending is None
    assert consumed == [0, 1]


def test_crop_saves_baseline_and_can_be_restored(committed, store):
    shown = committed.committed
    result = committed.crop_region(Region(0, 0, 128))
    assert result.status is CommandStatus.APPLIED
    assert committed.flags.cropped
    assert store.get(crop_base_key("p1")) == shown
    assert size_of(committed.pending) == (128, 128)
    committed.commit()
    assert committed.records.get_record("p1").cropped

    assert committed.restore_crop_baseline().status is CommandStatus.APPLIED
    assert size_of(committed.committed) == (256, 256)
    assert not committed.records.get_record("p1").cropped
    assert committed.restore_crop_baseline().status is CommandStatus.NOOP


def test_fit_region_pads(committed):
    assert committed.fit_region(Region(-64, -64, 384)).status is CommandStatus.APPLIED
    assert committed.flags.fitted
    img = Image.open(io.BytesIO(committed.pending)).convert("RGB")
    assert img.size == (384, 384)
    # padding around a white corner region is black
    assert max(img.getpixel((383, 383))) < 30


def test_undo_redo(opened, quadrant_png):
    opened.propose_edit(quadrant_png)
    assert opened.undo().status is CommandStatus.APPLIED
    assert opened.pending is None
    assert opened.state is SessionState.OPEN
    assert opened.undo().status is CommandStatus.NOOP
    assert opened.redo().status is CommandStatus.APPLIED
    assert opened.state is SessionState.EDITING
    assert opened.redo().status is CommandStatus.NOOP


def test_reset_restores_committed(committed):
    committed.rotate90(1)
    assert committed.reset().status is CommandStatus.APPLIED
    assert committed.pending is None
    assert not committed.flags.has_geometry
    assert committed.reset().status is CommandStatus.NOOP


def test_failed_commit_keeps_pending(quadrant_png):
    store = MemoryStore(quota=50)
    with PhotoSession(store, RecordManager()) as session:
        session.open_subject("p1")
        session.propose_edit(quadrant_png)
        pending = session.pending
        result = session.commit()
        assert result.status is CommandStatus.FAILED
        assert result.reason is StoreFailure.QUOTA_EXCEEDED
        assert "full" in result.message
        assert session.pending == pending
        assert session.committed is None
        assert not session.busy


def test_invalid_image_fails_without_state_change(opened):
    result = opened.propose_edit(b"not an image")
    assert result.status is CommandStatus.FAILED
    assert opened.state is SessionState.OPEN
    assert len(opened.history) == 1


def test_propose_from_path_and_store_ref(opened, tmp_path, quadrant_png, other_png, store):
    path = tmp_path / "q.png"
    path.write_bytes(quadrant_png)
    assert opened.propose_edit(str(path)).status is CommandStatus.APPLIED
    store.put("library-7", other_png)
    assert opened.propose_edit("store:library-7").classification is Classification.DIFFERENT
    assert opened.propose_edit(str(tmp_path / "missing.png")).status is CommandStatus.FAILED


def test_same_as_original_offers_restore(committed, quadrant_png):
    committed.rotate90(1)
    committed.commit()
    assert committed.can_restore_original()

    result = committed.propose_edit(quadrant_png)
    assert result.status is CommandStatus.RESTORE_OFFERED
    assert result.classification is Classification.SAME_AS_ORIGINAL
    assert committed.pending is None

    assert committed.restore_original().status is CommandStatus.APPLIED
    assert not committed.records.get_record("p1").rotated
    assert not committed.can_restore_original()
    assert len(committed.history) == 1


def test_different_picture_invalidates_old_original(committed, other_png, store):
    committed.propose_edit(other_png)
    assert not committed.records.get_record("p1").has_original
    committed.commit()
    committed.snapshots.wait_invalidations("p1")
    stored = store.get(original_key("p1"))
    assert committed.classifier.same_image(stored, other_png)


def test_remove_with_pending_only_discards(committed, other_png, store):
    committed.propose_edit(other_png)
    assert committed.remove().status is CommandStatus.APPLIED
    assert committed.pending is None
    assert store.get(display_key("p1")) is not None


def test_remove_clears_everything(committed, store):
    committed.crop_region(Region(0, 0, 100))
    committed.reset()
    assert committed.remove().status is CommandStatus.APPLIED
    for key in (display_key("p1"), full_key("p1"), original_key("p1"), crop_base_key("p1"), "orig:fam:0/1"):
        assert store.get(key) is None
    record = committed.records.get_record("p1")
    assert not record.has_original
    assert committed.committed is None
    assert len(committed.history) == 1


def test_revert_last_commit(committed, other_png):
    first = committed.committed
    committed.propose_edit(other_png)
    committed.commit()
    assert committed.revert_last_commit().status is CommandStatus.APPLIED
    assert committed.committed == first
    assert committed.store.get(display_key("p1")) == first
    assert committed.revert_last_commit().status is CommandStatus.NOOP


def test_legacy_raster_is_migrated_on_open(session, store, quadrant_png):
    store.put("old-42", quadrant_png)
    session.records.update("p2", legacy_ref="old-42")
    session.open_subject("p2")
    assert session.committed == quadrant_png
    assert store.get(display_key("p2")) == quadrant_png
    assert session.records.get_record("p2").legacy_ref is None


def test_subject_switch_discards_everything(opened, quadrant_png):
    opened.propose_edit(quadrant_png)
    opened.open_subject("p2")
    assert opened.subject.subject_id == "p2"
    assert opened.pending is None
    assert len(opened.history) == 1


def test_close_clears_crop_baseline(committed, store):
    committed.crop_region(Region(0, 0, 100))
    assert store.get(crop_base_key("p1")) is not None
    committed.close()
    assert store.get(crop_base_key("p1")) is None
    assert committed.state is SessionState.IDLE
    assert committed.tracker.live_count == 0


def test_events(opened, quadrant_png):
    seen = []
    for event in Event:
        opened.events.subscribe(event, lambda note: seen.append((note.event, note.value)))
    opened.propose_edit(quadrant_png)
    opened.commit()
    assert seen[0] == (Event.BUSY_CHANGED, True)
    assert (Event.PENDING_CHANGED, True) in seen
    assert seen[-1] == (Event.BUSY_CHANGED, False)
    committed_refs = [v for e, v in seen if e is Event.COMMITTED_CHANGED]
    assert committed_refs == ["p1::1"]


def test_failing_handler_does_not_break_commands(opened, quadrant_png):
    opened.events.subscribe(Event.PENDING_CHANGED, lambda note: 1 / 0)
    assert opened.propose_edit(quadrant_png).status is CommandStatus.APPLIED
    assert not opened.busy


def test_dispatch(opened, quadrant_png):
    assert opened.dispatch(Command.PROPOSE_EDIT, quadrant_png).status is CommandStatus.APPLIED
    assert opened.dispatch(Command.ROTATE_90, 1).status is CommandStatus.APPLIED
    assert opened.dispatch(Command.COMMIT).status is CommandStatus.APPLIED
    assert opened.dispatch(Command.OPEN, "p3").status is CommandStatus.APPLIED
    assert opened.subject.subject_id == "p3"


def test_busy_gate_rejects_second_command(opened, quadrant_png):
    started, release = threading.Event(), threading.Event()
    real_ingest = opened.engine.ingest

    def slow_ingest(raw):
        started.set()
        release.wait(5)
        return real_ingest(raw)

    results = []
    with patch.object(opened.engine, "ingest", side_effect=slow_ingest):
        worker = threading.Thread(target=lambda: results.append(opened.propose_edit(quadrant_png)))
        worker.start()
        assert started.wait(5)
        assert opened.busy
        flags, history_len = opened.flags, len(opened.history)

        assert opened.rotate90(1).status is CommandStatus.BUSY
        assert opened.commit().status is CommandStatus.BUSY
        assert opened.flags == flags
        assert len(opened.history) == history_len

        release.set()
        worker.join(5)
    assert results[0].status is CommandStatus.APPLIED
    assert not opened.busy


def test_switching_subject_cancels_in_flight_work(opened, quadrant_png, other_png):
    events = [threading.Event(), threading.Event()]
    started = [threading.Event(), threading.Event()]
    calls = []
    real_ingest = opened.engine.ingest

    def slow_ingest(raw):
        n = len(calls)
        calls.append(n)
        started[n].set()
        events[n].wait(5)
        return real_ingest(raw)

    results = {}
    with patch.object(opened.engine, "ingest", side_effect=slow_ingest):
        first = threading.Thread(target=lambda: results.setdefault("p1", opened.propose_edit(quadrant_png)))
        first.start()
        assert started[0].wait(5)

        assert opened.open_subject("p2").status is CommandStatus.APPLIED
        assert not opened.busy

        second = threading.Thread(target=lambda: results.setdefault("p2", opened.propose_edit(other_png)))
        second.start()
        assert started[1].wait(5)

        # the cancelled p1 operation finishes while p2 holds the gate
        events[0].set()
        first.join(5)
        assert results["p1"].status is CommandStatus.CANCELLED
        assert opened.busy

        events[1].set()
        second.join(5)
    assert results["p2"].status is CommandStatus.APPLIED
    assert opened.subject.subject_id == "p2"
    assert not opened.busy
    assert opened.records.peek("p1") is None or not opened.records.get_record("p1").has_original
