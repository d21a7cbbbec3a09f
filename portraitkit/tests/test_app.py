from unittest.mock import patch

import pytest
from PIL import Image

from portraitkit import app

from conftest import encode, quadrant_image


@pytest.fixture
def run(tmp_path):
    config = tmp_path / "portraitkit.ini"
    store = tmp_path / "photos"

    def _run(*argv):
        with patch.object(app, "setup_logging"):
            return app.main(["--config", str(config), "--store", str(store), *argv])

    return _run


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "in.png"
    path.write_bytes(encode(quadrant_image(600)))
    return path


def test_set_show_export(run, photo, tmp_path, capsys):
    assert run("set", "p1", str(photo)) == 0
    assert run("show", "p1") == 0
    out = capsys.readouterr().out
    assert "p1: 512x512" in out
    assert "original=yes" in out

    target = tmp_path / "out.jpg"
    assert run("export", "p1", str(target)) == 0
    with Image.open(target) as img:
        assert img.size == (512, 512)
    assert run("export", "p1", str(tmp_path / "full.jpg"), "--which", "full") == 0
    with Image.open(tmp_path / "full.jpg") as img:
        assert img.size == (600, 600)


def test_setting_same_photo_twice_is_no_change(run, photo, capsys):
    run("set", "p1", str(photo))
    capsys.readouterr()
    assert run("set", "p1", str(photo)) == 0
    assert "no change" in capsys.readouterr().out


def test_rotate_crop_and_restore(run, photo, capsys):
    run("set", "p1", str(photo))
    assert run("rotate", "p1", "90") == 0
    assert run("show", "p1") == 0
    assert "rotated=True" in capsys.readouterr().out

    assert run("crop", "p1", "0", "0", "256") == 0
    assert run("restore", "p1", "--crop") == 0
    assert run("restore", "p1") == 0
    capsys.readouterr()
    run("show", "p1")
    out = capsys.readouterr().out
    assert "rotated=False" in out
    assert "cropped=False" in out


def test_remove(run, photo, capsys):
    run("set", "p1", str(photo))
    assert run("remove", "p1") == 0
    capsys.readouterr()
    run("show", "p1")
    assert "p1: no photo" in capsys.readouterr().out
    assert run("export", "p1", "ignored.jpg") == 1


def test_bad_source_fails(run, tmp_path, capsys):
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"nope")
    assert run("set", "p1", str(bad)) == 1
    assert "failed" in capsys.readouterr().err
