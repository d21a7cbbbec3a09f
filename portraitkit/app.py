"""Command-line entry point: one session command per invocation, then commit."""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Optional

from portraitkit.config import AppConfig, PhotoSettings
from portraitkit.imaging.resources import decode_size
from portraitkit.io.records import RecordManager
from portraitkit.io.store import FileStore, crop_base_key, display_key, full_key, original_key
from portraitkit.logging_setup import setup_logging
from portraitkit.models import CommandResult, CommandStatus, Region, Subject
from portraitkit.session import PhotoSession

log = logging.getLogger(__name__)


def build_session(cfg: AppConfig, store_dir: Optional[Path] = None) -> PhotoSession:
    """Wire a session to the on-disk store and records named by the config."""
    settings = PhotoSettings.from_config(cfg)
    directory = Path(store_dir) if store_dir else cfg.store_directory()
    store = FileStore(directory, settings.max_bytes, settings.allowed_formats, settings.read_cache_mb)
    records_path = directory / "subjects.json" if store_dir else cfg.records_path()
    return PhotoSession(store, RecordManager(records_path), settings)


def _report(result: CommandResult, action: str) -> int:
    if result.status is CommandStatus.FAILED:
        print(f"{action} failed: {result.message}", file=sys.stderr)
        return 1
    if result.status is CommandStatus.BUSY:
        print(f"{action}: session busy, try again", file=sys.stderr)
        return 1
    if result.status is CommandStatus.UNCHANGED:
        print(f"{action}: no change ({result.message or 'same as current photo'})")
    elif result.status is CommandStatus.NOOP:
        print(f"{action}: nothing to do ({result.message})")
    elif result.status is CommandStatus.RESTORE_OFFERED:
        print(f"{action}: this is the original photo; run 'restore' to bring it back")
    return 0


def _apply_and_commit(session: PhotoSession, result: CommandResult, action: str) -> int:
    if result.status is not CommandStatus.APPLIED or session.pending is None:
        return _report(result, action)
    return _report(session.commit(), action)


def cmd_show(session: PhotoSession, args) -> int:
    sid = session.subject.subject_id
    record = session.records.get_record(sid)
    committed = session.committed
    if committed is None:
        print(f"{sid}: no photo")
    else:
        w, h = decode_size(committed) or (0, 0)
        print(f"{sid}: {w}x{h}, {len(committed)} bytes, version {record.photo_version}")
    print(f"  rotated={record.rotated} cropped={record.cropped} fitted={record.fitted}")
    print(f"  original={'yes' if record.has_original else 'no'} "
          f"restorable={'yes' if session.can_restore_original() else 'no'}")
    return 0


def cmd_set(session: PhotoSession, args) -> int:
    return _apply_and_commit(session, session.propose_edit(args.source), "set")


def cmd_rotate(session: PhotoSession, args) -> int:
    if args.degrees in (90, -90):
        result = session.rotate90(1 if args.degrees > 0 else -1)
    else:
        result = session.rotate_free(args.degrees)
    return _apply_and_commit(session, result, "rotate")


def cmd_flip(session: PhotoSession, args) -> int:
    return _apply_and_commit(session, session.flip(args.axis), "flip")


def cmd_crop(session: PhotoSession, args) -> int:
    region = Region(args.left, args.top, args.size)
    result = session.fit_region(region) if args.fit else session.crop_region(region)
    return _apply_and_commit(session, result, "fit" if args.fit else "crop")


def cmd_restore(session: PhotoSession, args) -> int:
    if args.crop:
        return _report(session.restore_crop_baseline(), "restore crop")
    return _report(session.restore_original(), "restore")


def cmd_remove(session: PhotoSession, args) -> int:
    return _report(session.remove(), "remove")


EXPORT_KEYS = {
    "display": display_key,
    "full": full_key,
    "original": original_key,
    "crop-base": crop_base_key,
}


def cmd_export(session: PhotoSession, args) -> int:
    key = EXPORT_KEYS[args.which](session.subject.subject_id)
    data = session.store.get(key)
    if data is None:
        print(f"export: nothing stored under {key!r}", file=sys.stderr)
        return 1
    Path(args.output).write_bytes(data)
    print(f"Wrote {len(data)} bytes to {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PortraitKit - per-subject portrait photo editor")
    parser.add_argument("--config", type=Path, default=None, help="Path to the INI config file")
    parser.add_argument("--store", type=Path, default=None, help="Photo store directory (overrides config)")
    parser.add_argument("--family", default=None, help="Family key of the subject")
    parser.add_argument("--path", default=None, help="Path of the subject within its family")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("show", help="Show the subject's photo state")
    p.add_argument("subject")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("set", help="Set the photo from a file, URL or store:<key>")
    p.add_argument("subject")
    p.add_argument("source")
    p.set_defaults(func=cmd_set)

    p = sub.add_parser("rotate", help="Rotate clockwise by DEGREES (negative for counter-clockwise)")
    p.add_argument("subject")
    p.add_argument("degrees", type=float)
    p.set_defaults(func=cmd_rotate)

    p = sub.add_parser("flip", help="Mirror the photo")
    p.add_argument("subject")
    p.add_argument("axis", choices=["x", "y"])
    p.set_defaults(func=cmd_flip)

    p = sub.add_parser("crop", help="Crop to a square region in photo pixels")
    p.add_argument("subject")
    p.add_argument("left", type=float)
    p.add_argument("top", type=float)
    p.add_argument("size", type=float)
    p.add_argument("--fit", action="store_true", help="Allow the region past the edges, padding with black")
    p.set_defaults(func=cmd_crop)

    p = sub.add_parser("restore", help="Restore the original photo")
    p.add_argument("subject")
    p.add_argument("--crop", action="store_true", help="Undo the last crop instead")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("remove", help="Delete the subject's photo and its snapshots")
    p.add_argument("subject")
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("export", help="Write a stored raster to a file")
    p.add_argument("subject")
    p.add_argument("output")
    p.add_argument("--which", choices=sorted(EXPORT_KEYS), default="display")
    p.set_defaults(func=cmd_export)
    return parser


def main(argv=None) -> int:
    """PortraitKit Application Entry Point"""
    args = build_parser().parse_args(argv)
    t0 = time.perf_counter()
    setup_logging(args.debug)
    cfg = AppConfig(args.config)
    session = build_session(cfg, args.store)
    try:
        opened = session.open_subject(Subject(args.subject, args.family, args.path))
        if opened.status is not CommandStatus.APPLIED:
            return _report(opened, "open")
        code = args.func(session, args)
    finally:
        # Baselines outlive one invocation so a later `restore --crop` can use them
        session.shutdown(keep_crop_baseline=True)
    if args.debug:
        log.info("%s finished in %.3fs", args.command, time.perf_counter() - t0)
    return code


def cli():
    """CLI entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
