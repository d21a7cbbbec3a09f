"""Manages application configuration via an INI file."""

import configparser
import dataclasses
import logging
from pathlib import Path
from typing import Optional, Tuple

from portraitkit.logging_setup import get_app_data_dir

log = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "photo": {
        # Longest side of every display raster written to the store.
        "max_dimension": "512",
        "jpeg_quality": "72",
        # Quality of the full-resolution backup kept next to the display raster.
        "full_quality": "92",
        # Pixels shaved off each side after a free rotation to hide resampling fringes.
        "rotate_inset": "2",
    },
    "hash": {
        # Average-hash grid: the raster is reduced to grid_size x grid_size,
        # then averaged into blocks x blocks cells (64 bits by default).
        "grid_size": "32",
        "blocks": "8",
        # Max Hamming distance for two fingerprints to count as the same picture.
        # Tunable, not a perceptual law.
        "near_duplicate_threshold": "4",
        "cache_entries": "256",
    },
    "store": {
        "directory": "",  # empty = <app data dir>/photos
        "max_bytes": str(8 * 1024 * 1024),
        "allowed_formats": "JPEG,PNG,WEBP,GIF,BMP",
        "read_cache_mb": "32",
        "records_file": "",  # empty = <directory>/subjects.json
    },
    "fetch": {
        "timeout": "10",
        "chunk_size": "65536",
    },
    "session": {
        "workers": "3",
        "history_limit": "50",  # 0 = unbounded
    },
}


class AppConfig:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else get_app_data_dir() / "portraitkit.ini"
        self.config = configparser.ConfigParser()
        self.load()

    def load(self):
        """Loads the config, creating it with defaults if it doesn't exist."""
        if not self.config_path.exists():
            log.info(f"Creating default config at {self.config_path}")
            self.config.read_dict(DEFAULT_CONFIG)
            self.save()
        else:
            log.info(f"Loading config from {self.config_path}")
            self.config.read(self.config_path)
            # Ensure all sections and keys exist
            for section, keys in DEFAULT_CONFIG.items():
                if not self.config.has_section(section):
                    self.config.add_section(section)
                for key, value in keys.items():
                    if not self.config.has_option(section, key):
                        self.config.set(section, key, value)
            self.save()  # Save to add any missing keys

    def save(self):
        """Saves the current configuration to the INI file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with self.config_path.open("w") as f:
                self.config.write(f)
            log.info(f"Saved config to {self.config_path}")
        except IOError as e:
            log.error(f"Failed to save config to {self.config_path}: {e}")

    def get(self, section, key, fallback=None):
        return self.config.get(section, key, fallback=fallback)

    def getint(self, section, key, fallback=None):
        return self.config.getint(section, key, fallback=fallback)

    def getfloat(self, section, key, fallback=None):
        return self.config.getfloat(section, key, fallback=fallback)

    def getboolean(self, section, key, fallback=None):
        return self.config.getboolean(section, key, fallback=fallback)

    def set(self, section, key, value):
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, key, str(value))

    def store_directory(self) -> Path:
        configured = self.get("store", "directory", fallback="").strip()
        return Path(configured) if configured else get_app_data_dir() / "photos"

    def records_path(self) -> Path:
        configured = self.get("store", "records_file", fallback="").strip()
        return Path(configured) if configured else self.store_directory() / "subjects.json"


@dataclasses.dataclass(frozen=True)
class PhotoSettings:
    """Resolved settings injected into the session and its collaborators."""
    max_dimension: int = 512
    jpeg_quality: int = 72
    full_quality: int = 92
    rotate_inset: int = 2
    grid_size: int = 32
    blocks: int = 8
    near_duplicate_threshold: int = 4
    cache_entries: int = 256
    max_bytes: int = 8 * 1024 * 1024
    allowed_formats: Tuple[str, ...] = ("JPEG", "PNG", "WEBP", "GIF", "BMP")
    read_cache_mb: float = 32.0
    fetch_timeout: float = 10.0
    chunk_size: int = 65536
    workers: int = 3
    history_limit: int = 50

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "PhotoSettings":
        formats = cfg.get("store", "allowed_formats", fallback="")
        return cls(
            max_dimension=cfg.getint("photo", "max_dimension", 512),
            jpeg_quality=cfg.getint("photo", "jpeg_quality", 72),
            full_quality=cfg.getint("photo", "full_quality", 92),
            rotate_inset=cfg.getint("photo", "rotate_inset", 2),
            grid_size=cfg.getint("hash", "grid_size", 32),
            blocks=cfg.getint("hash", "blocks", 8),
            near_duplicate_threshold=cfg.getint("hash", "near_duplicate_threshold", 4),
            cache_entries=cfg.getint("hash", "cache_entries", 256),
            max_bytes=cfg.getint("store", "max_bytes", 8 * 1024 * 1024),
            allowed_formats=tuple(f.strip().upper() for f in formats.split(",") if f.strip()),
            read_cache_mb=cfg.getfloat("store", "read_cache_mb", 32.0),
            fetch_timeout=cfg.getfloat("fetch", "timeout", 10.0),
            chunk_size=cfg.getint("fetch", "chunk_size", 65536),
            workers=cfg.getint("session", "workers", 3),
            history_limit=cfg.getint("session", "history_limit", 50),
        )
