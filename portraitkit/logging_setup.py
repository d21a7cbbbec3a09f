"""Configures application-wide logging."""

import logging
import logging.handlers
import os
from pathlib import Path

# Third-party loggers that are noisy at DEBUG.
QUIET_LOGGERS = {
    "PIL": logging.INFO,
    "urllib3": logging.WARNING,
}


def get_app_data_dir() -> Path:
    """Returns the application data directory."""
    app_data = os.getenv("APPDATA")
    if app_data:
        return Path(app_data) / "portraitkit"
    return Path.home() / ".portraitkit"


def setup_logging(debug: bool = False, log_dir: Path = None) -> Path:
    """Sets up logging to a rotating file in the app data directory.

    With `debug`, every portraitkit module logs at DEBUG (orientation scan
    steps, cache hits, busy-gate rejections, cancellations).
    """
    log_dir = log_dir or get_app_data_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "app.log"
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    already = any(
        isinstance(h, logging.handlers.RotatingFileHandler) and h.baseFilename == os.path.abspath(log_file)
        for h in root_logger.handlers
    )
    if not already:
        handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10*1024*1024, backupCount=5
        )
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("portraitkit").setLevel(level)
    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    return log_file
