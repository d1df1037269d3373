"""
Logging setup for the tally package logger.

Records go to stderr so command output on stdout stays machine-readable.
When Settings.log_dir is set, each run also writes to its own file named
after the environment, e.g. ``tally-development-20240101T120000Z.log``.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
LOG_FILE_STAMP = "%Y%m%dT%H%M%SZ"

# Marks handlers installed here so a second call replaces only those
_OWNED = "_tally_owned"


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(settings: Settings | None = None) -> Path | None:
    """
    Attach a stderr handler, and a file handler when a log dir is configured,
    to the ``tally`` logger. Handlers added by other code are left alone.

    Returns the log file path, or None when logging to stderr only.
    """
    settings = settings or Settings.from_env()
    logger = logging.getLogger("tally")
    logger.setLevel(_level(settings.log_level))

    for handler in [h for h in logger.handlers if getattr(h, _OWNED, False)]:
        logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = None
    if settings.log_dir:
        directory = Path(settings.log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(tz=timezone.utc).strftime(LOG_FILE_STAMP)
        log_file = directory / f"tally-{settings.env}-{stamp}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _OWNED, True)
        logger.addHandler(handler)

    return log_file
