"""BarSync point-of-sale terminal engine.

Importing the package configures the ``barsync`` logger shared by every
module. Records go to a rotating file and to stderr; the sync worker logs
from its own thread, so the thread name is part of each line.

``BARSYNC_LOG_DIR`` moves the log file and ``BARSYNC_LOG_LEVEL`` changes the
level (``INFO`` by default).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("BARSYNC_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "barsync.log"
LOG_FORMAT = "%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(message)s"


def _log_level() -> int:
    level = logging.getLevelName(os.environ.get("BARSYNC_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach the terminal's file and stderr handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: terminal log file '{LOG_FILE}' is unavailable: {exc}", file=sys.stderr)
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)
    return logger


log = _configure_logging()
log.debug("Terminal logging ready (level %s)", logging.getLevelName(log.level))
