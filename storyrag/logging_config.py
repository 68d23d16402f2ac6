"""Centralized logging configuration for storyrag.

All modules should import their logger via:
    from storyrag.logging_config import get_logger
    logger = get_logger(__name__)

Logs are written to a rotating file at:
    ~/.storyrag/storyrag.log   (default)
    or $STORYRAG_LOG_FILE      (override)

Console output in the CLI goes through Rich. The file logger captures
degraded sub-searches, breaker transitions and cache failures that never
reach the caller.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
LOG_DIR = Path.home() / ".storyrag"
LOG_FILE = os.environ.get("STORYRAG_LOG_FILE", str(LOG_DIR / "storyrag.log"))
LOG_LEVEL = os.environ.get("STORYRAG_LOG_LEVEL", "INFO")
MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
BACKUP_COUNT = 3

_initialized = False


def setup_logging() -> None:
    """Initialize the package file logger (idempotent)."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    root = logging.getLogger("storyrag")
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    if any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        return

    try:
        Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError:
        # Read-only home directories (containers, CI) still get stderr warnings
        # through logging's last-resort handler.
        return

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(file_handler)
    root.debug("Logging initialized -> %s (level=%s)", LOG_FILE, LOG_LEVEL)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name."""
    setup_logging()
    return logging.getLogger(name)
