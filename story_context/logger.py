"""
Logging setup for story_context.

Every module logs through a child of the ``story_context`` logger:

    from story_context.logger import get_logger
    log = get_logger(__name__)

``init_logging`` attaches a rotating file handler (5 MB, 5 backups) under
``.story_context/`` in the working directory. Set STORY_CONTEXT_DEBUG to
mirror records to stderr.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "story_context"

_initialized = False


def init_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> Path:
    """Attach file (and optional stderr) handlers to the package logger.

    Safe to call more than once; handlers are only attached the first time.

    Args:
        log_dir: Directory for the log file (defaults to ./.story_context)
        level: Logging level for the package logger

    Returns:
        Path of the log file
    """
    global _initialized

    directory = Path(log_dir) if log_dir else Path.cwd() / ".story_context"
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / "story_context.log"

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    if _initialized:
        return log_path
    _initialized = True

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(fmt)
    root.addHandler(handler)

    if os.environ.get("STORY_CONTEXT_DEBUG"):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(fmt)
        root.addHandler(stderr_handler)

    root.info("logging initialised pid=%d log=%s", os.getpid(), log_path)
    return log_path


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace.

    Library code never configures handlers on import; applications call
    ``init_logging`` (the CLI does).
    """
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def truncate(text: str, max_len: int = 200) -> str:
    """Shorten text for log lines."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
