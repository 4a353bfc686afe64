"""Utility functions for ocbridge."""

import re
import sys
from pathlib import Path

from loguru import logger

from ocbridge.config.schema import LoggingConfig

_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str) -> str:
    """Convert a string to a safe filename."""
    cleaned = _UNSAFE_FILENAME.sub("_", name).strip().strip(".")
    return cleaned or "file"


def setup_logging(config: LoggingConfig) -> None:
    """Replace loguru's default sink with the configured ones."""
    logger.remove()
    logger.add(sys.stderr, level=config.level.upper())
    if config.file:
        ensure_dir(Path(config.file).expanduser().parent)
        logger.add(
            Path(config.file).expanduser(),
            level=config.level.upper(),
            rotation=config.rotation,
            encoding="utf-8",
        )
