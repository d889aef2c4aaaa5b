"""Logging setup for the aoi-bridge CLI and embedding processes."""

import logging
import os
from collections.abc import Iterable
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Per-request chatter from the HTTP stack
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(
    level: str | None = None,
    log_file: Path | None = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """Configure root logging and return the package logger.

    Args:
        level: Log level name. Falls back to AOI_LOG_LEVEL, then LOG_LEVEL, then INFO.
        log_file: Also write records to this file (parent directories are created)
        quiet: Loggers capped at WARNING unless ``level`` is DEBUG

    Returns:
        The ``aoi_bridge`` logger
    """
    level_name = (level or os.getenv("AOI_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=handlers, force=True)

    if numeric_level > logging.DEBUG:
        for name in quiet:
            logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger("aoi_bridge")
