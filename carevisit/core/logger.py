"""Loguru sinks for the scheduling service.

The console sink is always on. Setting LOG_FILE adds a rotating file sink, which
LOG_JSON switches to one JSON record per line so the ``extra`` fields bound by
the scheduling engine (preview ids, error codes, per-occurrence detail) stay
machine-readable.
"""

import sys
from pathlib import Path

from loguru import logger

from carevisit.config.settings import Settings, settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> | {extra}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message} | {extra}"


def setup_logger(config: Settings = settings) -> None:
    """Replace loguru's default handler with sinks configured from settings."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=config.log_level, colorize=True)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=config.log_level,
            rotation=config.log_rotation,
            retention=config.log_retention,
            compression="zip",
            serialize=config.log_json,
            backtrace=True,
            # No local variable dumps in files
            diagnose=False,
        )

    logger.info(
        "Logger initialized",
        level=config.log_level,
        log_file=config.log_file,
        json=config.log_json,
    )
