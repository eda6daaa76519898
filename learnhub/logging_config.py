"""
Logging configuration using Loguru.
Logs warnings and errors to file, all levels to console.
"""

import sys
from loguru import logger
from .config import paths

logger.remove()

logger.add(
    sys.stderr,
    level="INFO",
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
    colorize=True,
)

try:
    paths.logs_dir.mkdir(exist_ok=True)

    logger.add(
        paths.logs_dir / "learnhub_{time:YYYY-MM-DD}.log",
        level="WARNING",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
    )

    logger.add(
        paths.logs_dir / "errors_{time:YYYY-MM-DD}.log",
        level="ERROR",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        backtrace=True,
    )
except OSError:
    logger.warning("Could not set up file logging due to permissions.")

__all__ = ["logger"]
