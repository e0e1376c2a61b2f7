"""Structured logging setup using loguru.

aiohttp logs through the standard ``logging`` module (access log, client
and server errors); ``setup_logging`` routes those records into the same
loguru sinks so one file holds the whole request history.
"""
import logging
import sys
from pathlib import Path

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

STDLIB_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.server", "aiohttp.web", "asyncio")


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    log_file: str = "gateway.log",
    level: str = "INFO",
    enable_console: bool = True,
    rotation: str = "100 MB",
    retention: str = "7 days",
) -> None:
    """Configure logging for the order gateway.

    Args:
        log_file: Path to the rotating log file
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Also log to stdout
        rotation: loguru rotation condition for the file sink
        retention: loguru retention for rotated files
    """
    _logger.remove()

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(str(log_path), format=LOG_FORMAT, level=level, rotation=rotation, retention=retention)

    if enable_console:
        _logger.add(sys.stdout, format=LOG_FORMAT, level=level, colorize=True)

    handler = InterceptHandler()
    for name in STDLIB_LOGGERS:
        std = logging.getLogger(name)
        std.handlers = [handler]
        std.propagate = False
        std.setLevel(level.upper())


logger = _logger
