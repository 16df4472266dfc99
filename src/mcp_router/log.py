"""Process-wide loguru sinks for the router entry points."""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{name}:{line}</cyan> "
    "{message}"
)


def _loguru_level(record: logging.LogRecord) -> str | int:
    try:
        return logger.level(record.levelname).name
    except ValueError:
        return record.levelno


def _caller_depth() -> int:
    frame, depth = logging.currentframe(), 2
    while frame is not None and frame.f_code.co_filename == logging.__file__:
        frame = frame.f_back
        depth += 1
    return depth


class _InterceptHandler(logging.Handler):
    """Forwards records from libraries on stdlib logging, such as mcp and uvicorn."""

    def emit(self, record: logging.LogRecord) -> None:
        logger.opt(depth=_caller_depth(), exception=record.exc_info).log(
            _loguru_level(record), record.getMessage()
        )


def setup_logging(
    level: str = "INFO",
    *,
    intercept_stdlib: bool = True,
    log_file: str | None = None,
) -> None:
    """Replace loguru's sinks with a stderr sink and an optional rotating file.

    stdout stays free for the MCP stdio server.
    """

    threshold = level.upper()
    logger.remove()
    logger.add(sys.stderr, format=_FORMAT, level=threshold, backtrace=True, diagnose=False)
    if log_file:
        logger.add(log_file, format=_FORMAT, level=threshold, rotation="10 MB", retention=5)
    if intercept_stdlib:
        logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    logger.debug("Log level set to {}", threshold)
