"""Logging configuration using loguru.

Every record ends up in one loguru sink on stderr: dockyard's own loguru
calls, the stdlib-logging modules of this package (the coordinator and the
completion client), ``warnings.warn`` output and third-party libraries
(uvicorn, sqlalchemy, alembic, pydantic-ai).

Two output shapes are supported.  The default is a colored single-line
format for terminals; ``DOCKYARD_LOG_JSON=true`` switches to loguru's
``serialize`` mode, one JSON object per line, for log shippers.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Libraries whose INFO output is per-request or per-statement chatter.
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "alembic.runtime.migration")


class _InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the original call-site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).bind(logger_name=record.name).log(
            level, record.getMessage()
        )


def setup_logging(level: str = "INFO", *, json: bool = False) -> None:
    """Install the stderr sink and route stdlib logging into it.

    Safe to call more than once (the CLI and the app lifespan both call it);
    each call replaces the previous configuration.
    """
    level = level.upper()

    logger.remove()
    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    logging.captureWarnings(True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, json={})", level, json)
