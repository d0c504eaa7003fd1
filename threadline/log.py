"""Logging configuration for threadline using loguru.

Import `logger` from this module everywhere. Call `setup_logging()` once at
startup to configure sinks. The CLI and the feed server share this setup;
the server additionally routes stdlib logging (uvicorn, sqlalchemy) into
loguru with ``intercept_stdlib=True``.

Console: colorized, concise format
File: data/threadline.log with 10MB rotation, 7-day retention
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from loguru import logger

# Re-export so all modules do: from .log import logger
__all__ = ["InterceptHandler", "logger", "setup_logging"]

_LOG_DIR = Path(__file__).resolve().parent.parent / "data"

# Env overrides
LOG_LEVEL = os.environ.get("THREADLINE_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("THREADLINE_LOG_FILE", str(_LOG_DIR / "threadline.log"))

# Third-party loggers that are too chatty below WARNING
NOISY_LOGGERS = ("httpcore", "httpx", "websockets", "aiosqlite")

_configured = False


class InterceptHandler(logging.Handler):
    """Bridge stdlib logging → loguru so uvicorn/sqlalchemy logs flow through."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore[assignment]

        # Find the caller frame that originated the log call
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str | None = None,
    log_file: str | None = LOG_FILE,
    *,
    intercept_stdlib: bool = False,
    force: bool = False,
) -> None:
    """Configure loguru sinks. Safe to call multiple times (idempotent).

    Pass ``log_file=None`` to log to the console only, and ``force=True`` to
    replace an earlier configuration.
    """
    global _configured
    if _configured and not force:
        return
    _configured = True

    console_level = (level or LOG_LEVEL).upper()

    # Remove default stderr handler
    logger.remove()

    logger.add(
        sys.stderr,
        level=console_level,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention="7 days",
            compression="gz",
            encoding="utf-8",
        )

    if intercept_stdlib:
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging initialized | level={} | file={}", console_level, log_file)
