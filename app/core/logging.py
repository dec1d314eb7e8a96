"""
Core logging module.

This module configures the application logging with Loguru and routes
standard library logging (used by services and repositories) into it.
"""

import logging
import os
import sys

from loguru import logger

from app.core.config import settings


class InterceptHandler(logging.Handler):
    """
    Intercept standard logging and redirect to loguru.

    Services and repositories log through ``logging.getLogger(__name__)``;
    this handler forwards those records so every sink sees them.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where the logged message originated
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging():
    """
    Configure application logging using Loguru.

    Sets up the stderr sink (debug mode), the rotating file sink and
    intercepts standard library logging.

    Returns:
        The configured loguru logger
    """
    logger.remove()

    if settings.DEBUG or not settings.LOG_TO_FILE:
        logger.add(
            sys.stderr,
            level=settings.LOG_LEVEL.upper(),
            format=settings.LOG_FORMAT,
            backtrace=True,
            diagnose=settings.DEBUG,
        )

    if settings.LOG_TO_FILE:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        log_file_path = os.path.join(settings.LOG_DIR, settings.LOG_FILENAME)

        if settings.LOG_JSON:
            logger.add(
                log_file_path,
                level=settings.LOG_LEVEL.upper(),
                serialize=True,
                rotation=settings.LOG_ROTATION,
                retention=settings.LOG_RETENTION,
                compression="gz",
                enqueue=True,
            )
        else:
            logger.add(
                log_file_path,
                level=settings.LOG_LEVEL.upper(),
                format=settings.LOG_FORMAT,
                rotation=settings.LOG_ROTATION,
                retention=settings.LOG_RETENTION,
                compression="gz",
                enqueue=True,
            )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name in list(logging.root.manager.loggerDict.keys()):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    for log_name in ["uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "apscheduler"]:
        logging.getLogger(log_name).handlers = [InterceptHandler()]

    return logger
