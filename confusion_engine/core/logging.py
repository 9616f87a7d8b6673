"""
Logging configuration for production
"""
import logging
import sys
from pathlib import Path

from loguru import logger
from confusion_engine.core.config import settings


class InterceptHandler(logging.Handler):
    """
    Intercept standard logging and redirect to loguru
    """

    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).bind(
            logger_name=record.name
        ).log(level, record.getMessage())


def setup_logging(level: str = None, json_logs: bool = None):
    """
    Setup logging configuration.

    Every module logs through ``logging.getLogger(__name__)``; the records are
    routed into loguru here. With ``LOG_JSON`` enabled loguru serializes each
    record, which is what the log shippers in front of the engine expect.
    """
    level = level or settings.LOG_LEVEL
    json_logs = settings.LOG_JSON if json_logs is None else json_logs

    # Remove default logger
    logger.remove()

    if json_logs:
        logger.add(sys.stdout, enqueue=True, serialize=True, level=level)
    else:
        logger.add(
            sys.stdout,
            enqueue=True,
            colorize=True,
            format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{extra[logger_name]}</cyan> - <level>{message}</level>",
            level=level,
        )

    # Add file logger for production
    if settings.ENVIRONMENT == "production":
        log_path = Path("logs")
        log_path.mkdir(exist_ok=True)

        logger.add(
            log_path / "confusion_engine_{time:YYYY-MM-DD}.log",
            rotation="500 MB",
            retention="30 days",
            enqueue=True,
            serialize=json_logs,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[logger_name]} - {message}",
        )

    logger.configure(extra={"logger_name": "confusion_engine"})

    # Intercept everything at the root logger
    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(level)

    # Remove every other logger's handlers and propagate to root logger
    for name in logging.root.manager.loggerDict.keys():
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    # Setup Uvicorn loggers
    logging.getLogger("uvicorn").handlers = [InterceptHandler()]
    logging.getLogger("uvicorn.access").handlers = [InterceptHandler()]
    logging.getLogger("uvicorn.error").handlers = [InterceptHandler()]

    logger.info(f"Logging configured - Level: {level}, Environment: {settings.ENVIRONMENT}, JSON: {json_logs}")
