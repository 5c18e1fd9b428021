import logging
import os
import sys

from loguru import logger

from ..core.settings import settings

MINIMAL_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SS}</green> |"
    " <level>{level}</level> | <level>{message}</level>"
)
DEBUG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SS}</green> | <level>{level: <4}</level> |"
    " <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
    " | <level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """Hands records of the standard logging module over to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info).log(level, record.getMessage())


def configure_logger() -> None:
    log_level = settings.log_level
    if settings.debug and log_level == "INFO":
        log_level = "DEBUG"
    log_format = DEBUG_FORMAT if settings.debug else MINIMAL_FORMAT

    logger.remove()
    logger.add(sys.stderr, level=log_level, format=log_format)
    if settings.log_to_file:
        log_dir = os.path.join(settings.mint_dir, "logs")
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            os.path.join(log_dir, "mint.log"),
            level=log_level,
            format=log_format,
            rotation="10 MB",
            retention=10,
        )

    # database drivers log through the standard logging module
    for name in ["sqlalchemy", "aiosqlite", "asyncpg"]:
        logging.getLogger(name).handlers = [InterceptHandler()]
