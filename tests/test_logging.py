import logging
import os

from loguru import logger

from lnmint.core.logging import InterceptHandler, configure_logger
from lnmint.core.settings import settings


def test_configure_logger_writes_log_file(tmp_path):
    mint_dir = settings.mint_dir
    settings.mint_dir = str(tmp_path)
    settings.log_to_file = True
    try:
        configure_logger()
        logger.info("hello from the mint")
        logger.complete()
        log_file = os.path.join(str(tmp_path), "logs", "mint.log")
        assert os.path.exists(log_file)
        with open(log_file) as f:
            assert "hello from the mint" in f.read()
    finally:
        settings.log_to_file = False
        settings.mint_dir = mint_dir
        logger.remove()


def test_sqlalchemy_logs_are_intercepted():
    configure_logger()
    try:
        handlers = logging.getLogger("sqlalchemy").handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], InterceptHandler)
    finally:
        logger.remove()
