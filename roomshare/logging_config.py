import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

ROOT_LOGGER = 'roomshare'


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None) -> logging.Logger:
    """Structured JSON logging for every ``roomshare.*`` logger. Safe to call twice."""
    logger = logging.getLogger(ROOT_LOGGER)
    formatter = jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    if not getattr(logger, '_roomshare_configured', False):
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        logger._roomshare_configured = True
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    return logger
