import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_plain_logger(name: str, level=None) -> logging.Logger:
    """
    Logger with its own stream handler, detached from the root logger
    so uvicorn's config does not reformat or duplicate our lines
    """
    if level is None:
        from .config import settings
        level = settings.log_level.upper()

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    if not logger.hasHandlers():
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
