import logging

from fanout.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger for the fanout core.

    The root handler is installed once; the level comes from LOG_LEVEL so a
    batch run can be made chatty without touching code.
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


def elapsed_ms(started: float, now: float) -> int:
    return int((now - started) * 1000)
