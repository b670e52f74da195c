import logging
import os
from typing import Optional

ROOT_LOGGER = "hazard_realtime"

CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(levelname)s : %(name)s : %(funcName)s : %(lineno)d : %(message)s'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Console (and optional file) logging for the hazard_realtime package.

    Parameters
    level (str) : Level name applied to the package logger
    log_file (str) : Optional path; its directory is created if needed

    Returns:
    logging.Logger : The configured package logger

    Calling it again replaces the handlers it installed earlier instead of
    stacking duplicates.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_hazard_realtime", False):
            logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console_handler._hazard_realtime = True
    logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler._hazard_realtime = True
        logger.addHandler(file_handler)

    return logger
