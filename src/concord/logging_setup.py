"""Logging configuration for the concord CLI."""

import logging
from pathlib import Path

CONSOLE_FORMAT = "%(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"


def setup_logging(
    logger_name: str = "concord",
    log_file: str | Path | None = None,
    verbose: bool = False,
) -> logging.Logger:
    """
    Configure console and optional file logging for the coordination core.

    Console output is WARNING and above (forced lock expiry, retries,
    deadlocks) unless ``verbose``. The file, when given, receives DEBUG
    records tagged with the thread name.

    Args:
        logger_name: Logger to configure; module loggers below it inherit
            its handlers
        log_file: Path to log file (None for no file logging)
        verbose: Enable DEBUG level on console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="w")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(file_handler)
    return logger
