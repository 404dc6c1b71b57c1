"""Logging setup for the sync engine: one named logger, a log file and a tqdm-safe console."""
import logging
import os
import sys

from tqdm import tqdm

LOGGER_NAME = "translation_sync"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class TqdmLoggingHandler(logging.Handler):
    """Console handler that prints through ``tqdm.write`` so dispatch progress bars stay intact."""

    def emit(self, record):
        try:
            tqdm.write(self.format(record), file=sys.stderr)
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception:
            self.handleError(record)


def _file_handler(log_file_path: str, formatter: logging.Formatter) -> logging.FileHandler:
    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(log_file_path, encoding='utf-8')
    handler.setFormatter(formatter)
    return handler


def _console_handler(formatter: logging.Formatter) -> TqdmLoggingHandler:
    handler = TqdmLoggingHandler()
    handler.setFormatter(formatter)
    return handler


def setup_logger(log_level_str: str, log_file_path: str, log_to_console: bool) -> logging.Logger:
    """
    Configure the ``translation_sync`` logger every module writes to.

    Calling it again replaces the previous handlers. Unknown level names
    fall back to INFO.

    Args:
        log_level_str: Level name such as 'INFO' or 'DEBUG'.
        log_file_path: Log file; its directory is created when missing.
        log_to_console: Also write to stderr through tqdm.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level_str.upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)
    logger.addHandler(_file_handler(log_file_path, formatter))
    if log_to_console:
        logger.addHandler(_console_handler(formatter))
    return logger
