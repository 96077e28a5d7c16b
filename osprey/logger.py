"""Logging set-up for the server: stderr plus an optional log file."""

import logging
import os
import sys

_LOGGER_NAME = "osprey"
_FORMAT = "%(asctime)s %(message)s"
_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"

_installed: list[logging.Handler] = []


def init_logger(log_path, log_level) -> logging.Logger:
    """Send package logs to stderr and, when a path is given, to that file too."""
    close_logger()
    logger = logging.getLogger(_LOGGER_NAME)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_path:
        log_path = os.fspath(log_path)
        log_dir = os.path.dirname(log_path)
        if log_dir:
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as exc:
                raise OSError(f"failed to create log directory: {exc}") from exc
        try:
            handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))
        except OSError as exc:
            raise OSError(f"failed to open log file: {exc}") from exc

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        _installed.append(handler)

    level = logging.getLevelNamesMapping().get(str(log_level).upper(), logging.INFO)
    logger.setLevel(level)
    return logger


def close_logger() -> None:
    """Detach and close every handler installed by init_logger."""
    logger = logging.getLogger(_LOGGER_NAME)
    while _installed:
        handler = _installed.pop()
        logger.removeHandler(handler)
        handler.close()