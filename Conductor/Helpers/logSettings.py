"""Logging configuration for Conductor."""
import os
import logging

# Log level mapping
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

PACKAGE_LOGGER = "Conductor"


def logSetup() -> int:
    """
    Get the configured log level.

    Uses LOG_LEVEL environment variable if set, otherwise defaults to WARNING.

    Returns:
        Logging level as integer
    """
    level_name = os.environ.get("LOG_LEVEL", "WARNING").upper()
    return LOG_LEVELS.get(level_name, logging.WARNING)


def level_for(name: str) -> int:
    """Map a playbook loglevel name (debug/info/warn/error) to a logging level."""
    return LOG_LEVELS.get(str(name).upper(), logging.INFO)


def set_package_level(name: str) -> int:
    """
    Apply a log level to every Conductor logger.

    Module loggers carry their own level from logSetup(), so setting the
    package logger alone would not reach them.

    Args:
        name: Level name such as "debug" or "warn"

    Returns:
        The logging level that was applied
    """
    level = level_for(name)
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)

    for logger_name, logger in list(logging.root.manager.loggerDict.items()):
        if not isinstance(logger, logging.Logger):
            continue
        if logger_name == PACKAGE_LOGGER or logger_name.startswith(
            PACKAGE_LOGGER + "."
        ):
            logger.setLevel(level)

    return level
