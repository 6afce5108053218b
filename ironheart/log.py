"""Logging utilities for ironheart."""
import logging
import logging.handlers
import os
import sys
import threading
from pathlib import Path
from typing import Optional


# Thread-safe lock for logger initialization
_logger_init_lock = threading.Lock()

# File handlers installed by setup_file_logging(), shared by all loggers
_file_handlers: list = []


class HeartFormatter(logging.Formatter):
    """Compact formatter for console output.

    Format: [{level[0]} {time} {module_basename[:9]}] {message}
    Example: [I 14:23:45.123 websocket] Websocket server listening on 0.0.0.0:5566
    """

    def format(self, record):
        level_char = record.levelname[0]

        # Module basename, truncated and padded
        module_name = record.name.split('.')[-1]
        module_padded = module_name[:9].ljust(9)

        timestamp = self.formatTime(record, "%H:%M:%S")
        msecs = f"{record.msecs:03.0f}"

        prefix = f"[{level_char} {timestamp}.{msecs} {module_padded}]"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"{prefix} {message}"


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get logger for an ironheart component.

    Args:
        name: Component name (usually __name__)
        level: Optional level (DEBUG/INFO/WARNING/ERROR)
               Falls back to IRONHEART_LOG_LEVEL env var, then INFO

    Returns:
        Configured logger instance

    Example:
        >>> from ironheart.log import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("OSC actor started")
        [I 14:23:45.123 transmitt] OSC actor started
    """
    logger = logging.getLogger(name)

    if level is None:
        level = os.getenv("IRONHEART_LOG_LEVEL", "INFO")

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    with _logger_init_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(HeartFormatter())
            logger.addHandler(handler)
        for file_handler in _file_handlers:
            if file_handler not in logger.handlers:
                logger.addHandler(file_handler)

    return logger


def set_level(level: str) -> None:
    """Apply a level to every ironheart logger created so far."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    os.environ["IRONHEART_LOG_LEVEL"] = level.upper()
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith("ironheart") and isinstance(logger, logging.Logger):
            logger.setLevel(resolved)


def setup_file_logging(file: str, level: str = "DEBUG",
                       max_bytes: int = 10485760, backup_count: int = 5) -> logging.Handler:
    """Attach a rotating file handler to every ironheart logger.

    Creates the parent directory if needed. Loggers created later pick the
    handler up as well.

    Args:
        file: Log file path
        level: File handler level
        max_bytes: Rotate after this many bytes (default 10MB)
        backup_count: Number of rotated files to keep

    Returns:
        The installed handler
    """
    log_path = Path(file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s.%(msecs)03d %(levelname)s [%(name)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count
    )
    file_handler.setLevel(getattr(logging, level.upper(), logging.DEBUG))
    file_handler.setFormatter(formatter)

    with _logger_init_lock:
        _file_handlers.append(file_handler)
        for name, logger in logging.root.manager.loggerDict.items():
            if name.startswith("ironheart") and isinstance(logger, logging.Logger):
                logger.addHandler(file_handler)

    return file_handler

