import logging
import os
import re
import sys
from typing import Optional


class SessionTokenFilter(logging.Filter):
    """Filter to mask relay session capability tokens in log records.

    Session ids grant access to stored chunks, so only a short prefix is
    kept in the output.
    """

    PATTERNS = [
        (re.compile(r'(session_[A-Za-z0-9_-]{6})[A-Za-z0-9_-]+'), r'\1***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Mask session tokens in the log message."""
        if isinstance(record.msg, str):
            record.msg = self._mask_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    def _mask_value(self, value):
        if isinstance(value, str):
            for pattern, replacement in self.PATTERNS:
                value = pattern.sub(replacement, value)
        return value


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration for a component.

    Configures the component logger and the shared package loggers
    (common, relay, peer) so module loggers obtained through get_logger
    inherit the same handler.

    Args:
        component_name: Name of the component (e.g., 'relay', 'peer')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO
        correlation_id: Optional correlation ID to include in log format

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    level = getattr(logging, log_level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(correlation_id))
    handler.addFilter(SessionTokenFilter())

    logger = None
    for name in dict.fromkeys([component_name, 'common', 'relay', 'peer']):
        current = logging.getLogger(name)
        current.setLevel(level)
        if not current.handlers:
            current.addHandler(handler)
            current.propagate = False
        if name == component_name:
            logger = current

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_correlation_id(logger: logging.Logger, correlation_id: str) -> None:
    """
    Update logger handlers to include correlation ID in format.

    Args:
        logger: Logger instance to update
        correlation_id: Correlation ID to include
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setFormatter(_build_formatter(correlation_id))


def _build_formatter(correlation_id: Optional[str]) -> logging.Formatter:
    if correlation_id:
        fmt = f'%(asctime)s - %(name)s - %(levelname)s - [{correlation_id}] - %(message)s'
    else:
        fmt = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    return logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S')
