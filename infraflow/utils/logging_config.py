"""
Logging configuration with correlation ids for workflow runs.
"""

import logging
import sys
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
DEFAULT_CORRELATION_ID = "system"


class CorrelationIdFilter(logging.Filter):
    """Ensure every record carries a correlation_id attribute."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = DEFAULT_CORRELATION_ID
        return True


class SystemLogger:
    """Standardized logger that stamps a correlation id on each record."""

    def __init__(self, name: str, correlation_id: Optional[str] = None):
        self.name = name
        self.correlation_id = correlation_id or DEFAULT_CORRELATION_ID
        self._logger = logging.getLogger(name)

    def _log_with_context(self, level: int, message: str, **kwargs) -> None:
        extra = {"correlation_id": self.correlation_id}
        if kwargs:
            extra.update(kwargs)
        self._logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.ERROR, message, **kwargs)

    def set_correlation_id(self, correlation_id: str) -> None:
        """Set the correlation ID for this logger."""
        self.correlation_id = correlation_id


def get_logger(name: str, correlation_id: Optional[str] = None) -> SystemLogger:
    """Get a standardized logger instance."""
    return SystemLogger(name, correlation_id)


def configure_logging(level: Union[str, int] = "INFO") -> logging.Handler:
    """Install a stream handler on the ``infraflow`` logger.

    Calling it again replaces the handler installed earlier.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger("infraflow")
    for handler in list(root.handlers):
        if getattr(handler, "_infraflow_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    handler._infraflow_handler = True
    root.addHandler(handler)
    root.setLevel(level)
    return handler
