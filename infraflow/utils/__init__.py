"""Utilities package for infraflow."""

from .errors import ErrorKind, InfraflowError
from .logging_config import SystemLogger, configure_logging, get_logger
from .retry import RetryPolicy, RetryStrategy, calculate_retry_delay

__all__ = [
    "ErrorKind",
    "InfraflowError",
    "SystemLogger",
    "configure_logging",
    "get_logger",
    "RetryPolicy",
    "RetryStrategy",
    "calculate_retry_delay",
]
