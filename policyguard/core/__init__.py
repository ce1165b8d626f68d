"""Core utilities package."""

from .config import Settings, get_settings
from .exceptions import (AggregateDeletionError, CorrelationPayloadError,
                         PolicyGuardError, PolicyServerNotFoundError,
                         PolicyServerNotReadyError, ReconcileError,
                         ResourceConflictError, ResourceNotFoundError,
                         StoreError)
from .logging import (LoggerAdapter, get_logger, get_logger_with_context,
                      log_event, setup_logging)

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "get_logger",
    "LoggerAdapter",
    "get_logger_with_context",
    "log_event",
    "PolicyGuardError",
    "StoreError",
    "ResourceNotFoundError",
    "ResourceConflictError",
    "PolicyServerNotReadyError",
    "PolicyServerNotFoundError",
    "CorrelationPayloadError",
    "ReconcileError",
    "AggregateDeletionError",
]
