"""Public observability primitives: structured logging and lifecycle events."""

from delivery_pipeline.observability.events import DispatchError, EventBus, Subscriber
from delivery_pipeline.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    LogRedactor,
    configure_logging,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "Subscriber",
    "configure_logging",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "shutdown_logging",
]
