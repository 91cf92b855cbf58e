"""Utility modules for logging, retry and error handling."""

from fleetdeploy.utils.retry import (
    RetryStrategy,
    RetryResult,
    is_connection_failure,
    never_retry,
    CONNECTION_FAILURE_EXIT_CODE,
)
from fleetdeploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    RemoteConnectionError,
    ValidationError,
    ExecutionError,
    DetectionError,
    CleanupError,
    RollbackError,
    UnsafeStateError,
    ErrorHandler,
    error_handler
)
from fleetdeploy.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # Retry
    'RetryStrategy',
    'RetryResult',
    'is_connection_failure',
    'never_retry',
    'CONNECTION_FAILURE_EXIT_CODE',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'RemoteConnectionError',
    'ValidationError',
    'ExecutionError',
    'DetectionError',
    'CleanupError',
    'RollbackError',
    'UnsafeStateError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
