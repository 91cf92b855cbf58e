"""Error handling framework for deployment operations."""

import socket
from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, asdict

from paramiko.ssh_exception import SSHException, NoValidConnectionsError, AuthenticationException

from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during deployment."""
    CONFIGURATION = "configuration"
    CONNECTION = "connection"
    VALIDATION = "validation"
    EXECUTION = "execution"
    DETECTION = "detection"
    CLEANUP = "cleanup"
    ROLLBACK = "rollback"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Deployment cannot continue
    ERROR = "error"  # Stack failed but deployment can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    stack_name: Optional[str] = None
    operation: Optional[str] = None
    host: Optional[str] = None
    revision: Optional[str] = None
    exit_code: Optional[int] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for deployment errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"❌ {self.severity.value.upper()}: {self.message}"]

        if self.context.stack_name:
            lines.append(f"   Stack: {self.context.stack_name}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.revision:
            lines.append(f"   Revision: {self.context.revision}")
        if self.context.exit_code is not None:
            lines.append(f"   Exit code: {self.context.exit_code}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Error in configuration file, settings or invocation inputs."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class RemoteConnectionError(DeploymentError):
    """The remote host could not be reached or refused the session."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONNECTION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ValidationError(DeploymentError):
    """Error during pre-flight validation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ExecutionError(DeploymentError):
    """Deploy or rollback could not produce a usable result."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DetectionError(DeploymentError):
    """One or more change-detection methods failed."""

    def __init__(self, message: str, failed_methods: Optional[List[str]] = None, **kwargs):
        kwargs.setdefault('suggestions', [
            'Verify both revisions exist in the remote checkout',
            'Check that the remote repository can reach its origin',
        ])
        super().__init__(
            message,
            category=ErrorCategory.DETECTION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.failed_methods = failed_methods or []


class CleanupError(DeploymentError):
    """A removed stack could not be torn down."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CLEANUP,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class RollbackError(DeploymentError):
    """Rollback could not be attempted or did not complete."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ROLLBACK,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class UnsafeStateError(DeploymentError):
    """A critical stack failed to roll back."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Manual intervention required: inspect the critical stacks on the host',
            'Re-run the rollback once the host is reachable and consistent',
        ])
        super().__init__(
            message,
            category=ErrorCategory.ROLLBACK,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ErrorHandler:
    """Handles and categorizes errors from the SSH transport and other sources."""

    def __init__(self):
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Handle an exception and convert to DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, AuthenticationException):
            return RemoteConnectionError(
                message=f'SSH authentication failed: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Check that the deploy key is loaded in the SSH agent',
                    'Verify the remote user is allowed to log in',
                ]
            )

        if isinstance(error, (NoValidConnectionsError, SSHException, socket.error, TimeoutError)):
            return RemoteConnectionError(
                message=f'Connection error: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Check that the host is reachable from the runner',
                    'Verify the SSH port and firewall rules',
                    'Retry the operation (connection failures are retried automatically)',
                ]
            )

        return DeploymentError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def log_error(self, error: DeploymentError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message)
        elif error.severity == ErrorSeverity.ERROR:
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
