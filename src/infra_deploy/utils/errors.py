"""Error handling framework for deployment operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from infra_deploy.utils.logging import get_logger


class ErrorCategory(Enum):
    """Categories of errors that can occur during deployment."""
    CONFIGURATION = "configuration"
    CONTENTION = "contention"
    EXECUTION = "execution"
    INTEGRITY = "integrity"
    STATE = "state"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Operation cannot continue
    ERROR = "error"  # Module failed but independent modules can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    environment: Optional[str] = None
    module: Optional[str] = None
    operation: Optional[str] = None
    state_key: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for deployment errors."""

    retryable = False

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
        lines = []

        lines.append(f"{self.severity.value.upper()}: {self.message}")

        if self.context.environment:
            lines.append(f"   Environment: {self.context.environment}")
        if self.context.module:
            lines.append(f"   Module: {self.context.module}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'environment': self.context.environment,
                'module': self.context.module,
                'operation': self.context.operation,
                'state_key': self.context.state_key,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


# Configuration errors: fatal, never retried, surfaced before execution.

class ConfigurationError(DeploymentError):
    """Error in configuration file or module declarations."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )


class CycleError(ConfigurationError):
    """Module dependencies form a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle)}",
            suggestions=['Remove one of the dependency declarations in the cycle'],
            **kwargs
        )


class CrossEnvironmentDependencyError(ConfigurationError):
    """A module depends on a module in another environment."""

    def __init__(self, consumer: str, producer: str, **kwargs):
        self.consumer = consumer
        self.producer = producer
        super().__init__(
            f"Module '{consumer}' depends on '{producer}' in a different environment",
            suggestions=['Environments are isolated; duplicate the producer module instead'],
            **kwargs
        )


class UnknownDependencyError(ConfigurationError):
    """A module depends on a module that is not declared."""

    def __init__(self, consumer: str, producer: str, **kwargs):
        self.consumer = consumer
        self.producer = producer
        super().__init__(
            f"Module '{consumer}' depends on '{producer}' which does not exist",
            **kwargs
        )


class UnresolvedDependencyError(ConfigurationError):
    """A dependency output is neither applied nor mockable for the operation."""

    def __init__(self, message: str, consumer: Optional[str] = None,
                 producer: Optional[str] = None, output_key: Optional[str] = None, **kwargs):
        self.consumer = consumer
        self.producer = producer
        self.output_key = output_key
        kwargs.setdefault('severity', ErrorSeverity.ERROR)
        kwargs.setdefault('suggestions', [
            'Apply the producer module first',
            'Declare mock_outputs for read-only operations such as plan',
        ])
        super().__init__(message, **kwargs)


class StateNamespaceError(ConfigurationError):
    """Two environments would share state keys."""
    pass


class ConfigValidationError(ConfigurationError):
    """Configuration file failed schema validation."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None, **kwargs):
        self.errors = errors or []
        super().__init__(message, **kwargs)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


# Contention errors: transient, retried with backoff.

class ContentionError(DeploymentError):
    """Transient contention on a shared state key."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONTENTION,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class VersionConflictError(ContentionError):
    """Conditional write failed because the stored version did not match."""

    def __init__(self, key: str, expected: Optional[int], actual: Optional[int], **kwargs):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on '{key}': expected {expected}, found {actual}",
            **kwargs
        )


class LockHeldError(ContentionError):
    """Lock is held by another holder."""

    def __init__(self, key: str, holder: str, remaining_ttl: float, **kwargs):
        self.key = key
        self.holder = holder
        self.remaining_ttl = remaining_ttl
        super().__init__(
            f"Lock on '{key}' is held by '{holder}' ({remaining_ttl:.1f}s remaining)",
            **kwargs
        )


class LockTimeoutError(DeploymentError):
    """Lock could not be acquired within the attempt cap."""

    def __init__(self, key: str, attempts: int, **kwargs):
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Could not acquire lock on '{key}' after {attempts} attempts",
            category=ErrorCategory.CONTENTION,
            severity=ErrorSeverity.ERROR,
            suggestions=[
                'Wait for the current holder to finish',
                'Run `infra-deploy unlock` if the holder is known to be gone',
            ],
            **kwargs
        )


# Execution errors: recorded per module.

class ProvisioningError(DeploymentError):
    """The provisioning engine reported a failure."""

    def __init__(self, message: str, diagnostics: Optional[str] = None, **kwargs):
        self.diagnostics = diagnostics
        super().__init__(
            message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


# Integrity errors: fatal for the affected operation, need an operator.

class IntegrityError(DeploymentError):
    """State can no longer be verified."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', ['Inspect the state manually before re-running'])
        super().__init__(
            message,
            category=ErrorCategory.INTEGRITY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class LockLostError(IntegrityError):
    """Lock expired or was taken over while an operation held it."""

    def __init__(self, key: str, **kwargs):
        self.key = key
        super().__init__(f"Lock on '{key}' was lost during the operation", **kwargs)


class SnapshotMissingError(IntegrityError):
    """Rollback target snapshot does not exist."""

    def __init__(self, snapshot_ref: str, **kwargs):
        self.snapshot_ref = snapshot_ref
        super().__init__(f"Snapshot not found: {snapshot_ref}", **kwargs)


class MockedOutputForbiddenError(IntegrityError):
    """Mocked outputs were about to reach a destructive operation."""
    pass


class OperationCancelledError(DeploymentError):
    """The operation-wide cancellation signal was raised."""

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class StateError(DeploymentError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class RollbackTargetError(StateError):
    """No usable deployment record to roll back to."""
    pass


class CredentialError(DeploymentError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PermissionError(DeploymentError):
    """Error related to AWS permissions."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PERMISSION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class NetworkError(DeploymentError):
    """Network-related error."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ErrorHandler:
    """Converts backend exceptions into the deployment error taxonomy."""

    THROTTLING_CODES = {
        'ThrottlingException',
        'ProvisionedThroughputExceededException',
        'RequestLimitExceeded',
        'SlowDown',
        'TransactionConflictException',
    }

    PERMISSION_CODES = {
        'AccessDenied',
        'AccessDeniedException',
        'UnauthorizedOperation',
    }

    CREDENTIAL_CODES = {
        'InvalidClientTokenId',
        'SignatureDoesNotMatch',
        'ExpiredToken',
        'ExpiredTokenException',
        'UnrecognizedClientException',
    }

    def __init__(self):
        """Initialize error handler."""
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

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message=f'AWS credentials unavailable: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile',
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError)):
            return NetworkError(
                message=f'Network error: {str(error)}',
                context=context,
                cause=error,
                suggestions=['Check connectivity to the state backend']
            )

        return DeploymentError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> DeploymentError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized DeploymentError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))

        if error_code == 'ConditionalCheckFailedException':
            return VersionConflictError(
                key=context.state_key or 'unknown',
                expected=None,
                actual=None,
                context=context,
                cause=error
            )

        if error_code in self.THROTTLING_CODES:
            return ContentionError(
                f"Backend throttled the request ({error_code}): {error_message}",
                context=context,
                cause=error
            )

        if error_code in self.PERMISSION_CODES:
            return PermissionError(
                f"Access denied to state backend: {error_message}",
                context=context,
                cause=error,
                suggestions=['Check the IAM policy attached to the deploying role']
            )

        if error_code in self.CREDENTIAL_CODES:
            return CredentialError(
                f"AWS credentials are invalid or expired: {error_message}",
                context=context,
                cause=error
            )

        return StateError(
            f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error
        )

    def log_error(self, error: DeploymentError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
