"""Utility modules for logging, error handling, and retries."""

from infra_deploy.utils.retry import RetryStrategy, with_retry
from infra_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    CycleError,
    CrossEnvironmentDependencyError,
    UnknownDependencyError,
    UnresolvedDependencyError,
    StateNamespaceError,
    ConfigValidationError,
    ContentionError,
    VersionConflictError,
    LockHeldError,
    LockTimeoutError,
    ProvisioningError,
    IntegrityError,
    LockLostError,
    SnapshotMissingError,
    MockedOutputForbiddenError,
    OperationCancelledError,
    StateError,
    RollbackTargetError,
    CredentialError,
    PermissionError,
    NetworkError,
    ErrorHandler,
    error_handler
)
from infra_deploy.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # Retry
    'RetryStrategy',
    'with_retry',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'CycleError',
    'CrossEnvironmentDependencyError',
    'UnknownDependencyError',
    'UnresolvedDependencyError',
    'StateNamespaceError',
    'ConfigValidationError',
    'ContentionError',
    'VersionConflictError',
    'LockHeldError',
    'LockTimeoutError',
    'ProvisioningError',
    'IntegrityError',
    'LockLostError',
    'SnapshotMissingError',
    'MockedOutputForbiddenError',
    'OperationCancelledError',
    'StateError',
    'RollbackTargetError',
    'CredentialError',
    'PermissionError',
    'NetworkError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
