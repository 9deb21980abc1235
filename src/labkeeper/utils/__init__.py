"""Utility modules for logging, errors, retries and AWS client management."""

from labkeeper.utils.aws_client import AWSClientManager, AWSCredentials
from labkeeper.utils.retry import BackoffMode, RetryStrategy
from labkeeper.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorPolicy,
    ErrorContext,
    LabkeeperError,
    ConfigurationError,
    ProviderRequestFailed,
    RemoteUnavailable,
    StateCorrupted,
    ConcurrentModification,
    CredentialPersistFailure,
    ProvisioningError,
    ProvisioningTimeout,
    DeletionFailed,
    ErrorHandler,
    client_error_code,
)
from labkeeper.utils.logging import LogContext, get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry
    'BackoffMode',
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorPolicy',
    'ErrorContext',
    'LabkeeperError',
    'ConfigurationError',
    'ProviderRequestFailed',
    'RemoteUnavailable',
    'StateCorrupted',
    'ConcurrentModification',
    'CredentialPersistFailure',
    'ProvisioningError',
    'ProvisioningTimeout',
    'DeletionFailed',
    'ErrorHandler',
    'client_error_code',

    # Logging
    'LogContext',
    'get_logger',
    'setup_logging',
]
