"""Error taxonomy for ledger, lifecycle and cleanup operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors."""
    CONFIGURATION = "configuration"
    PROVIDER = "provider"
    STATE = "state"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    NETWORK = "network"
    TIMEOUT = "timeout"
    DELETION = "deletion"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Operation cannot continue
    ERROR = "error"  # Resource failed but the run can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"


class ErrorPolicy(Enum):
    """What to do when a best-effort provider call fails."""
    FAIL_FAST = "fail_fast"
    WARN_AND_CONTINUE = "warn_and_continue"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


def client_error_code(error: Exception) -> str:
    """Return the AWS error code of a ClientError, or '' for anything else."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code', '')
    return ''


class LabkeeperError(Exception):
    """Base exception for all labkeeper errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

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
        """Convert error to a user-facing message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_type:
            lines.append(f"   Kind: {self.context.resource_type}")
        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
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
        """Convert error to dictionary for logging/serialization."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(LabkeeperError):
    """Invalid configuration file or settings."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return self.message

        lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            lines.append(f"  - {location}: {error.get('msg', 'Unknown error')}")
        return "\n".join(lines)


class ProviderRequestFailed(LabkeeperError):
    """A provider API call was rejected or errored; no ledger entry was written."""

    def __init__(self, kind: str, cause: Exception, resource_id: Optional[str] = None,
                 operation: Optional[str] = None, **kwargs):
        code = client_error_code(cause)
        detail = f" ({code})" if code else ""
        super().__init__(
            f"Provider request failed for {kind}{detail}: {cause}",
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            context=ErrorContext(resource_id=resource_id, resource_type=kind, operation=operation),
            cause=cause,
            **kwargs
        )
        self.kind = kind


class RemoteUnavailable(LabkeeperError):
    """The remote state store could not be reached or refused the request."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Check network connectivity and AWS credentials',
            'Verify the state bucket exists (run: labkeeper init)',
        ])
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateCorrupted(LabkeeperError):
    """The remote state object exists but is not a valid ledger document."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ConcurrentModification(LabkeeperError):
    """A conditional write lost a race with another writer."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Retry the whole operation; the ledger was modified by another process',
        ])
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class CredentialPersistFailure(LabkeeperError):
    """The key pair exists remotely but its private key could not be saved locally."""

    def __init__(self, name: str, path: str, cause: Optional[Exception] = None, **kwargs):
        super().__init__(
            f"Key pair '{name}' was created but its private key could not be written to {path}",
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.ERROR,
            context=ErrorContext(resource_id=name, resource_type='keypair', operation='create'),
            cause=cause,
            suggestions=[
                'The remote key pair is tracked in the ledger; delete it with: labkeeper cleanup',
                f'Check that the directory of {path} is writable',
            ],
            **kwargs
        )
        self.name = name
        self.path = path


class ProvisioningError(LabkeeperError):
    """A resource entered an unexpected state while provisioning."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ProvisioningTimeout(LabkeeperError):
    """A wait-for-state operation exceeded its bound."""

    def __init__(self, resource_id: str, target_state: str, timeout: float,
                 last_state: Optional[str] = None, **kwargs):
        observed = f" (last observed: {last_state})" if last_state else ""
        super().__init__(
            f"Timed out after {timeout:.0f}s waiting for {resource_id} to become {target_state}{observed}",
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.ERROR,
            context=ErrorContext(resource_id=resource_id, resource_type='ec2', operation=f'wait_{target_state}'),
            **kwargs
        )
        self.resource_id = resource_id
        self.target_state = target_state
        self.timeout = timeout
        self.last_state = last_state


class DeletionFailed(LabkeeperError):
    """A resource could not be deleted; its ledger entry stays for a later run."""

    def __init__(self, kind: str, resource_id: str, retryable: bool,
                 cause: Optional[Exception] = None, reason: Optional[str] = None, **kwargs):
        text = reason or (str(cause) if cause else 'unknown error')
        super().__init__(
            f"Failed to delete {kind} {resource_id}: {text}",
            category=ErrorCategory.DELETION,
            severity=ErrorSeverity.ERROR,
            context=ErrorContext(resource_id=resource_id, resource_type=kind, operation='delete'),
            cause=cause,
            **kwargs
        )
        self.kind = kind
        self.resource_id = resource_id
        self.retryable = retryable


class ErrorHandler:
    """Turns AWS and library exceptions into LabkeeperError with suggestions."""

    AWS_ERROR_MAPPING = {
        'InvalidClientTokenId': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS credentials are invalid or expired',
            'suggestions': [
                'Check that your AWS credentials are correctly configured',
                'Verify credentials using: aws sts get-caller-identity',
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-authenticate with your identity provider',
            ]
        },
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have the required permissions for this operation',
            ]
        },
        'UnauthorizedOperation': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation',
                'Verify you are operating in the correct AWS region',
            ]
        },
        'InvalidGroup.Duplicate': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Security group already exists',
            'suggestions': [
                'Use a different security group name',
                'Delete the existing group if it is no longer needed',
            ]
        },
        'InvalidKeyPair.Duplicate': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Key pair already exists',
            'suggestions': ['Use a different key pair name'],
        },
        'BucketAlreadyExists': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Bucket name is already taken',
            'suggestions': ['Bucket names are global; choose another name'],
        },
        'DependencyViolation': {
            'category': ErrorCategory.DELETION,
            'message': 'Resource is still in use',
            'suggestions': [
                'Wait for dependent instances to terminate and retry',
                'Re-run: labkeeper cleanup',
            ]
        },
        'BucketNotEmpty': {
            'category': ErrorCategory.DELETION,
            'message': 'Bucket still contains objects',
            'suggestions': ['Re-run: labkeeper cleanup'],
        },
        'RequestTimeout': {
            'category': ErrorCategory.NETWORK,
            'message': 'Request timed out',
            'suggestions': [
                'Check your network connectivity',
                'Retry the operation',
            ]
        },
    }

    def __init__(self):
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> LabkeeperError:
        """Convert any exception to a LabkeeperError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            LabkeeperError with categorization and suggestions
        """
        if isinstance(error, LabkeeperError):
            return error

        context = context or ErrorContext()

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return LabkeeperError(
                message='No usable AWS credentials found',
                category=ErrorCategory.CREDENTIAL,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables',
                    'Specify a profile with --profile',
                ]
            )

        return LabkeeperError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check the log file for more details']
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> LabkeeperError:
        error_code = client_error_code(error) or 'Unknown'
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = getattr(error, 'operation_name', None)

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            return LabkeeperError(
                message=f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                severity=ErrorSeverity.ERROR,
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return LabkeeperError(
            message=f"AWS Error ({error_code}): {error_message}",
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=[
                'Check AWS documentation for this error code',
                f'AWS Request ID: {context.request_id}',
            ]
        )

    def log_error(self, error: LabkeeperError) -> None:
        """Log an error at a level matching its severity."""
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")
