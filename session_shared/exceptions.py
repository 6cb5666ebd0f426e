"""
Exception hierarchy for the Profile Session client.

Every error raised by the session subsystem carries an error code, a severity,
context information and recovery suggestions so that callers (and the log
output) can treat failures consistently.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Profile Session client."""

    # Credential errors (1000-1099)
    AUTH_INVALID_CREDENTIAL = "AUTH_1001"
    AUTH_CREDENTIAL_EXPIRED = "AUTH_1002"
    AUTH_SIGN_IN_FAILED = "AUTH_1003"
    AUTH_SIGN_IN_CANCELLED = "AUTH_1004"
    AUTH_PROMPT_NOT_DISPLAYED = "AUTH_1005"
    AUTH_REFRESH_FAILED = "AUTH_1006"
    AUTH_REVOKE_FAILED = "AUTH_1007"

    # Network and communication errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SSL_ERROR = "NETWORK_2004"

    # Gateway errors (3000-3099)
    GATEWAY_SERVER_ERROR = "GATEWAY_3001"
    GATEWAY_INVALID_RESPONSE = "GATEWAY_3002"
    GATEWAY_REQUEST_REJECTED = "GATEWAY_3003"

    # Storage errors (4000-4099)
    STORAGE_UNAVAILABLE = "STORAGE_4001"
    STORAGE_CORRUPT_VALUE = "STORAGE_4002"
    STORAGE_WRITE_FAILED = "STORAGE_4003"
    STORAGE_KEY_UNAVAILABLE = "STORAGE_4004"

    # Reconciliation errors (5000-5099)
    RECONCILIATION_UPLOAD_FAILED = "RECONCILE_5001"
    RECONCILIATION_DOWNLOAD_FAILED = "RECONCILE_5002"
    RECONCILIATION_CANCELLED = "RECONCILE_5003"
    RECONCILIATION_PROMPT_PENDING = "RECONCILE_5004"

    # Session errors (6000-6099)
    SESSION_NOT_AUTHENTICATED = "SESSION_6001"
    SESSION_CLOSED = "SESSION_6002"
    SESSION_INVALID_STATE = "SESSION_6003"

    # Configuration errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8003"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_NEXT_SESSION = "retry_next_session"
    USE_CACHED_DATA = "use_cached_data"
    REFRESH_TOKEN = "refresh_token"
    SIGN_IN_AGAIN = "sign_in_again"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class ProfileSessionError(Exception):
    """
    Base exception class for all Profile Session errors.

    Provides structured error information including error codes, context,
    and recovery suggestions.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class StorageError(ProfileSessionError):
    """Durable key-value storage errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message=message, error_code=error_code, **kwargs)


class NetworkError(ProfileSessionError):
    """Transport failure while talking to the gateway or identity provider."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USE_CACHED_DATA, RecoveryAction.RETRY])
        super().__init__(message=message, error_code=error_code, **kwargs)


class GatewayError(ProfileSessionError):
    """The profile gateway answered with an unusable response."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.GATEWAY_SERVER_ERROR,
                 status_code: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {}) or {}
        if status_code is not None:
            context['status_code'] = status_code
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USE_CACHED_DATA, RecoveryAction.RETRY_NEXT_SESSION])
        super().__init__(message=message, error_code=error_code, context=context, **kwargs)
        self.status_code = status_code


class CredentialInvalidError(ProfileSessionError):
    """The gateway rejected the credential (HTTP 401). Always fatal to the session."""

    def __init__(self, message: str = "Credential rejected by gateway",
                 error_code: ErrorCode = ErrorCode.AUTH_INVALID_CREDENTIAL, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.REFRESH_TOKEN, RecoveryAction.SIGN_IN_AGAIN])
        kwargs.setdefault('user_message', "Session expired, please sign in again")
        super().__init__(message=message, error_code=error_code, **kwargs)


class RefreshError(ProfileSessionError):
    """Refresh-token exchange or silent re-authentication failed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_REFRESH_FAILED, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.SIGN_IN_AGAIN])
        kwargs.setdefault('user_message', "Session expired, please sign in again")
        super().__init__(message=message, error_code=error_code, **kwargs)


class SignInError(ProfileSessionError):
    """Interactive sign-in was cancelled or failed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_SIGN_IN_FAILED, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        kwargs.setdefault('user_message', "Sign-in failed")
        super().__init__(message=message, error_code=error_code, **kwargs)


class PromptNotDisplayedError(SignInError):
    """The identity provider could not display its (silent) prompt."""

    def __init__(self, message: str = "Identity provider prompt could not be displayed", **kwargs):
        super().__init__(message=message, error_code=ErrorCode.AUTH_PROMPT_NOT_DISPLAYED, **kwargs)


class ReconciliationError(ProfileSessionError):
    """Upload or download during reconciliation failed; no state was changed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.RECONCILIATION_UPLOAD_FAILED,
                 slot_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {}) or {}
        if slot_key:
            context['slot_key'] = slot_key
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY_NEXT_SESSION])
        super().__init__(message=message, error_code=error_code, context=context, **kwargs)


class SessionError(ProfileSessionError):
    """Operation not allowed in the current session state."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.SESSION_INVALID_STATE, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        super().__init__(message=message, error_code=error_code, **kwargs)


class ConfigurationError(ProfileSessionError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {}) or {}
        if config_key:
            context['config_key'] = config_key
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message=message, error_code=error_code, context=context, **kwargs)


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> ProfileSessionError:
    """
    Convert a generic exception to a structured ProfileSessionError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured ProfileSessionError
    """
    if isinstance(exception, ProfileSessionError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        PermissionError: (ErrorCode.STORAGE_UNAVAILABLE, StorageError),
        FileNotFoundError: (ErrorCode.CONFIG_FILE_NOT_FOUND, ConfigurationError),
        ValueError: (ErrorCode.STORAGE_CORRUPT_VALUE, StorageError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, ProfileSessionError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
