"""
Logging configuration for the Profile Session client.

Provides JSON and detailed human-readable formatters, an audit logger for
session lifecycle events and helpers for logging structured errors.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from session_shared.exceptions import ProfileSessionError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Session events that are written to the audit log."""
    AUTHENTICATION = "authentication"
    TOKEN_REFRESH = "token_refresh"
    SESSION_EXPIRY = "session_expiry"
    SIGN_OUT = "sign_out"
    RECONCILIATION = "reconciliation"
    PROFILE_MUTATION = "profile_mutation"
    ERROR_EVENT = "error_event"


# LogRecord attributes that never go into the "extra" block of JSON output
_RESERVED_RECORD_FIELDS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'taskName', 'exc_info',
    'exc_text', 'stack_info', 'error_info', 'audit_info', 'session_context',
])


def mask_token(token: Optional[str], visible: int = 6) -> str:
    """Shorten a bearer token for log output."""
    if not token:
        return "<none>"
    if len(token) <= visible * 2:
        return "*" * len(token)
    return f"{token[:visible]}...{token[-visible:]}"


def _error_fields(error: ProfileSessionError) -> Dict[str, Any]:
    return {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'context': error.context,
        'recovery_actions': [action.value for action in error.recovery_actions],
        'user_message': error.user_message,
    }


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'pid': os.getpid(),
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info),
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, ProfileSessionError):
            log_entry['error'] = _error_fields(error)

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if hasattr(record, 'session_context'):
            log_entry['session'] = record.session_context

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable formatter that appends structured error and audit details.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-32s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, ProfileSessionError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Records session lifecycle events with structured audit information.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        instance_id: Optional[str] = None,
        credential_kind: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            instance_id: Session controller instance that performed the action
            credential_kind: Variant of the credential involved
            result: Result of the operation (success, failure, ...)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'instance_id': instance_id,
            'credential_kind': credential_kind,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        instance_id: str,
        credential_kind: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None
    ):
        """Log sign-in results."""
        self.log_event(
            event_type=AuditEventType.AUTHENTICATION,
            message=f"Sign-in {'successful' if success else 'failed'} for instance {instance_id}",
            instance_id=instance_id,
            credential_kind=credential_kind,
            result="success" if success else "failure",
            additional_context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_token_refresh(
        self,
        instance_id: str,
        credential_kind: str,
        success: bool,
        urgency: Optional[str] = None,
        error_message: Optional[str] = None
    ):
        """Log token refresh attempts."""
        context = {'urgency': urgency, 'error_message': error_message}
        self.log_event(
            event_type=AuditEventType.TOKEN_REFRESH,
            message=f"Token refresh {'succeeded' if success else 'failed'} for instance {instance_id}",
            instance_id=instance_id,
            credential_kind=credential_kind,
            result="success" if success else "failure",
            additional_context={k: v for k, v in context.items() if v is not None}
        )

    def log_session_end(self, instance_id: str, reason: str, expired: bool):
        """Log session expiry and sign-out."""
        self.log_event(
            event_type=AuditEventType.SESSION_EXPIRY if expired else AuditEventType.SIGN_OUT,
            message=f"Session {'expired' if expired else 'signed out'} for instance {instance_id}: {reason}",
            instance_id=instance_id,
            result="expired" if expired else "signed_out",
            additional_context={'reason': reason}
        )

    def log_reconciliation(
        self,
        instance_id: str,
        action: str,
        slot_key: Optional[str],
        result: str = "success",
        choice: Optional[str] = None
    ):
        """Log reconciliation outcomes."""
        context = {'action': action, 'slot_key': slot_key, 'choice': choice}
        self.log_event(
            event_type=AuditEventType.RECONCILIATION,
            message=f"Reconciliation {action} {result} for instance {instance_id}",
            instance_id=instance_id,
            result=result,
            additional_context={k: v for k, v in context.items() if v is not None}
        )

    def log_profile_mutation(self, instance_id: str, operation: str, slot_key: str, result: str = "success"):
        """Log profile slot changes."""
        self.log_event(
            event_type=AuditEventType.PROFILE_MUTATION,
            message=f"Profile {operation} on {slot_key} {result}",
            instance_id=instance_id,
            result=result,
            additional_context={'operation': operation, 'slot_key': slot_key}
        )

    def log_error(self, error: ProfileSessionError, instance_id: Optional[str] = None):
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            instance_id=instance_id,
            result="error",
            additional_context=_error_fields(error)
        )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for the client process.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to log to stderr
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    loggers = {
        'root': root_logger,
        'session': logging.getLogger('session_client'),
    }

    if enable_audit:
        audit_logger = logging.getLogger('audit')
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        if audit_file:
            Path(audit_file).parent.mkdir(parents=True, exist_ok=True)
            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            audit_handler.setFormatter(StructuredFormatter())
            audit_logger.addHandler(audit_handler)
            audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: ProfileSessionError,
    instance_id: Optional[str] = None,
    level: int = logging.ERROR
):
    """
    Log a structured error with its code, context and recovery actions.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        instance_id: Optional session controller instance for context
        level: Log level, ERROR unless the caller absorbs the failure
    """
    extra = {
        'error_info': error,
        'instance_id': instance_id,
    }
    logger.log(level, error.message, extra=extra)
