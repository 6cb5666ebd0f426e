#!/usr/bin/env python3
"""
Unit tests for the exception hierarchy and logging helpers.
"""

import json
import logging

import pytest

from session_shared.exceptions import (
    ConfigurationError, CredentialInvalidError, ErrorCode, ErrorSeverity,
    GatewayError, NetworkError, ProfileSessionError, PromptNotDisplayedError,
    ReconciliationError, RecoveryAction, RefreshError, StorageError, handle_exception
)
from session_shared.logging_config import (
    AuditEventType, AuditLogger, DetailedFormatter, StructuredFormatter,
    log_structured_error, mask_token
)


class TestExceptionHierarchy:
    """Test structured exceptions."""

    def test_base_error_to_dict(self):
        """Test serialization of a structured error."""
        cause = ValueError("bad value")
        error = ProfileSessionError(
            "Something failed",
            error_code=ErrorCode.STORAGE_CORRUPT_VALUE,
            context={'key': 'auth.credential'},
            recovery_actions=[RecoveryAction.RETRY],
            cause=cause
        )

        data = error.to_dict()['error']
        assert data['code'] == "STORAGE_4002"
        assert data['message'] == "Something failed"
        assert data['user_message'] == "Something failed"
        assert data['context']['key'] == 'auth.credential'
        assert data['recovery_actions'] == ['retry']
        assert data['cause'] == {'type': 'ValueError', 'message': 'bad value'}

    def test_credential_invalid_defaults(self):
        """Test 401 errors default to sign-in-again recovery."""
        error = CredentialInvalidError()

        assert error.error_code == ErrorCode.AUTH_INVALID_CREDENTIAL
        assert error.severity == ErrorSeverity.HIGH
        assert RecoveryAction.SIGN_IN_AGAIN in error.recovery_actions
        assert error.user_message == "Session expired, please sign in again"

    def test_gateway_error_records_status(self):
        """Test the HTTP status lands in the context."""
        error = GatewayError("boom", status_code=503)

        assert error.status_code == 503
        assert error.context['status_code'] == 503
        assert RecoveryAction.USE_CACHED_DATA in error.recovery_actions

    def test_reconciliation_error_records_slot(self):
        """Test the slot key lands in the context."""
        error = ReconciliationError("upload failed", slot_key="bodyF")
        assert error.context['slot_key'] == "bodyF"

    def test_prompt_not_displayed_code(self):
        """Test the silent prompt error code."""
        assert PromptNotDisplayedError().error_code == ErrorCode.AUTH_PROMPT_NOT_DISPLAYED

    def test_configuration_error_records_key(self):
        """Test the config key lands in the context."""
        error = ConfigurationError("bad", config_key="refresh.cooldown")
        assert error.context['config_key'] == "refresh.cooldown"

    @pytest.mark.parametrize("exception, expected_class, expected_code", [
        (ConnectionError("down"), NetworkError, ErrorCode.NETWORK_CONNECTION_FAILED),
        (TimeoutError("slow"), NetworkError, ErrorCode.NETWORK_TIMEOUT),
        (PermissionError("denied"), StorageError, ErrorCode.STORAGE_UNAVAILABLE),
        (ValueError("bad"), StorageError, ErrorCode.STORAGE_CORRUPT_VALUE),
        (RuntimeError("other"), ProfileSessionError, ErrorCode.INTERNAL_UNEXPECTED_ERROR),
    ])
    def test_handle_exception_mapping(self, exception, expected_class, expected_code):
        """Test conversion of generic exceptions."""
        error = handle_exception(exception)

        assert type(error) is expected_class
        assert error.error_code == expected_code
        assert error.cause is exception

    def test_handle_exception_passes_structured_errors(self):
        """Test structured errors are returned unchanged."""
        error = RefreshError("nope")
        assert handle_exception(error) is error


class TestLoggingHelpers:
    """Test formatters, token masking and the audit logger."""

    def test_mask_token(self):
        """Test tokens are shortened for logs."""
        assert mask_token(None) == "<none>"
        assert mask_token("short") == "*****"
        assert mask_token("abcdefghijklmnopqrstuvwxyz") == "abcdef...uvwxyz"

    def test_structured_formatter_includes_error(self):
        """Test JSON output carries the structured error block."""
        record = logging.LogRecord("test", logging.WARNING, __file__, 1, "failed", None, None)
        record.error_info = RefreshError("refresh failed")
        record.instance_id = "session-1"

        entry = json.loads(StructuredFormatter().format(record))

        assert entry['level'] == "WARNING"
        assert entry['message'] == "failed"
        assert entry['error']['code'] == ErrorCode.AUTH_REFRESH_FAILED.value
        assert entry['extra'] == {'instance_id': 'session-1'}

    def test_detailed_formatter_includes_recovery_actions(self):
        """Test the detailed format appends error details."""
        record = logging.LogRecord("test", logging.ERROR, __file__, 1, "failed", None, None)
        record.error_info = NetworkError("down")

        output = DetailedFormatter().format(record)

        assert "Error Code: NETWORK_2001" in output
        assert "Recovery Actions: use_cached_data, retry" in output

    def test_log_structured_error(self, caplog):
        """Test structured errors are logged at the requested level."""
        logger = logging.getLogger("test.structured")
        with caplog.at_level(logging.WARNING, logger="test.structured"):
            log_structured_error(logger, GatewayError("bad gateway", status_code=502),
                                 instance_id="session-2", level=logging.WARNING)

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.error_info.status_code == 502
        assert record.instance_id == "session-2"

    def test_audit_logger_token_refresh(self, caplog):
        """Test refresh audit records carry urgency and result."""
        audit = AuditLogger("test.audit")
        with caplog.at_level(logging.INFO, logger="test.audit"):
            audit.log_token_refresh("session-1", "access_token", success=False,
                                    urgency="critical", error_message="rejected")

        info = caplog.records[-1].audit_info
        assert info['event_type'] == AuditEventType.TOKEN_REFRESH.value
        assert info['result'] == "failure"
        assert info['credential_kind'] == "access_token"
        assert info['context'] == {'urgency': 'critical', 'error_message': 'rejected'}

    def test_audit_logger_session_end(self, caplog):
        """Test expiry and sign-out use distinct event types."""
        audit = AuditLogger("test.audit")
        with caplog.at_level(logging.INFO, logger="test.audit"):
            audit.log_session_end("session-1", "401", expired=True)
            audit.log_session_end("session-1", "user", expired=False)

        expired, signed_out = [r.audit_info for r in caplog.records[-2:]]
        assert expired['event_type'] == AuditEventType.SESSION_EXPIRY.value
        assert signed_out['event_type'] == AuditEventType.SIGN_OUT.value
