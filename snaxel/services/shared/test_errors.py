"""Tests for shared error handling module."""

import pytest
from unittest.mock import patch, MagicMock

from snaxel.services.shared import errors
from snaxel.services.shared.errors import (
    InfrastructureError,
    InvalidOptionsError,
    InvalidQueryError,
    NoSourcesError,
    RequestError,
    SnaxelError,
    UnknownSourceError,
    error_kind,
    format_user_error,
    map_to_http_status,
    report_error,
    to_error_payload,
)


class TestCustomExceptions:
    """Test custom exception classes"""

    def test_snaxel_error_with_user_message(self):
        exc = SnaxelError("Internal error", user_message="Service unavailable")

        assert str(exc) == "Internal error"
        assert exc.user_message == "Service unavailable"

    def test_snaxel_error_defaults_user_message(self):
        exc = SnaxelError("Internal error")
        assert exc.user_message == "Internal error"

    def test_request_errors_have_default_messages(self):
        assert "required" in str(InvalidQueryError()).lower()
        assert "source" in str(NoSourcesError()).lower()

    def test_request_errors_are_bad_requests(self):
        for exc in (InvalidQueryError(), NoSourcesError(), UnknownSourceError("x"), InvalidOptionsError("x")):
            assert isinstance(exc, RequestError)
            assert exc.kind == "bad_request"

    def test_to_dict_includes_context(self):
        exc = InfrastructureError("pool down", request_id="req-1", metadata={"workers": 0})
        data = exc.to_dict()

        assert data["error_type"] == "InfrastructureError"
        assert data["kind"] == "internal"
        assert data["request_id"] == "req-1"
        assert data["metadata"] == {"workers": 0}


class TestStatusMapping:
    """Test HTTP status and error kind mapping"""

    def test_request_errors_map_to_400(self):
        assert map_to_http_status(InvalidQueryError()) == 400
        assert map_to_http_status(NoSourcesError()) == 400
        assert map_to_http_status(InvalidOptionsError("limit")) == 400

    def test_infrastructure_error_maps_to_500(self):
        assert map_to_http_status(InfrastructureError("x")) == 500

    def test_value_error_is_bad_request(self):
        assert error_kind(ValueError("bad")) == "bad_request"

    def test_timeout_maps_to_504(self):
        assert map_to_http_status(TimeoutError()) == 504

    def test_unknown_exception_is_internal(self):
        assert error_kind(RuntimeError("x")) == "internal"
        assert map_to_http_status(RuntimeError("x")) == 500


class TestUserFriendlyMessages:
    """Test user-facing error message generation"""

    def test_request_error_message_passes_through(self):
        assert format_user_error(InvalidQueryError()) == "Query parameter is required"

    def test_infrastructure_error_hides_details_by_default(self):
        exc = InfrastructureError("executor shut down")
        assert "executor" not in format_user_error(exc)
        assert "executor" in format_user_error(exc, include_details=True)

    def test_generic_error_hides_details(self):
        message = format_user_error(RuntimeError("secret stack"))
        assert "secret" not in message

    def test_error_payload_is_tagged(self):
        payload = to_error_payload(NoSourcesError())

        assert payload["success"] is False
        assert payload["error"]["kind"] == "bad_request"
        assert payload["error"]["message"]


class TestReportError:
    """Test Sentry reporting"""

    def test_logs_when_sentry_disabled(self):
        with patch.object(errors, "init_sentry", return_value=False), \
             patch.object(errors, "logger") as mock_logger:
            report_error(InfrastructureError("x"))

        mock_logger.error.assert_called_once()

    def test_captures_with_request_tag(self):
        scope = MagicMock()
        mock_sdk = MagicMock()
        mock_sdk.new_scope.return_value.__enter__.return_value = scope

        with patch.object(errors, "init_sentry", return_value=True), \
             patch.object(errors, "sentry_sdk", mock_sdk):
            exc = InfrastructureError("x", request_id="req-9")
            report_error(exc)

        scope.set_tag.assert_called_with("request_id", "req-9")
        mock_sdk.capture_exception.assert_called_once_with(exc)

    def test_init_sentry_without_dsn_is_disabled(self, monkeypatch):
        monkeypatch.delenv("SENTRY_DSN", raising=False)
        monkeypatch.setattr(errors, "_sentry_initialized", False)

        with patch.object(errors.sentry_sdk, "init") as mock_init:
            assert errors.init_sentry() is False
        mock_init.assert_not_called()


if __name__ == "__main__":
    pytest.main([__file__])
