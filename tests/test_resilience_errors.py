"""Tests for postqueue.resilience.errors and postqueue.resilience.error_monitor."""

import pytest

from postqueue.resilience.error_monitor import ErrorMonitor
from postqueue.resilience.errors import (
    ApiError,
    ErrorSeverity,
    ErrorType,
    RETRYABLE_ERROR_TYPES,
    classify_error,
    create_error,
    http_status_for,
    normalize_error,
    user_friendly_message,
)


# =============================================================================
# classify_error
# =============================================================================


class TestClassifyError:
    @pytest.mark.parametrize(
        "message, expected",
        [
            ("401 Unauthorized: bad token", ErrorType.AUTHENTICATION),
            ("Authentication failed", ErrorType.AUTHENTICATION),
            ("UNAUTHORIZED", ErrorType.AUTHENTICATION),
            ("429 Too Many Requests", ErrorType.RATE_LIMIT),
            ("Rate limit exceeded", ErrorType.RATE_LIMIT),
            ("Request timeout: read timed out", ErrorType.TIMEOUT),
            ("operation did time out", ErrorType.TIMEOUT),
            ("Network connection error: refused", ErrorType.NETWORK_ERROR),
            ("500 Internal Server Error", ErrorType.SERVER_ERROR),
            ("503 Service Unavailable", ErrorType.SERVICE_UNAVAILABLE),
            ("Invalid response from X API: no id", ErrorType.INVALID_RESPONSE),
            ("malformed JSON", ErrorType.INVALID_RESPONSE),
            ("Circuit breaker is OPEN", ErrorType.UNKNOWN),
            ("something odd happened", ErrorType.UNKNOWN),
        ],
    )
    def test_substring_rules(self, message, expected):
        assert classify_error(message) is expected

    def test_rules_are_ordered(self):
        """The first matching rule wins."""
        assert classify_error("500 upstream timeout") is ErrorType.TIMEOUT
        assert classify_error("401 after connection reset") is ErrorType.AUTHENTICATION


# =============================================================================
# ApiError construction
# =============================================================================


class TestCreateError:
    def test_severity_and_retryable_derived(self):
        error = create_error(ErrorType.SERVER_ERROR, "500", "x-api")
        assert error.severity is ErrorSeverity.HIGH
        assert error.retryable is True

    def test_retryable_override(self):
        error = create_error(ErrorType.RATE_LIMIT, "429", "x-api", retryable=True)
        assert error.retryable is True

    def test_default_retryable_set(self):
        assert RETRYABLE_ERROR_TYPES == {
            ErrorType.NETWORK_ERROR,
            ErrorType.TIMEOUT,
            ErrorType.SERVER_ERROR,
            ErrorType.SERVICE_UNAVAILABLE,
        }
        assert create_error(ErrorType.AUTHENTICATION, "401", "x-api").retryable is False

    def test_to_dict(self):
        error = create_error(ErrorType.TIMEOUT, "timeout", "x-api", code=408, endpoint="/tweets", user_id="u")
        data = error.to_dict()
        assert data["type"] == "timeout"
        assert data["severity"] == "medium"
        assert data["code"] == 408
        assert data["endpoint"] == "/tweets"
        assert data["user_id"] == "u"

    def test_is_an_exception_with_message(self):
        error = create_error(ErrorType.UNKNOWN, "odd", "x-api")
        assert isinstance(error, Exception)
        assert str(error) == "odd"


class TestNormalizeError:
    def test_classifies_raw_exception(self):
        error = normalize_error(RuntimeError("503 Service Unavailable"), "x-api", endpoint="/tweets", user_id="u-1")
        assert error.type is ErrorType.SERVICE_UNAVAILABLE
        assert error.retryable is True
        assert error.service == "x-api"
        assert error.endpoint == "/tweets"
        assert error.user_id == "u-1"

    def test_api_error_passes_through(self):
        original = create_error(ErrorType.AUTHENTICATION, "401", "other-service")
        assert normalize_error(original, "x-api") is original

    def test_empty_message_uses_exception_name(self):
        error = normalize_error(ConnectionError(), "x-api")
        assert error.message == "ConnectionError"
        assert error.type is ErrorType.NETWORK_ERROR

    def test_custom_retryable_types(self):
        error = normalize_error(
            RuntimeError("429 Too Many Requests"),
            "x-api",
            retryable_types=RETRYABLE_ERROR_TYPES | {ErrorType.RATE_LIMIT},
        )
        assert error.retryable is True


class TestCallerHelpers:
    @pytest.mark.parametrize(
        "error_type, status",
        [
            (ErrorType.AUTHENTICATION, 401),
            (ErrorType.RATE_LIMIT, 429),
            (ErrorType.SERVER_ERROR, 503),
            (ErrorType.SERVICE_UNAVAILABLE, 503),
            (ErrorType.NETWORK_ERROR, 502),
            (ErrorType.TIMEOUT, 502),
            (ErrorType.INVALID_RESPONSE, 500),
            (ErrorType.UNKNOWN, 500),
        ],
    )
    def test_http_status(self, error_type, status):
        assert http_status_for(create_error(error_type, "m", "x-api")) == status

    def test_user_friendly_message(self):
        assert "Rate limit" in user_friendly_message(create_error(ErrorType.RATE_LIMIT, "429", "x-api"))
        assert user_friendly_message(create_error(ErrorType.UNKNOWN, "?", "x-api")) == (
            "An unexpected error occurred. Please try again."
        )


# =============================================================================
# ErrorMonitor
# =============================================================================


class TestErrorMonitor:
    def test_counts_per_service_and_type(self):
        monitor = ErrorMonitor()
        monitor.record_error(create_error(ErrorType.TIMEOUT, "t", "x-api"))
        monitor.record_error(create_error(ErrorType.TIMEOUT, "t", "x-api"))
        monitor.record_error(create_error(ErrorType.TIMEOUT, "t", "db"))
        assert monitor.get_error_stats() == {"x-api-timeout": 2, "db-timeout": 1}

    def test_alert_at_severity_threshold(self):
        """HIGH severity alerts from the fifth occurrence on."""
        monitor = ErrorMonitor()
        error = create_error(ErrorType.SERVER_ERROR, "500", "x-api")
        for _ in range(4):
            monitor.record_error(error)
        assert monitor.alerts_sent == 0
        assert monitor.record_error(error) == 5
        assert monitor.alerts_sent == 1

    def test_custom_thresholds(self):
        monitor = ErrorMonitor(thresholds={ErrorSeverity.LOW: 1})
        monitor.record_error(create_error(ErrorType.INVALID_RESPONSE, "bad", "x-api"))
        assert monitor.alerts_sent == 1

    def test_reset_counts(self):
        monitor = ErrorMonitor()
        monitor.record_error(create_error(ErrorType.TIMEOUT, "t", "x-api"))
        monitor.reset_counts()
        assert monitor.get_error_stats() == {}

    def test_api_error_type(self):
        assert issubclass(ApiError, Exception)
