"""Tests for the error classifier."""

import asyncio

import pytest

from rampart.core.classify import classify, describe, extract_status
from rampart.core.errors import (
    UNKNOWN_CLASSIFICATION,
    CircuitOpenError,
    ErrorKind,
    RetryExhaustedError,
    Severity,
)


class HttpError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class Response:
    def __init__(self, status_code):
        self.status_code = status_code


class ResponseError(Exception):
    def __init__(self, status_code):
        super().__init__("request failed")
        self.response = Response(status_code)


class Unprintable(Exception):
    def __str__(self):
        raise RuntimeError("cannot render")


class TestBuiltinTypes:
    """Tests for classification by exception type."""

    def test_connection_error_is_retryable_network(self):
        """ConnectionError family is network/high/retryable."""
        result = classify(ConnectionResetError("peer reset"))
        assert result.kind == ErrorKind.NETWORK
        assert result.severity == Severity.HIGH
        assert result.retryable is True

    @pytest.mark.parametrize("fault", [TimeoutError("slow"), asyncio.TimeoutError()])
    def test_timeouts(self, fault):
        """Timeouts are retryable network faults."""
        result = classify(fault)
        assert result.kind == ErrorKind.NETWORK
        assert result.retryable is True
        assert result.code == "TIMEOUT_ERROR"

    def test_memory_error_is_critical(self):
        """Resource exhaustion is critical and not retryable."""
        result = classify(MemoryError())
        assert result.severity == Severity.CRITICAL
        assert result.retryable is False

    def test_permission_error_is_auth(self):
        """PermissionError maps to auth."""
        assert classify(PermissionError("denied")).kind == ErrorKind.AUTH


class TestStatusCodes:
    """Tests for classification by HTTP status."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        """Timeouts, throttling and 5xx are retryable."""
        result = classify(HttpError("upstream", status))
        assert result.kind == ErrorKind.NETWORK
        assert result.retryable is True
        assert result.code == f"HTTP_{status}"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_statuses(self, status):
        """401/403 are auth faults."""
        assert classify(HttpError("nope", status)).kind == ErrorKind.AUTH

    def test_validation_status(self):
        """422 is a validation fault."""
        result = classify(HttpError("bad", 422))
        assert result.kind == ErrorKind.VALIDATION
        assert result.retryable is False

    def test_response_status(self):
        """Status is read from a nested response object."""
        assert extract_status(ResponseError(503)) == 503
        assert classify(ResponseError(503)).retryable is True

    def test_mapping_status(self):
        """Rejection payloads may be plain mappings."""
        assert extract_status({"status": 429, "message": "slow down"}) == 429

    def test_bool_is_not_status(self):
        """Booleans are ignored as status values."""
        assert extract_status({"status": True}) is None


class TestMessageRules:
    """Tests for message-pattern classification."""

    @pytest.mark.parametrize(
        "message,kind,code",
        [
            ("Payment processing failed for order 7", ErrorKind.BUSINESS, "PAYMENT_FAILED"),
            ("JWT expired at 12:00", ErrorKind.AUTH, "AUTH_ERROR"),
            ("Task failed: model crashed", ErrorKind.PROCESSING, "TASK_FAILED"),
            ("fetch failed: ECONNRESET", ErrorKind.NETWORK, "NETWORK_ERROR"),
            ("Service unavailable", ErrorKind.NETWORK, "NETWORK_ERROR"),
            ("database unavailable", ErrorKind.SYSTEM, "DATABASE_ERROR"),
            ("timeout on database query", ErrorKind.SYSTEM, "DATABASE_ERROR"),
            ("request timed out", ErrorKind.NETWORK, "NETWORK_ERROR"),
            ("Validation error: name missing", ErrorKind.VALIDATION, "INVALID_INPUT"),
            ("File too large", ErrorKind.PROCESSING, "FILE_UPLOAD_FAILED"),
        ],
    )
    def test_patterns(self, message, kind, code):
        """Messages map to the first matching rule."""
        result = classify(RuntimeError(message))
        assert result.kind == kind
        assert result.code == code

    def test_payment_is_critical_and_not_retryable(self):
        """Payments are never retried."""
        result = classify("wechat pay error")
        assert result.severity == Severity.CRITICAL
        assert result.retryable is False

    def test_string_faults(self):
        """Non-exception rejections are classified by text."""
        assert classify("ETIMEDOUT").kind == ErrorKind.NETWORK

    def test_value_error_falls_back_to_validation(self):
        """ValueError without a matching message is validation."""
        assert classify(ValueError("nope")).kind == ErrorKind.VALIDATION


class TestRampartErrors:
    """Tests for rampart's own errors."""

    def test_own_classification(self):
        """RampartError subclasses classify themselves."""
        assert classify(CircuitOpenError("x")).code == "CIRCUIT_OPEN"

    def test_exhausted_unwraps_without_retry(self):
        """Exhausted retries keep the last error's kind but stop retrying."""
        err = RetryExhaustedError(ConnectionError("down"), 3, 3)
        result = classify(err)
        assert result.kind == ErrorKind.NETWORK
        assert result.retryable is False


class TestTotality:
    """The classifier never raises."""

    @pytest.mark.parametrize("fault", [None, 42, object(), {"weird": True}, b"bytes", Unprintable()])
    def test_odd_inputs(self, fault):
        """Any input yields a classification."""
        result = classify(fault)
        assert result.kind in set(ErrorKind)

    def test_unknown_default(self):
        """Unrecognised faults use the unknown classification."""
        assert classify(RuntimeError("something odd")) == UNKNOWN_CLASSIFICATION

    def test_deterministic(self):
        """Same input, same output."""
        fault = RuntimeError("network error")
        assert classify(fault) == classify(fault)

    def test_describe_unprintable(self):
        """describe() falls back to the type name."""
        assert describe(Unprintable()) == "Unprintable"
        assert describe(None) == ""
