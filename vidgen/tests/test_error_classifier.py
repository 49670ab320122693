"""
Tests for retry/terminal classification of provider errors.

Run locally:
    python -m pytest vidgen/tests/test_error_classifier.py -v
"""

from __future__ import annotations

import pytest
import requests

from vidgen.services.error_classifier import (
    ErrorKind,
    ProviderError,
    RetryableProviderError,
    TerminalProviderError,
    error_from_status,
    is_quota_error,
    is_retryable,
)


class TestMessagePatterns:
    @pytest.mark.parametrize("message", [
        "额度已用尽",
        "RemainQuota = 0",
        "You exceeded your current quota",
        "401 Unauthorized",
        "Invalid API key provided",
        "403 Forbidden",
        "Model not found",
        "Invalid prompt: too long",
        "Request rejected by content policy",
    ])
    def test_terminal(self, message):
        assert is_retryable(Exception(message)) is False

    @pytest.mark.parametrize("message", [
        "Request failed with status code 503",
        "502 Bad Gateway",
        "Read timed out",
        "connect ECONNREFUSED 10.0.0.1:443",
        "getaddrinfo ENOTFOUND api.example.com",
        "Connection reset by peer",
        "network is unreachable",
        "Service temporarily unavailable",
    ])
    def test_retryable(self, message):
        assert is_retryable(Exception(message)) is True

    def test_terminal_patterns_win(self):
        assert is_retryable(Exception("quota exceeded after timeout")) is False

    def test_unknown_uses_default(self):
        error = Exception("the llama is sleeping")
        assert is_retryable(error) is True
        assert is_retryable(error, default_retryable=False) is False


class TestStructuredErrors:
    def test_explicit_flag_wins_over_text(self):
        assert is_retryable(RetryableProviderError("quota")) is True
        assert is_retryable(TerminalProviderError("timed out")) is False

    def test_kind_decides_for_plain_provider_error(self):
        assert is_retryable(ProviderError("x", kind=ErrorKind.AUTH)) is False
        assert is_retryable(ProviderError("x", kind=ErrorKind.NETWORK)) is True

    def test_requests_transport_errors_are_retryable(self):
        assert is_retryable(requests.Timeout("slow")) is True
        assert is_retryable(requests.ConnectionError("refused")) is True


class TestErrorFromStatus:
    @pytest.mark.parametrize("status, kind, retryable", [
        (401, ErrorKind.AUTH, False),
        (403, ErrorKind.AUTH, False),
        (404, ErrorKind.NOT_FOUND, False),
        (400, ErrorKind.INVALID_INPUT, False),
        (422, ErrorKind.INVALID_INPUT, False),
        (429, ErrorKind.RATE_LIMITED, True),
        (408, ErrorKind.TIMEOUT, True),
        (500, ErrorKind.SERVER, True),
        (503, ErrorKind.SERVER, True),
    ])
    def test_mapping(self, status, kind, retryable):
        error = error_from_status(status, "upstream said no")
        assert error.kind == kind
        assert error.status_code == status
        assert is_retryable(error) is retryable

    def test_quota_text_overrides_rate_limit(self):
        error = error_from_status(429, "RemainQuota = 0")
        assert error.kind == ErrorKind.QUOTA
        assert is_retryable(error) is False


class TestIsQuotaError:
    def test_kind(self):
        assert is_quota_error(ProviderError("limit", kind=ErrorKind.QUOTA)) is True

    def test_text(self):
        assert is_quota_error(Exception("额度已用尽")) is True
        assert is_quota_error(Exception("Quota exceeded")) is True

    def test_other(self):
        assert is_quota_error(Exception("HTTP 500")) is False
