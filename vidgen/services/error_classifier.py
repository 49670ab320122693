"""
Error classification for provider failures: retry or give up.

Provider clients raise ProviderError subclasses carrying a structured
``kind`` derived from the HTTP status. Those decide directly. Anything else
(opaque upstream text, library exceptions) falls back to two ordered pattern
lists, terminal first. Errors matching neither use the configured default,
which is "retryable" out of the box (PROVIDER_UNKNOWN_ERRORS_RETRYABLE).
"""

from __future__ import annotations

import re
from typing import Optional

import requests


class ErrorKind:
    """Structured failure categories reported by provider clients."""
    QUOTA = "quota"
    AUTH = "auth"
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


TERMINAL_KINDS = frozenset({ErrorKind.QUOTA, ErrorKind.AUTH, ErrorKind.INVALID_INPUT, ErrorKind.NOT_FOUND})
RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.SERVER, ErrorKind.NETWORK, ErrorKind.TIMEOUT})


class ProviderError(Exception):
    """
    Failure talking to the generation provider.

    ``retryable`` is None for unclassified errors; the subclasses pin it.
    """
    retryable: Optional[bool] = None

    def __init__(self, message: str, status_code: Optional[int] = None, kind: str = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.kind = kind


class RetryableProviderError(ProviderError):
    retryable = True


class TerminalProviderError(ProviderError):
    retryable = False


# Checked first: a match means retrying cannot help.
NON_RETRYABLE_PATTERNS = [
    re.compile(r"额度已用尽"),
    re.compile(r"RemainQuota\s*=\s*0", re.IGNORECASE),
    re.compile(r"quota", re.IGNORECASE),
    re.compile(r"unauthori[sz]ed", re.IGNORECASE),
    re.compile(r"invalid.*api.*key", re.IGNORECASE),
    re.compile(r"forbidden", re.IGNORECASE),
    re.compile(r"\bnot[\s_-]*found\b", re.IGNORECASE),
    re.compile(r"invalid.*prompt", re.IGNORECASE),
    re.compile(r"content.*policy", re.IGNORECASE),
]

RETRYABLE_PATTERNS = [
    re.compile(r"\b50[234]\b"),
    re.compile(r"time[d\s-]*out", re.IGNORECASE),
    re.compile(r"ECONNREFUSED|ECONNRESET|ETIMEDOUT|ENOTFOUND"),
    re.compile(r"connection (refused|reset|aborted)", re.IGNORECASE),
    re.compile(r"name or service not known", re.IGNORECASE),
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"temporar(il)?y", re.IGNORECASE),
]

QUOTA_PATTERN = re.compile(r"额度|quota", re.IGNORECASE)


def error_from_status(status_code: int, message: str) -> ProviderError:
    """Map an HTTP error response to a classified ProviderError."""
    if status_code in (401, 403):
        return TerminalProviderError(message, status_code, ErrorKind.AUTH)
    if QUOTA_PATTERN.search(message or ""):
        return TerminalProviderError(message, status_code, ErrorKind.QUOTA)
    if status_code == 404:
        return TerminalProviderError(message, status_code, ErrorKind.NOT_FOUND)
    if status_code == 429:
        return RetryableProviderError(message, status_code, ErrorKind.RATE_LIMITED)
    if status_code in (408, 425):
        return RetryableProviderError(message, status_code, ErrorKind.TIMEOUT)
    if 400 <= status_code < 500:
        return TerminalProviderError(message, status_code, ErrorKind.INVALID_INPUT)
    if status_code >= 500:
        return RetryableProviderError(message, status_code, ErrorKind.SERVER)
    return ProviderError(message, status_code)


def is_quota_error(error: BaseException) -> bool:
    """True when the error says the credential's quota is used up."""
    if getattr(error, "kind", None) == ErrorKind.QUOTA:
        return True
    return bool(QUOTA_PATTERN.search(str(error)))


def is_retryable(error: BaseException, default_retryable: bool = True) -> bool:
    """
    Decide whether a failed attempt is worth another delivery.

    Order: explicit ``retryable`` flag, structured ``kind``, transport
    exception type, terminal patterns, retryable patterns, default.
    """
    flag = getattr(error, "retryable", None)
    if flag is not None:
        return bool(flag)

    kind = getattr(error, "kind", None)
    if kind in TERMINAL_KINDS:
        return False
    if kind in RETRYABLE_KINDS:
        return True

    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return True

    text = str(error)
    if any(p.search(text) for p in NON_RETRYABLE_PATTERNS):
        return False
    if any(p.search(text) for p in RETRYABLE_PATTERNS):
        return True
    return default_retryable
