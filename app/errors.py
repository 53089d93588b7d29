# app/errors.py
from __future__ import annotations

from typing import Optional


class EmptyPoolError(RuntimeError):
    """Raised when a credential pool is built with no credentials."""


class ProviderError(RuntimeError):
    """A provider call failed in a way that another credential will not fix."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RetryableProviderError(ProviderError):
    """Request rejected, server error or timeout: try the next credential."""


class RateLimitedError(RetryableProviderError):
    """HTTP 429: back off briefly, then try the next credential."""


class AllCredentialsExhaustedError(ProviderError):
    """Every credential failed with a retryable error for every allowed cycle."""

    def __init__(self, provider: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"{provider}: all credentials exhausted after {attempts} attempts")
        self.provider = provider
        self.attempts = attempts
        self.last_error = last_error


def classify_http_status(status: int, detail: str = "") -> ProviderError:
    """Map a provider HTTP status to the error the retry executor understands."""
    msg = f"provider returned HTTP {status}" + (f": {detail}" if detail else "")
    if status == 429:
        return RateLimitedError(msg, status=status)
    if status in (400, 403) or status >= 500:
        return RetryableProviderError(msg, status=status)
    return ProviderError(msg, status=status)
