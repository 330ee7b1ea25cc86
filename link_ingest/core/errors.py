from __future__ import annotations

from typing import Literal

ErrorKind = Literal["transient", "rate_limited", "content", "policy"]


class IngestionError(Exception):
    """Base error raised while fetching or parsing a source page."""

    kind: ErrorKind = "transient"
    retryable: bool = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(IngestionError):
    """Raised on timeouts, connection failures and 5xx responses."""


class RateLimitedError(TransientFetchError):
    """Raised when the source platform answers 429."""

    kind: ErrorKind = "rate_limited"


class ContentError(IngestionError):
    """Raised when the fetched content cannot be parsed or validated.

    Re-fetching identical content will not succeed differently, so the job
    fails without consuming further attempts.
    """

    kind: ErrorKind = "content"
    retryable = False


class PolicyViolationError(IngestionError):
    """Raised for off-allowlist hosts, redirects, non-HTTPS URLs or oversized bodies."""

    kind: ErrorKind = "policy"
    retryable = False


def classify_exception(exc: BaseException) -> tuple[ErrorKind, bool, str]:
    if isinstance(exc, IngestionError):
        return exc.kind, exc.retryable, str(exc) or exc.__class__.__name__
    message = str(exc) or exc.__class__.__name__
    return "transient", True, message
