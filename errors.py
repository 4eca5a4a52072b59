#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Fetch failures
carry an ``ErrorKind`` so callers branch on a closed set of kinds instead of
inspecting transport exceptions.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failed thread page fetch."""

    TRANSIENT = "transient"    # network errors, timeouts, 5xx and other non-2xx responses
    FORBIDDEN = "forbidden"    # login-walled content (HTTP 403)
    CONTENT = "content"        # page fetched and parsed but no posts found
    PERMANENT = "permanent"    # thread gone (404/410 still returned after every retry)

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


class FetchError(Exception):
    """Raised when a thread page cannot be fetched or yields no posts.

    Attributes:
        kind: The ``ErrorKind`` of the failure.
        url: Page URL that failed.
        status: HTTP status code when one was received.
    """

    def __init__(self, kind: ErrorKind, url: str, message: str = "", status: Optional[int] = None):
        self.kind = kind
        self.url = url
        self.status = status
        super().__init__(message or f"{kind.value} error fetching {url}")

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class StorageError(Exception):
    """Raised when a subscription document cannot be read, written or listed."""


class NotFoundError(StorageError):
    """Raised when a subscription document does not exist."""


class EmailError(Exception):
    """Raised when a notification email could not be delivered."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SubscriptionError(Exception):
    """Raised for invalid subscribe/unsubscribe requests (bad email, bad URL, limits)."""


class CycleCancelledError(Exception):
    """Raised when a poll cycle is stopped between thread groups."""


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: fetch errors decide for themselves, email 4xx (except 429) and missing documents do not retry."""
    if isinstance(exc, FetchError):
        return exc.retryable
    if isinstance(exc, NotFoundError):
        return False
    if isinstance(exc, EmailError) and exc.status is not None:
        # A 4xx other than 429 fails the same way on every attempt
        return not (400 <= exc.status < 500) or exc.status == 429
    return True


__all__ = [
    "ErrorKind",
    "FetchError",
    "StorageError",
    "NotFoundError",
    "EmailError",
    "SubscriptionError",
    "CycleCancelledError",
    "is_retryable",
]
