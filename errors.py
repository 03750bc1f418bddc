#!/usr/bin/env python3
"""Error taxonomy shared across modules.

Every failure in the fetch pipeline is mapped onto exactly one of the
classes below at the point where it happens. Each carries the HTTP status,
the stable caller-facing message, and whether retrying could help.
Kept dependency-free to avoid circular imports.
"""

from typing import Dict, Any, Optional

MAX_DETAIL_LENGTH = 200


def _bound_detail(detail: Optional[str]) -> str:
    """Collapse whitespace and cap the length of a caller-visible detail string."""
    text = " ".join(str(detail or "").split())
    if len(text) > MAX_DETAIL_LENGTH:
        text = text[:MAX_DETAIL_LENGTH - 3] + "..."
    return text


class FetchError(Exception):
    """Base class for classified pipeline failures.

    Attributes:
        kind: Stable name of the error kind (e.g. ``"SsrfBlocked"``).
        status_code: HTTP status rendered to the caller.
        detail: Bounded description of the proximate cause, if the kind has one.
        retryable: Whether the retry orchestrator may try again.
    """

    kind = "Internal"
    status_code = 500
    default_message = "Internal server error"
    retryable = True

    def __init__(self, detail: Optional[str] = None, *, retryable: Optional[bool] = None):
        self.detail = _bound_detail(detail) if detail is not None else None
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return self.default_message

    def to_dict(self) -> Dict[str, Any]:
        """Render the JSON error envelope returned to callers."""
        return {
            "success": False,
            "error": self.message,
            "statusCode": self.status_code,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, retryable={self.retryable})"


class InvalidUrlError(FetchError):
    """Malformed URL or a scheme other than http/https."""

    kind = "InvalidUrl"
    status_code = 400
    default_message = "Invalid URL format"
    retryable = False


class SsrfBlockedError(FetchError):
    """Target host, IP or port is on the admission denylist."""

    kind = "SsrfBlocked"
    status_code = 403
    default_message = "Access to internal resources is not allowed"
    retryable = False


class NotFoundError(FetchError):
    """Upstream answered 404."""

    kind = "NotFound"
    status_code = 404
    default_message = "Feed not found"
    retryable = False


class FetchTimeoutError(FetchError):
    """An attempt (or the whole request) ran out of time."""

    kind = "Timeout"
    status_code = 504
    default_message = "Request timeout"


class InvalidFeedError(FetchError):
    """Fetched content could not be parsed as a feed or extracted as an article."""

    kind = "InvalidFeed"
    status_code = 422
    default_message = "Invalid RSS feed format"

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.default_message}: {self.detail}"
        return self.default_message


class NetworkError(FetchError):
    """Transport-level failure or an unexpected upstream status."""

    kind = "Network"
    status_code = 502
    default_message = "Network error"

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.default_message}: {self.detail}"
        return self.default_message


class InternalError(FetchError):
    """Anything not otherwise classified."""


def classify_exception(error: BaseException) -> FetchError:
    """Map an arbitrary exception onto the taxonomy without leaking its text."""
    if isinstance(error, FetchError):
        return error
    return InternalError()


__all__ = [
    "FetchError",
    "InvalidUrlError",
    "SsrfBlockedError",
    "NotFoundError",
    "FetchTimeoutError",
    "InvalidFeedError",
    "NetworkError",
    "InternalError",
    "classify_exception",
]
