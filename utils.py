#!/usr/bin/env python3
"""
Utility classes and functions for the fetch proxy.

This module holds the retry orchestrator shared by the feed and article
paths, its fixed timeout/backoff schedule, and small URL helpers.
"""

from asyncio import sleep
from random import randint
from typing import Awaitable, Callable, Optional, TypeVar
from urllib.parse import urlsplit, urlunsplit

from config import config, get_logger

logger = get_logger("utils")

T = TypeVar("T")

MAX_ATTEMPTS = 4
# Per-attempt timeouts in seconds, indexed by attempt (clamped to the last value)
ATTEMPT_TIMEOUTS = (15, 30, 45, 60)
# Base backoff delays in milliseconds between attempts (clamped to the last value)
BASE_DELAYS_MS = (1000, 2000, 4000)
JITTER_MS = 200

# Legacy markers: an error whose message contains one of these is permanent
PERMANENT_ERROR_MARKERS = (
    "not found",
    "404",
    "enotfound",
    "invalid url",
    "unsupported protocol",
)


def timeout_for(attempt: int) -> int:
    """Return the timeout in seconds for a given attempt (0-based)."""
    index = min(max(attempt, 0), len(ATTEMPT_TIMEOUTS) - 1)
    return ATTEMPT_TIMEOUTS[index]


def base_delay_ms(attempt: int) -> int:
    """Return the un-jittered backoff delay after a failed attempt."""
    index = min(max(attempt, 0), len(BASE_DELAYS_MS) - 1)
    return BASE_DELAYS_MS[index]


def jittered_delay_ms(base_ms: int, jitter_ms: int = JITTER_MS) -> int:
    """Perturb a delay by a uniform random offset in [-jitter_ms, +jitter_ms], floored at 0."""
    return max(0, base_ms + randint(-jitter_ms, jitter_ms))


def is_permanent_message(message: str) -> bool:
    """Check a rendered error message for the markers of a permanent failure."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in PERMANENT_ERROR_MARKERS)


def is_permanent_error(error: BaseException) -> bool:
    """Decide whether retrying could help.

    Classified errors carry an explicit ``retryable`` flag; anything else
    falls back to scanning its message.
    """
    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return not retryable
    return is_permanent_message(str(error))


class RetryHelper:
    """Run an operation under the fixed attempt schedule.

    The operation is called with the current attempt index so it can pick a
    matching timeout via timeout_for(). Attempts are strictly sequential and
    the helper holds no state between run() calls, so one instance may be
    shared by concurrent requests.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        verbose: Optional[bool] = None,
        sleeper: Callable[[float], Awaitable[None]] = sleep,
    ):
        """Initialize the retry helper.

        Args:
            max_attempts: Total number of attempts, including the first
            verbose: Log every failed attempt, not just the last one
                     (defaults to development mode)
            sleeper: Coroutine used to wait between attempts
        """
        self.max_attempts = max_attempts
        self.verbose = config.IS_DEVELOPMENT if verbose is None else verbose
        self.sleeper = sleeper

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the jittered delay in seconds after a failed attempt.

        Args:
            attempt: The attempt that just failed (0-based)
        """
        return jittered_delay_ms(base_delay_ms(attempt)) / 1000.0

    async def sleep_for_attempt(self, attempt: int) -> None:
        """Sleep for the backoff delay following the given failed attempt."""
        delay = self.calculate_delay(attempt)
        logger.debug(f"Waiting {delay:.3f}s before retry attempt {attempt + 2}")
        if delay > 0:
            await self.sleeper(delay)

    async def run(self, operation: Callable[[int], Awaitable[T]]) -> T:
        """Execute operation until it succeeds, fails permanently, or attempts run out.

        Returns:
            The operation's result.

        Raises:
            The last error raised by the operation.
        """
        for attempt in range(self.max_attempts):
            try:
                return await operation(attempt)
            except Exception as e:
                is_last = attempt == self.max_attempts - 1
                if self.verbose or is_last:
                    logger.error(f"Retry attempt {attempt + 1}/{self.max_attempts}: {e}")

                if is_permanent_error(e):
                    logger.warning(f"Permanent error detected, skipping retries: {e}")
                    raise

                if is_last:
                    raise

                await self.sleep_for_attempt(attempt)

        # Only reachable when max_attempts < 1
        raise ValueError("RetryHelper requires at least one attempt")


def is_absolute_url(url: str) -> bool:
    """Cheap syntactic check that a string looks like an absolute URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the string has a scheme and a host and no embedded whitespace
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url or any(ch.isspace() for ch in url):
        return False

    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError for malformed ports
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.hostname)


def redact_url(url: str) -> str:
    """Strip userinfo from a URL so it can be logged safely."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable url>"
    if "@" not in parts.netloc:
        return url
    netloc = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
