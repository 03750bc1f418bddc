#!/usr/bin/env python3
"""
Shared outbound HTTP client.

A single FetchClient is constructed when the application starts and passed
to every component that performs fetches. It wraps one pooled aiohttp
ClientSession and turns transport outcomes into classified errors, so the
retry orchestrator and the HTTP boundary never see raw aiohttp exceptions.

Redirects are followed here rather than by aiohttp so that every hop is
admitted through the same URL gate as the caller's original URL.
"""

import asyncio
import socket
from typing import Awaitable, Callable, Optional, TypeVar
from urllib.parse import urljoin

from aiohttp import (
    ClientConnectorError,
    ClientError,
    ClientPayloadError,
    ClientResponse,
    ClientSession,
    ClientTimeout,
    TCPConnector,
)

from config import config, get_logger
from errors import FetchError, FetchTimeoutError, NetworkError, NotFoundError
from security import validate_url
from telemetry import trace_span
from utils import redact_url, timeout_for

logger = get_logger("http_client")

T = TypeVar("T")

HTTP_OK_MIN = 200
HTTP_OK_MAX = 299
HTTP_NOT_FOUND = 404
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

FEED_ACCEPT = "application/rss+xml, application/xml, text/xml, */*"
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class FetchClient:
    """Pooled HTTP client with per-attempt timeouts and gated redirects."""

    def __init__(
        self,
        session: ClientSession,
        max_redirects: int = 5,
        url_validator: Callable[[str], object] = validate_url,
    ) -> None:
        self.session = session
        self.max_redirects = max_redirects
        self.url_validator = url_validator

    @classmethod
    def create(cls, settings=config) -> "FetchClient":
        """Build the process-wide client from configuration.

        Must be called from inside a running event loop.
        """
        connector = TCPConnector(
            limit_per_host=settings.POOL_MAX_PER_HOST,
            keepalive_timeout=settings.POOL_IDLE_TIMEOUT,
        )
        session = ClientSession(
            connector=connector,
            timeout=ClientTimeout(total=None, connect=settings.CONNECT_TIMEOUT),
            headers={"User-Agent": settings.USER_AGENT},
            auto_decompress=True,
        )
        logger.info(
            f"HTTP client ready (pool={settings.POOL_MAX_PER_HOST}/host, idle={settings.POOL_IDLE_TIMEOUT}s, "
            f"connect={settings.CONNECT_TIMEOUT}s, redirects<={settings.MAX_REDIRECTS})"
        )
        return cls(session, max_redirects=settings.MAX_REDIRECTS)

    async def close(self) -> None:
        """Close the underlying session and its pooled connections."""
        if not self.session.closed:
            await self.session.close()
            logger.info("HTTP client closed")

    async def __aenter__(self) -> "FetchClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span(
        "http_fetch_bytes",
        tracer_name="http_client",
        attr_from_args=lambda self, url, attempt, accept=FEED_ACCEPT: {
            "http.url": redact_url(url),
            "fetch.attempt": attempt,
        },
    )
    async def fetch_bytes(self, url: str, attempt: int, accept: str = FEED_ACCEPT) -> bytes:
        """Fetch a URL and return the (decompressed) body bytes."""
        return await self._fetch(url, attempt, accept, lambda response: response.read())

    @trace_span(
        "http_fetch_text",
        tracer_name="http_client",
        attr_from_args=lambda self, url, attempt, accept=HTML_ACCEPT: {
            "http.url": redact_url(url),
            "fetch.attempt": attempt,
        },
    )
    async def fetch_text(self, url: str, attempt: int, accept: str = HTML_ACCEPT) -> str:
        """Fetch a URL and decode the body using the response charset."""
        return await self._fetch(url, attempt, accept, lambda response: response.text(errors="replace"))

    async def _fetch(
        self,
        url: str,
        attempt: int,
        accept: str,
        reader: Callable[[ClientResponse], Awaitable[T]],
    ) -> T:
        """Run one attempt under its timeout and classify whatever goes wrong."""
        timeout = timeout_for(attempt)
        logger.debug(f"Fetching {redact_url(url)} (attempt {attempt + 1}, timeout {timeout}s)")
        try:
            return await asyncio.wait_for(self._follow(url, accept, reader), timeout=timeout)
        except FetchError:
            raise
        except asyncio.TimeoutError:
            raise FetchTimeoutError()
        except ClientConnectorError as e:
            if isinstance(e.os_error, socket.gaierror):
                # Name resolution failures will not fix themselves within the retry window
                raise NetworkError("DNS lookup failed (ENOTFOUND)", retryable=False)
            raise NetworkError("Connection failed")
        except ClientPayloadError:
            raise NetworkError("Failed to read response body")
        except ClientError as e:
            raise NetworkError(e.__class__.__name__)

    async def _follow(
        self,
        url: str,
        accept: str,
        reader: Callable[[ClientResponse], Awaitable[T]],
    ) -> T:
        """Issue the request, re-admitting each redirect target before following it."""
        current = url
        for hop in range(self.max_redirects + 1):
            async with self.session.get(
                current,
                headers={"Accept": accept},
                allow_redirects=False,
            ) as response:
                location = response.headers.get("Location")
                if response.status in REDIRECT_STATUSES and location:
                    if hop >= self.max_redirects:
                        raise NetworkError("Too many redirects")
                    target = urljoin(str(response.url), location)
                    self.url_validator(target)
                    logger.debug(f"Following redirect {response.status} to {redact_url(target)}")
                    current = target
                    continue

                if response.status == HTTP_NOT_FOUND:
                    raise NotFoundError()
                if not HTTP_OK_MIN <= response.status <= HTTP_OK_MAX:
                    raise NetworkError(f"HTTP {response.status}")

                return await reader(response)

        raise NetworkError("Too many redirects")
