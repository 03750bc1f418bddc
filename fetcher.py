#!/usr/bin/env python3
"""
RSS/Atom feed fetcher and normalizer.

This module fetches a feed through the shared HTTP client under the retry
schedule, parses it with feedparser, and collapses RSS and Atom entries into
the canonical NormalizedFeed/NormalizedItem structures.
"""

from asyncio import get_running_loop
from concurrent.futures import Executor
from datetime import datetime, timezone
from functools import partial
from io import BytesIO
from time import struct_time
from typing import Any, Optional

import feedparser

from config import get_logger
from errors import InvalidFeedError
from http_client import FEED_ACCEPT, FetchClient
from models import NormalizedFeed, NormalizedItem
from security import ValidatedUrl
from telemetry import init_telemetry, trace_span
from utils import RetryHelper, redact_url

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("fetch-proxy")

RFC3339_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_timestamp(value: Optional[struct_time]) -> Optional[str]:
    """Render a feedparser UTC time tuple as RFC3339 with second precision."""
    if not value:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc).strftime(RFC3339_UTC_FORMAT)
    except (TypeError, ValueError, OverflowError) as e:
        logger.debug(f"Unable to format entry timestamp {value!r}: {e}")
        return None


class FeedFetcher:
    """Fetch feeds and normalize them into the canonical schema."""

    def __init__(
        self,
        client: FetchClient,
        retry_helper: Optional[RetryHelper] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.client = client
        self.retry_helper = retry_helper or RetryHelper()
        self.executor = executor

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": redact_url(str(url))},
    )
    async def fetch_feed(self, url: ValidatedUrl) -> NormalizedFeed:
        """Fetch and normalize a feed from an admitted URL.

        Download and parse form one attempt, so a truncated or garbled
        response is fetched again on the next attempt.
        """
        target = str(url)

        async def attempt_fetch(attempt: int) -> NormalizedFeed:
            content = await self.client.fetch_bytes(target, attempt, accept=FEED_ACCEPT)
            return await self.run_in_executor(self.normalize_feed, content, target)

        feed = await self.retry_helper.run(attempt_fetch)
        logger.info(f"Fetched feed {redact_url(target)} ({len(feed.items)} items)")
        return feed

    def normalize_feed(self, content: bytes, source: str = "<feed>") -> NormalizedFeed:
        """Parse raw feed bytes and map them onto NormalizedFeed.

        Raises:
            InvalidFeedError: empty body, or a document that is not RSS/Atom
        """
        if not content:
            raise InvalidFeedError("Empty response from RSS feed")

        # Wrapped in a stream so feedparser never treats the body as a URL or file path
        parsed = feedparser.parse(BytesIO(content), sanitize_html=True, resolve_relative_uris=True)

        if not parsed.get("version"):
            reason = "unrecognized document format"
            if parsed.get("bozo") and parsed.get("bozo_exception") is not None:
                reason = parsed.bozo_exception.__class__.__name__
            raise InvalidFeedError(f"Failed to parse RSS/Atom feed: {reason}")

        if parsed.get("bozo") and parsed.get("bozo_exception") is not None:
            logger.warning(f"Feed parsing warning for {redact_url(source)}: {parsed.bozo_exception}")

        logger.debug(f"Feed {redact_url(source)} parsed as {parsed.version} format")

        entries = parsed.get("entries") or []
        if not entries:
            logger.warning(f"RSS feed has no entries: {redact_url(source)}")

        channel = parsed.get("feed") or {}
        return NormalizedFeed(
            title=channel.get("title"),
            description=channel.get("subtitle"),
            items=tuple(self.normalize_entry(entry) for entry in entries),
        )

    def normalize_entry(self, entry) -> NormalizedItem:
        """Map one feedparser entry onto NormalizedItem."""
        content_snippet = self._summary(entry)
        content = self._first_content(entry)
        if content is None:
            content = content_snippet

        author = self._first_author(entry)

        published = entry.get("published_parsed") or entry.get("updated_parsed")

        return NormalizedItem(
            title=entry.get("title"),
            link=self._first_link(entry),
            content_snippet=content_snippet,
            content=content,
            creator=author,
            author=author,
            pub_date=format_timestamp(published),
        )

    def _first_link(self, entry) -> Optional[str]:
        """Return the first href in the entry's link list, else its plain link."""
        for link in entry.get("links") or []:
            href = link.get("href")
            if href:
                return href
        return entry.get("link") or None

    def _first_content(self, entry) -> Optional[str]:
        """Return the body of the first content block, if any."""
        for block in entry.get("content") or []:
            value = block.get("value")
            if value is not None:
                return value
        return None

    def _summary(self, entry) -> Optional[str]:
        """Return the entry's own summary.

        feedparser copies the content body into `summary` when an entry has no
        summary of its own; only a real summary comes with `summary_detail`.
        """
        if "summary_detail" not in entry:
            return None
        return entry.get("summary")

    def _first_author(self, entry) -> Optional[str]:
        """Return the name of the first listed author, if it has one."""
        authors = entry.get("authors") or []
        if not authors:
            return None
        return authors[0].get("name") or None
