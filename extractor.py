#!/usr/bin/env python3
"""
Article content extraction.

Fetches a web page through the shared HTTP client and reduces it to its main
article using a readability-style algorithm. The algorithm is pluggable: any
callable taking (html, base_url) and returning a ReadableArticle will do. The
default uses readability-lxml for the article HTML and BeautifulSoup for the
plain text.
"""

from asyncio import get_running_loop
from concurrent.futures import Executor
from functools import partial
from typing import Any, Callable, NamedTuple, Optional

from bs4 import BeautifulSoup
from readability import Document

from config import get_logger
from errors import InvalidFeedError
from http_client import HTML_ACCEPT, FetchClient
from models import ExtractedArticle
from security import ValidatedUrl
from telemetry import trace_span
from utils import RetryHelper, redact_url

logger = get_logger("extractor")

EXTRACTION_FAILED = "Failed to extract article content"


class ReadableArticle(NamedTuple):
    """What a readability algorithm hands back for one page."""

    title: str
    html: str
    text: str


HtmlToArticle = Callable[[str, str], ReadableArticle]


def readability_to_article(html: str, base_url: str) -> ReadableArticle:
    """Default extractor: readability-lxml for content, BeautifulSoup for text."""
    document = Document(html, url=base_url)
    content = document.summary(html_partial=True)
    text = BeautifulSoup(content, "html.parser").get_text("\n")
    return ReadableArticle(title=document.title() or "", html=content, text=text)


def clean_text(text: str) -> str:
    """Tidy extracted plain text.

    Lines are trimmed and blank ones dropped; a run of blank lines between
    two text lines is kept as a single paragraph break. Lines are joined
    with newlines, any literal triple newline is reduced to two, and the
    result is trimmed.
    """
    kept = []
    for line in (text or "").split("\n"):
        line = line.strip()
        if line:
            kept.append(line)
        elif kept and kept[-1]:
            kept.append("")
    return "\n".join(kept).replace("\n\n\n", "\n\n").strip()


def estimate_tokens(text: str) -> int:
    """Approximate token usage as ceil(byte_length / 4) using integer arithmetic."""
    return (len(text.encode("utf-8")) + 3) // 4


class ArticleExtractor:
    """Fetch pages and extract their main article content."""

    def __init__(
        self,
        client: FetchClient,
        retry_helper: Optional[RetryHelper] = None,
        html_to_article: HtmlToArticle = readability_to_article,
        executor: Optional[Executor] = None,
    ) -> None:
        self.client = client
        self.retry_helper = retry_helper or RetryHelper()
        self.html_to_article = html_to_article
        self.executor = executor

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_article",
        tracer_name="extractor",
        attr_from_args=lambda self, url: {"article.url": redact_url(str(url))},
    )
    async def fetch_article(self, url: ValidatedUrl) -> ExtractedArticle:
        """Fetch a page from an admitted URL and extract its article.

        Only the download is retried; extraction of a successfully fetched
        page is deterministic and runs once.
        """
        target = str(url)
        html = await self.retry_helper.run(
            lambda attempt: self.client.fetch_text(target, attempt, accept=HTML_ACCEPT)
        )
        # Readability parsing is CPU-bound
        article = await self.run_in_executor(self.extract, html, target)
        logger.info(
            f"Successfully extracted content from {redact_url(target)}: "
            f"{len(article.text)} chars, {article.tokens_used} tokens"
        )
        return article

    def extract(self, html: str, source_url: str) -> ExtractedArticle:
        """Turn fetched HTML into an ExtractedArticle.

        Raises:
            InvalidFeedError: the readability algorithm could not make sense of the page
        """
        try:
            readable = self.html_to_article(html, source_url)
        except Exception as e:
            # Any failure inside the third-party heuristics means "no article"
            logger.error(f"Readability extraction failed for {redact_url(source_url)}: {e.__class__.__name__}")
            raise InvalidFeedError(EXTRACTION_FAILED) from e

        text = clean_text(readable.text)
        return ExtractedArticle(
            title=readable.title,
            url=source_url,
            html=readable.html,
            text=text,
            tokens_used=estimate_tokens(text),
        )
