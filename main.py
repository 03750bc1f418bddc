#!/usr/bin/env python3
"""
Fetch proxy entry point.

Runs the HTTP service, or performs a single feed/article fetch from the
command line and prints the same JSON envelope the service would return.

Usage:
    python main.py serve [--host HOST] [--port PORT]
    python main.py fetch-rss URL
    python main.py fetch-content URL
"""

import argparse
import asyncio
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict

from api import run_server
from config import config, get_logger
from errors import InvalidUrlError, classify_exception
from extractor import ArticleExtractor
from fetcher import FeedFetcher
from http_client import FetchClient
from models import success_envelope
from security import validate_url
from telemetry import init_telemetry
from utils import RetryHelper, is_absolute_url

# Module-specific logger
logger = get_logger("main")
init_telemetry("fetch-proxy")


async def fetch_once(mode: str, url: str) -> Dict[str, Any]:
    """Run one pipeline against a URL and return the response envelope."""
    try:
        if not is_absolute_url(url):
            raise InvalidUrlError()
        target = validate_url(url)
        with ThreadPoolExecutor(max_workers=1) as executor:
            async with FetchClient.create(config) as client:
                helper = RetryHelper()
                if mode == "fetch-rss":
                    result = await FeedFetcher(client, helper, executor).fetch_feed(target)
                else:
                    result = await ArticleExtractor(client, helper, executor=executor).fetch_article(target)
        return success_envelope(result)
    except Exception as e:
        error = classify_exception(e)
        if error is not e:
            logger.exception(f"Unexpected error during {mode}")
        logger.error(f"{mode} failed: {error.kind} ({error.status_code}) {error.message}")
        return error.to_dict()


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description="RSS feed and article fetch proxy")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", type=str, help=f"Listen address (default {config.HOST})")
    serve.add_argument("--port", type=int, help=f"Listen port (default {config.PORT})")

    for mode, description in (
        ("fetch-rss", "Fetch and normalize one RSS/Atom feed"),
        ("fetch-content", "Fetch one web page and extract its article"),
    ):
        sub = subparsers.add_parser(mode, help=description)
        sub.add_argument("url", help="Absolute http(s) URL")

    args = parser.parse_args()

    try:
        if args.mode == "serve":
            run_server(host=args.host, port=args.port)
            return

        envelope = asyncio.run(fetch_once(args.mode, args.url))
        print(json.dumps(envelope, indent=2, ensure_ascii=False))
        sys.exit(0 if envelope.get("success") else 1)

    except KeyboardInterrupt:
        logger.info("Fetch proxy shutting down")


if __name__ == "__main__":
    main()
