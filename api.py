#!/usr/bin/env python3
"""
HTTP front end for the fetch proxy.

Exposes two POST endpoints, /api/fetch-rss and /api/fetch-content, that take
a JSON body of the form {"url": "..."} and answer with either a success
envelope or an error envelope. The shared FetchClient and the worker thread
pool live for the lifetime of the application and are created in a cleanup
context, unless a client is injected (tests pass fakes this way).
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional
from urllib.parse import urlsplit

from aiohttp import web

from config import Config, config, get_logger
from errors import FetchError, FetchTimeoutError, InternalError, InvalidUrlError, classify_exception
from extractor import ArticleExtractor, HtmlToArticle, readability_to_article
from fetcher import FeedFetcher
from http_client import FetchClient
from models import success_envelope
from security import ValidatedUrl, validate_url
from utils import RetryHelper, is_absolute_url, redact_url

logger = get_logger("api")

SETTINGS_KEY = web.AppKey("settings", Config)
FETCH_CLIENT_KEY = web.AppKey("fetch_client", FetchClient)
FEED_FETCHER_KEY = web.AppKey("feed_fetcher", FeedFetcher)
ARTICLE_EXTRACTOR_KEY = web.AppKey("article_extractor", ArticleExtractor)

API_PREFIX = "/api/"
CORS_ALLOW_METHODS = "POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type"
CORS_MAX_AGE = "86400"
DEV_ORIGIN_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
WORKER_THREADS = 4


def is_origin_allowed(origin: Optional[str], settings=config) -> bool:
    """Check a browser Origin header against the configured allow-list."""
    if not origin:
        return False
    origin = origin.strip().rstrip("/")
    if origin in settings.ALLOWED_ORIGINS:
        return True
    if not settings.IS_DEVELOPMENT:
        return False
    try:
        parts = urlsplit(origin)
        host = parts.hostname
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and host in DEV_ORIGIN_HOSTS


def apply_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
    """Add CORS headers for allowed origins. Other origins get none."""
    response.headers["Vary"] = "Origin"
    origin = request.headers.get("Origin")
    if not is_origin_allowed(origin, request.app[SETTINGS_KEY]):
        return
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
    response.headers["Access-Control-Max-Age"] = CORS_MAX_AGE


def error_response(error: FetchError) -> web.Response:
    return web.json_response(error.to_dict(), status=error.status_code)


@web.middleware
async def access_log_middleware(request: web.Request, handler):
    """Log method, path, status and duration for every request."""
    started = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"{request.method} {request.path} -> {status} ({elapsed_ms:.0f}ms)")


@web.middleware
async def cors_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
    except web.HTTPException as e:
        apply_cors_headers(request, e)
        raise
    apply_cors_headers(request, response)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render every failure as the JSON error envelope.

    Framework errors on the API routes (wrong method, oversized body) are
    folded into the same taxonomy; other routes keep aiohttp's responses.
    """
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400 or not request.path.startswith(API_PREFIX):
            raise
        error = InvalidUrlError() if e.status < 500 else InternalError()
        logger.info(f"{request.method} {request.path} rejected by router with {e.status}")
    except Exception as e:
        error = classify_exception(e)
        if error is not e:
            # Unclassified failures are logged in full here and nowhere else
            logger.exception(f"Unhandled error serving {request.method} {request.path}")

    logger.warning(f"{request.method} {request.path} failed: {error.kind} ({error.status_code}) {error.message}")
    return error_response(error)


@web.middleware
async def deadline_middleware(request: web.Request, handler):
    """Bound the whole request, retries included, by REQUEST_TIMEOUT."""
    timeout = request.app[SETTINGS_KEY].REQUEST_TIMEOUT
    try:
        return await asyncio.wait_for(handler(request), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"Request deadline of {timeout}s exceeded for {request.path}")
        raise FetchTimeoutError()


async def read_target_url(request: web.Request) -> ValidatedUrl:
    """Pull the url field out of the JSON body and admit it.

    Raises:
        InvalidUrlError: body is not JSON, url is missing or not an absolute URL
        SsrfBlockedError: url points at an internal resource
    """
    try:
        body = await request.json()
    except ValueError:
        raise InvalidUrlError()

    url = body.get("url") if isinstance(body, dict) else None
    if not isinstance(url, str) or not is_absolute_url(url):
        raise InvalidUrlError()
    return validate_url(url)


async def fetch_rss(request: web.Request) -> web.Response:
    url = await read_target_url(request)
    logger.info(f"Fetching RSS feed: {redact_url(str(url))}")
    feed = await request.app[FEED_FETCHER_KEY].fetch_feed(url)
    return web.json_response(success_envelope(feed))


async def fetch_content(request: web.Request) -> web.Response:
    url = await read_target_url(request)
    logger.info(f"Fetching article content: {redact_url(str(url))}")
    article = await request.app[ARTICLE_EXTRACTOR_KEY].fetch_article(url)
    return web.json_response(success_envelope(article))


async def preflight(request: web.Request) -> web.Response:
    return web.Response(status=204)


async def health(request: web.Request) -> web.Response:
    return web.Response(text="OK")


def create_app(
    fetch_client: Optional[FetchClient] = None,
    *,
    settings: Config = config,
    retry_helper: Optional[RetryHelper] = None,
    html_to_article: HtmlToArticle = readability_to_article,
) -> web.Application:
    """Build the aiohttp application.

    Args:
        fetch_client: Shared outbound client; when omitted one is created on
                      startup from settings and closed on shutdown
        settings: Configuration object
        retry_helper: Retry orchestrator shared by both pipelines
        html_to_article: Readability algorithm used for content extraction
    """
    app = web.Application(middlewares=[
        access_log_middleware,
        cors_middleware,
        error_middleware,
        deadline_middleware,
    ])
    app[SETTINGS_KEY] = settings

    async def pipeline_context(app: web.Application):
        client = fetch_client or FetchClient.create(settings)
        executor = ThreadPoolExecutor(max_workers=WORKER_THREADS, thread_name_prefix="fetch-proxy")
        helper = retry_helper or RetryHelper(verbose=settings.IS_DEVELOPMENT)
        app[FETCH_CLIENT_KEY] = client
        app[FEED_FETCHER_KEY] = FeedFetcher(client, helper, executor)
        app[ARTICLE_EXTRACTOR_KEY] = ArticleExtractor(client, helper, html_to_article, executor)
        yield
        executor.shutdown(wait=False)
        if fetch_client is None:
            await client.close()

    app.cleanup_ctx.append(pipeline_context)

    app.router.add_post("/api/fetch-rss", fetch_rss)
    app.router.add_route("OPTIONS", "/api/fetch-rss", preflight)
    app.router.add_post("/api/fetch-content", fetch_content)
    app.router.add_route("OPTIONS", "/api/fetch-content", preflight)
    app.router.add_get("/health", health)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, settings: Config = config) -> None:
    """Serve the application until interrupted."""
    host = host or settings.HOST
    port = port or settings.PORT
    logger.info(f"Starting fetch proxy on {host}:{port} ({settings.APP_ENV})")
    logger.info(f"Configuration: {settings.get_config_summary()}")
    # access_log_middleware already records every request
    web.run_app(create_app(settings=settings), host=host, port=port, access_log=None, print=None)
