import asyncio
from types import SimpleNamespace

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

import http_client
from errors import FetchTimeoutError, NetworkError, NotFoundError, SsrfBlockedError
from http_client import FEED_ACCEPT, FetchClient

FEED_BODY = b"<?xml version='1.0'?><rss version='2.0'><channel><title>t</title></channel></rss>"


def admit_all(url):
    return url


def build_upstream():
    async def feed(request):
        return web.Response(body=FEED_BODY, content_type="application/rss+xml")

    async def page(request):
        return web.Response(text="<html><body>café</body></html>", content_type="text/html", charset="utf-8")

    async def headers(request):
        return web.json_response({
            "accept": request.headers.get("Accept"),
            "user_agent": request.headers.get("User-Agent"),
        })

    async def missing(request):
        return web.Response(status=404, text="nope")

    async def broken(request):
        return web.Response(status=503, text="busy")

    async def hop(request):
        raise web.HTTPFound("/feed")

    async def loop(request):
        raise web.HTTPFound("/loop")

    async def to_metadata(request):
        raise web.HTTPFound("http://169.254.169.254/latest/meta-data/")

    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(text="late")

    app = web.Application()
    app.router.add_get("/feed", feed)
    app.router.add_get("/page", page)
    app.router.add_get("/headers", headers)
    app.router.add_get("/missing", missing)
    app.router.add_get("/broken", broken)
    app.router.add_get("/hop", hop)
    app.router.add_get("/loop", loop)
    app.router.add_get("/to-metadata", to_metadata)
    app.router.add_get("/slow", slow)
    return app


@pytest.mark.asyncio
async def test_fetch_bytes_and_text():
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            client = FetchClient(session, url_validator=admit_all)

            body = await client.fetch_bytes(str(server.make_url("/feed")), 0)
            text = await client.fetch_text(str(server.make_url("/page")), 0)

    assert body == FEED_BODY
    assert "café" in text


@pytest.mark.asyncio
async def test_accept_and_user_agent_headers_are_sent():
    settings = SimpleNamespace(
        POOL_MAX_PER_HOST=2,
        POOL_IDLE_TIMEOUT=5.0,
        CONNECT_TIMEOUT=2.0,
        MAX_REDIRECTS=5,
        USER_AGENT="FetchProxyTest/1.0",
    )
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with FetchClient.create(settings) as client:
            client.url_validator = admit_all
            raw = await client.fetch_bytes(str(server.make_url("/headers")), 0, accept=FEED_ACCEPT)
        assert client.session.closed

    assert b"FetchProxyTest/1.0" in raw
    assert b"application/rss+xml" in raw


@pytest.mark.asyncio
async def test_upstream_404_is_not_found():
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            client = FetchClient(session, url_validator=admit_all)
            with pytest.raises(NotFoundError):
                await client.fetch_bytes(str(server.make_url("/missing")), 0)


@pytest.mark.asyncio
async def test_other_error_status_is_network_error():
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            client = FetchClient(session, url_validator=admit_all)
            with pytest.raises(NetworkError) as excinfo:
                await client.fetch_bytes(str(server.make_url("/broken")), 0)

    assert excinfo.value.message == "Network error: HTTP 503"
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_redirects_are_followed_and_validated():
    seen = []

    def recording_validator(url):
        seen.append(url)
        return url

    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            client = FetchClient(session, url_validator=recording_validator)
            body = await client.fetch_bytes(str(server.make_url("/hop")), 0)
            expected_hop = str(server.make_url("/feed"))

    assert body == FEED_BODY
    assert seen == [expected_hop]


@pytest.mark.asyncio
async def test_redirect_to_internal_address_is_blocked():
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            # Default validator: only the redirect target is checked here
            client = FetchClient(session)
            with pytest.raises(SsrfBlockedError):
                await client.fetch_bytes(str(server.make_url("/to-metadata")), 0)


@pytest.mark.asyncio
async def test_redirect_loop_is_cut_off():
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            client = FetchClient(session, max_redirects=2, url_validator=admit_all)
            with pytest.raises(NetworkError) as excinfo:
                await client.fetch_bytes(str(server.make_url("/loop")), 0)

    assert excinfo.value.message == "Network error: Too many redirects"


@pytest.mark.asyncio
async def test_attempt_timeout_is_classified(monkeypatch):
    monkeypatch.setattr(http_client, "timeout_for", lambda attempt: 0.2)

    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        async with ClientSession() as session:
            client = FetchClient(session, url_validator=admit_all)
            with pytest.raises(FetchTimeoutError):
                await client.fetch_text(str(server.make_url("/slow")), 0)


@pytest.mark.asyncio
async def test_connection_refused_is_network_error():
    async with TestServer(build_upstream(), host="127.0.0.1") as server:
        url = str(server.make_url("/feed"))

    async with ClientSession() as session:
        client = FetchClient(session, url_validator=admit_all)
        with pytest.raises(NetworkError) as excinfo:
            await client.fetch_bytes(url, 0)

    assert excinfo.value.retryable
