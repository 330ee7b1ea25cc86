from __future__ import annotations

import asyncio

import httpx
import pytest

from link_ingest.core.errors import ContentError, PolicyViolationError, RateLimitedError, TransientFetchError
from link_ingest.strategies.fetch import FetchResponse, SafeFetcher, check_fetch_policy

ALLOWED = frozenset({"linktr.ee", "www.linktr.ee"})


def _fetch(handler, url: str = "https://linktr.ee/artist", **fetcher_kwargs) -> FetchResponse:
    async def run() -> FetchResponse:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            fetcher = SafeFetcher(client=client, **fetcher_kwargs)
            return await fetcher.get(url, allowed_hosts=ALLOWED)

    return asyncio.run(run())


def test_fetch_returns_body_and_follows_allowlisted_redirects() -> None:
    requested: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.host == "linktr.ee":
            return httpx.Response(301, headers={"location": "https://www.linktr.ee/artist"}, request=request)
        return httpx.Response(
            200,
            headers={"content-type": "text/html; charset=utf-8"},
            content="<html>café</html>".encode("utf-8"),
            request=request,
        )

    response = _fetch(handler)

    assert response.status_code == 200
    assert response.text() == "<html>café</html>"
    assert response.redirect_chain == ["https://www.linktr.ee/artist"]
    assert requested == ["https://linktr.ee/artist", "https://www.linktr.ee/artist"]


def test_off_allowlist_redirect_is_refused_before_request() -> None:
    requested: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.host)
        if request.url.host == "linktr.ee":
            return httpx.Response(302, headers={"location": "https://evil.example.com/steal"}, request=request)
        return httpx.Response(200, content=b"owned", request=request)

    with pytest.raises(PolicyViolationError):
        _fetch(handler)
    assert requested == ["linktr.ee"]


def test_redirect_to_plain_http_is_refused() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"location": "http://linktr.ee/artist"}, request=request)

    with pytest.raises(PolicyViolationError):
        _fetch(handler)


def test_redirect_loop_and_redirect_limit() -> None:
    async def loop(request: httpx.Request) -> httpx.Response:
        target = "/b" if request.url.path == "/a" else "/a"
        return httpx.Response(302, headers={"location": target}, request=request)

    with pytest.raises(PolicyViolationError, match="loop"):
        _fetch(loop, url="https://linktr.ee/a")

    async def chain(request: httpx.Request) -> httpx.Response:
        step = int(request.url.path.strip("/") or 0)
        return httpx.Response(302, headers={"location": f"/{step + 1}"}, request=request)

    with pytest.raises(PolicyViolationError, match="redirects"):
        _fetch(chain, url="https://linktr.ee/0", max_redirects=2)


def test_oversized_bodies_are_refused() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 100, request=request)

    with pytest.raises(PolicyViolationError):
        _fetch(handler, max_bytes=10)


@pytest.mark.parametrize(
    ("status_code", "error"),
    [
        (429, RateLimitedError),
        (503, TransientFetchError),
        (408, TransientFetchError),
        (404, ContentError),
        (410, ContentError),
        (403, ContentError),
    ],
)
def test_status_mapping(status_code: int, error: type[Exception]) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, request=request)

    with pytest.raises(error) as excinfo:
        _fetch(handler)
    assert excinfo.value.status_code == status_code


def test_network_failures_are_transient() -> None:
    async def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    async def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientFetchError, match="timeout"):
        _fetch(timeout)
    with pytest.raises(TransientFetchError, match="connection error"):
        _fetch(refused)


class TrickleStream(httpx.AsyncByteStream):
    """Sends one byte at a time, each well inside any per-read timeout."""

    def __init__(self, chunks: int, delay: float) -> None:
        self.chunks = chunks
        self.delay = delay

    async def __aiter__(self):
        for _ in range(self.chunks):
            await asyncio.sleep(self.delay)
            yield b"x"


def test_slow_bodies_hit_the_overall_deadline() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=TrickleStream(chunks=50, delay=0.02), request=request)

    with pytest.raises(TransientFetchError, match="deadline"):
        _fetch(handler, timeout_seconds=0.2)


def test_malformed_json_is_a_content_error() -> None:
    response = FetchResponse(url="https://api.laylo.com/profiles/x", status_code=200, content_type=None, body=b"{oops")
    with pytest.raises(ContentError):
        response.json()


def test_check_fetch_policy() -> None:
    check_fetch_policy("https://linktr.ee/artist", ALLOWED)
    with pytest.raises(PolicyViolationError):
        check_fetch_policy("https://beacons.ai/artist", ALLOWED)
    with pytest.raises(PolicyViolationError):
        check_fetch_policy("ftp://linktr.ee/artist", ALLOWED)
