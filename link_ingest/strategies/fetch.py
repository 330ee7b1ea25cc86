from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from link_ingest.core.config import Settings
from link_ingest.core.errors import ContentError, PolicyViolationError, RateLimitedError, TransientFetchError

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
HTML_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5"
JSON_ACCEPT = "application/json"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchResponse:
    url: str
    status_code: int
    content_type: str | None
    body: bytes
    redirect_chain: list[str] = field(default_factory=list)

    def text(self) -> str:
        return self.body.decode(_charset(self.content_type), errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except ValueError as exc:
            raise ContentError(f"malformed JSON from {urlparse(self.url).hostname}") from exc


class SafeFetcher:
    """HTTPS-only GET with a per-call host allowlist checked on every redirect hop.

    Redirects are followed manually so an off-allowlist ``Location`` is
    rejected before any request is sent to it.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_bytes: int = 2_000_000,
        max_redirects: int = 5,
        user_agent: str = "link-ingest/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max(1, max_bytes)
        self.max_redirects = max(0, max_redirects)
        self.user_agent = user_agent
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> SafeFetcher:
        return cls(
            timeout_seconds=settings.fetch_timeout_seconds,
            max_bytes=settings.fetch_max_bytes,
            max_redirects=settings.fetch_max_redirects,
            user_agent=settings.fetch_user_agent,
            client=client,
        )

    async def get(
        self,
        url: str,
        *,
        allowed_hosts: frozenset[str],
        accept: str = HTML_ACCEPT,
    ) -> FetchResponse:
        """Fetch ``url``; the whole redirect chain and body read share one deadline."""
        try:
            async with asyncio.timeout(self.timeout_seconds):
                if self._client is not None:
                    return await self._follow(self._client, url, allowed_hosts=allowed_hosts, accept=accept)
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=False) as client:
                    return await self._follow(client, url, allowed_hosts=allowed_hosts, accept=accept)
        except TimeoutError as exc:
            raise TransientFetchError(
                f"fetch of {urlparse(url).hostname} exceeded {self.timeout_seconds}s deadline"
            ) from exc

    async def get_json(self, url: str, *, allowed_hosts: frozenset[str]) -> Any:
        response = await self.get(url, allowed_hosts=allowed_hosts, accept=JSON_ACCEPT)
        return response.json()

    async def _follow(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        allowed_hosts: frozenset[str],
        accept: str,
    ) -> FetchResponse:
        current_url = url
        seen_urls: set[str] = set()
        redirect_chain: list[str] = []
        headers = {"User-Agent": self.user_agent, "Accept": accept}

        for _ in range(self.max_redirects + 1):
            check_fetch_policy(current_url, allowed_hosts)
            if current_url in seen_urls:
                raise PolicyViolationError(f"redirect loop detected at {urlparse(current_url).hostname}")
            seen_urls.add(current_url)

            try:
                async with client.stream(
                    "GET",
                    current_url,
                    headers=headers,
                    timeout=self.timeout_seconds,
                    follow_redirects=False,
                ) as response:
                    location = response.headers.get("location")
                    if response.status_code in REDIRECT_STATUS_CODES:
                        if not location:
                            raise ContentError(
                                f"redirect without location from {urlparse(current_url).hostname}",
                                status_code=response.status_code,
                            )
                        next_url = urljoin(str(response.url), location)
                        logger.debug("fetch redirect from=%s to=%s", current_url, next_url)
                        redirect_chain.append(next_url)
                        current_url = next_url
                        continue

                    raise_for_fetch_status(response.status_code, current_url)
                    body = await self._read_bounded(response)
                    return FetchResponse(
                        url=str(response.url),
                        status_code=response.status_code,
                        content_type=response.headers.get("content-type"),
                        body=body,
                        redirect_chain=redirect_chain,
                    )
            except httpx.TimeoutException as exc:
                raise TransientFetchError(f"timeout fetching {urlparse(current_url).hostname}") from exc
            except httpx.TransportError as exc:
                raise TransientFetchError(f"connection error fetching {urlparse(current_url).hostname}: {exc}") from exc

        raise PolicyViolationError(f"more than {self.max_redirects} redirects fetching {urlparse(url).hostname}")

    async def _read_bounded(self, response: httpx.Response) -> bytes:
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise PolicyViolationError(f"response of {declared} bytes exceeds limit of {self.max_bytes}")

        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self.max_bytes:
                raise PolicyViolationError(f"response exceeds limit of {self.max_bytes} bytes")
            chunks.append(chunk)
        return b"".join(chunks)


def check_fetch_policy(url: str, allowed_hosts: frozenset[str]) -> None:
    parsed = urlparse(url)
    if parsed.scheme.lower() != "https":
        raise PolicyViolationError(f"refusing non-https url scheme={parsed.scheme or 'none'}")
    host = (parsed.hostname or "").lower().strip(".")
    if not host:
        raise PolicyViolationError("refusing url without host")
    if host not in allowed_hosts:
        raise PolicyViolationError(f"host {host} is not allowlisted")


def raise_for_fetch_status(status_code: int, url: str) -> None:
    host = urlparse(url).hostname
    if 200 <= status_code < 300:
        return
    if status_code == 429:
        raise RateLimitedError(f"rate limited by {host}", status_code=status_code)
    if status_code >= 500 or status_code == 408:
        raise TransientFetchError(f"upstream error {status_code} from {host}", status_code=status_code)
    if status_code in {404, 410}:
        raise ContentError(f"source page not found at {host} (status {status_code})", status_code=status_code)
    raise ContentError(f"unexpected status {status_code} from {host}", status_code=status_code)


def _charset(content_type: str | None) -> str:
    if content_type:
        for part in content_type.split(";")[1:]:
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                candidate = value.strip().strip('"')
                try:
                    "".encode(candidate)
                except LookupError:
                    break
                return candidate
    return "utf-8"
