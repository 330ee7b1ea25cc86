from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator
from urllib.parse import parse_qs, urlparse

from link_ingest.core.errors import ContentError
from link_ingest.core.platforms import DetectedLink
from link_ingest.services.models import IngestionJob
from link_ingest.strategies.base import PROFILE_ID_PATHS, ExtractedLink, ExtractionResult, ProfileHints, finalize_links
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.html import as_text, dig, iter_anchor_links, meta_content, parse_html

ALLOWED_HOSTS = frozenset({"youtube.com", "www.youtube.com", "m.youtube.com"})
SKIP_HOSTS = frozenset(
    {
        "youtube.com",
        "youtu.be",
        "youtube-nocookie.com",
        "google.com",
        "googleusercontent.com",
        "ggpht.com",
        "ytimg.com",
        "gstatic.com",
    }
)
LINK_SIGNAL = "youtube_official_link"
OFFICIAL_ARTIST_SIGNAL = "youtube_official_artist"

_INITIAL_DATA_RE = re.compile(r"ytInitialData\"?\]?\s*=\s*")
_ARTIST_BADGES = ("BADGE_STYLE_TYPE_VERIFIED_ARTIST", "OFFICIAL_ARTIST_BADGE")
_CHANNEL_ID_RE = PROFILE_ID_PATHS["youtube"]

logger = logging.getLogger(__name__)


def channel_root(detected: DetectedLink) -> str:
    path = urlparse(detected.canonical_url).path
    channel = _CHANNEL_ID_RE.match(path)
    if channel:
        return f"https://youtube.com/channel/{channel.group(1)}"
    first = path.strip("/").split("/", 1)[0]
    if first in {"c", "user"}:
        return f"https://youtube.com/{first}/{detected.handle}"
    return f"https://youtube.com/@{detected.handle}"


async def extract_youtube(job: IngestionJob, fetcher: SafeFetcher) -> ExtractionResult:
    about_url = f"{job.payload.source_url.rstrip('/')}/about"
    response = await fetcher.get(about_url, allowed_hosts=ALLOWED_HOSTS)
    return parse_youtube_page(response.text(), source_url=job.payload.source_url)


def parse_youtube_page(html: str, *, source_url: str) -> ExtractionResult:
    soup = parse_html(html)
    initial_data = find_initial_data(html)
    official_artist = any(badge in html for badge in _ARTIST_BADGES)

    candidates: list[ExtractedLink] = []
    display_name: str | None = None
    avatar_url: str | None = None

    if initial_data is not None:
        for url in _iter_endpoint_urls(initial_data):
            candidates.append(ExtractedLink(url=unwrap_redirect(url), signal=LINK_SIGNAL))
        metadata = dig(initial_data, "metadata", "channelMetadataRenderer")
        if isinstance(metadata, dict):
            display_name = as_text(metadata.get("title"))
            thumbnails = dig(metadata, "avatar", "thumbnails")
            if isinstance(thumbnails, list) and thumbnails:
                avatar_url = as_text(dig(thumbnails, len(thumbnails) - 1, "url"))
    else:
        logger.debug("youtube page without ytInitialData source_url=%s", source_url)

    for link in iter_anchor_links(soup, source_url, signal=LINK_SIGNAL):
        candidates.append(ExtractedLink(url=unwrap_redirect(link.url), title=link.title, signal=link.signal))

    display_name = display_name or meta_content(soup, "og:title")
    avatar_url = avatar_url or meta_content(soup, "og:image")
    if initial_data is None and display_name is None:
        raise ContentError("youtube page has no channel data")

    links, crawl_targets = finalize_links(candidates, source_url=source_url, skip_hosts=SKIP_HOSTS)
    if official_artist:
        links = [ExtractedLink(url=link.url, title=link.title, signal=OFFICIAL_ARTIST_SIGNAL) for link in links]

    return ExtractionResult(
        links=links,
        hints=ProfileHints(display_name=display_name, avatar_url=avatar_url),
        crawl_targets=crawl_targets,
        source_url=source_url,
    )


def find_initial_data(html: str) -> dict[str, Any] | None:
    match = _INITIAL_DATA_RE.search(html)
    if match is None:
        return None
    try:
        payload, _ = json.JSONDecoder().raw_decode(html, match.end())
    except ValueError as exc:
        raise ContentError("malformed ytInitialData JSON") from exc
    if not isinstance(payload, dict):
        raise ContentError("unexpected ytInitialData structure")
    return payload


def unwrap_redirect(url: str) -> str:
    """Resolve ``youtube.com/redirect?q=...`` wrappers to their target."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.endswith("youtube.com") and parsed.path == "/redirect":
        target = parse_qs(parsed.query).get("q")
        if target and target[0]:
            return target[0]
    return url


def _iter_endpoint_urls(node: Any) -> Iterator[str]:
    if isinstance(node, dict):
        endpoint = node.get("urlEndpoint")
        if isinstance(endpoint, dict):
            url = as_text(endpoint.get("url"))
            if url:
                yield url
        for value in node.values():
            yield from _iter_endpoint_urls(value)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_endpoint_urls(item)
