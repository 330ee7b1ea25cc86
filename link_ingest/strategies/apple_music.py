from __future__ import annotations

import re
from typing import Any, Iterator
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from link_ingest.core.errors import ContentError
from link_ingest.core.platforms import DetectedLink
from link_ingest.core.urls import host_of
from link_ingest.services.models import IngestionJob
from link_ingest.strategies.base import PROFILE_ID_PATHS, ExtractedLink, ExtractionResult, ProfileHints, finalize_links
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.html import as_text, iter_anchor_links, json_ld_objects, meta_content, parse_html

ALLOWED_HOSTS = frozenset({"music.apple.com", "www.music.apple.com"})
SKIP_HOSTS = frozenset(
    {
        "music.apple.com",
        "mzstatic.com",
        "apple.com",
        "itunes.apple.com",
        "apps.apple.com",
        "support.apple.com",
    }
)
LINK_SIGNAL = "apple_music_artist_link"

_ARTIST_PATH_RE = PROFILE_ID_PATHS["apple-music"]
_ARTIST_TYPES = {"MusicGroup", "MusicArtist", "Person", "ProfilePage"}
_TITLE_SUFFIX_RE = re.compile(r"(?:^|\s*[-–—|]\s*|\s+on\s+|\s+)Apple\s*Music$", re.IGNORECASE)
_DEFAULT_IMAGE_PATTERNS = (
    re.compile(r"default[-_]?avatar", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"apple[-_]?music[-_]?logo", re.IGNORECASE),
    re.compile(r"default[-_]?artist", re.IGNORECASE),
    re.compile(r"generic[-_]?artist", re.IGNORECASE),
)


def artist_root(detected: DetectedLink) -> str:
    """``music.apple.com/{region}/artist/{slug}/{id}``; album and see-all sub-pages are dropped."""
    match = _ARTIST_PATH_RE.match(urlparse(detected.canonical_url).path)
    if match is None:
        raise ValueError(f"not an apple music artist url: {detected.canonical_url}")
    region, slug, artist_id = match.groups()
    return f"https://music.apple.com/{region}/artist/{slug}/{artist_id}"


async def extract_apple_music(job: IngestionJob, fetcher: SafeFetcher) -> ExtractionResult:
    response = await fetcher.get(job.payload.source_url, allowed_hosts=ALLOWED_HOSTS)
    return parse_apple_music_page(response.text(), source_url=job.payload.source_url)


def parse_apple_music_page(html: str, *, source_url: str) -> ExtractionResult:
    soup = parse_html(html)

    display_name = clean_display_name(meta_content(soup, "og:title", "twitter:title"))
    avatar_url = _usable_image(meta_content(soup, "og:image", "twitter:image"))
    candidates: list[ExtractedLink] = []

    artist = _artist_json_ld(soup)
    if artist is not None:
        display_name = display_name or clean_display_name(as_text(artist.get("name")))
        avatar_url = avatar_url or _usable_image(_image_url(artist.get("image")))
        candidates.extend(ExtractedLink(url=url, signal=LINK_SIGNAL) for url in _same_as(artist))

    candidates.extend(iter_anchor_links(soup, source_url, signal=LINK_SIGNAL))
    links, crawl_targets = finalize_links(candidates, source_url=source_url, skip_hosts=SKIP_HOSTS)
    # Artist pages list related artists; other artist pages are not this creator's.
    crawl_targets = [target for target in crawl_targets if host_of(target) not in ALLOWED_HOSTS]
    if not links and not display_name:
        raise ContentError("apple music page has no recognizable artist content")

    return ExtractionResult(
        links=links,
        hints=ProfileHints(display_name=display_name, avatar_url=avatar_url),
        crawl_targets=crawl_targets,
        source_url=source_url,
    )


def clean_display_name(name: str | None) -> str | None:
    if not name:
        return None
    cleaned = _TITLE_SUFFIX_RE.sub("", name).strip()
    return cleaned or None


def is_default_image(url: str) -> bool:
    return any(pattern.search(url) for pattern in _DEFAULT_IMAGE_PATTERNS)


def _artist_json_ld(soup: BeautifulSoup) -> dict[str, Any] | None:
    for item in json_ld_objects(soup):
        if item.get("@type") in _ARTIST_TYPES:
            return item
    return None


def _same_as(item: dict[str, Any]) -> Iterator[str]:
    same_as = item.get("sameAs")
    values = same_as if isinstance(same_as, list) else [same_as]
    for value in values:
        url = as_text(value)
        if url:
            yield url


def _image_url(image: Any) -> str | None:
    if isinstance(image, dict):
        return as_text(image.get("url"))
    return as_text(image)


def _usable_image(url: str | None) -> str | None:
    if not url or is_default_image(url):
        return None
    if url.startswith("//"):
        url = f"https:{url}"
    return url if urlparse(url).scheme == "https" else None
