from __future__ import annotations

import re

from link_ingest.core.errors import ContentError
from link_ingest.services.models import IngestionJob
from link_ingest.strategies.base import ExtractionResult, ProfileHints, finalize_links
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.html import as_text, iter_anchor_links, json_ld_objects, meta_content, parse_html

ALLOWED_HOSTS = frozenset({"beacons.ai", "www.beacons.ai", "beacons.page", "www.beacons.page"})
SKIP_HOSTS = frozenset(
    {
        "beacons.ai",
        "beacons.page",
        "cdn.beacons.ai",
        "assets.beacons.ai",
        "images.beacons.ai",
        "static.beacons.ai",
        "app.beacons.ai",
        "dashboard.beacons.ai",
    }
)
LINK_SIGNAL = "beacons_profile_link"

_DEFAULT_IMAGE_PATTERNS = (
    re.compile(r"default[-_]?avatar", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"beacons[-_]?logo", re.IGNORECASE),
    re.compile(r"og[-_]?default", re.IGNORECASE),
    re.compile(r"share[-_]?default", re.IGNORECASE),
)
_TITLE_SUFFIX_RE = re.compile(
    r"(?:\s*[|-]\s*Beacons(?:\.ai)?|\s+on\s+Beacons(?:\.ai)?|['’]s\s+Beacons(?:\.ai)?|\s+Beacons(?:\.ai)?)$",
    re.IGNORECASE,
)
_PROFILE_TYPES = {"Person", "ProfilePage", "WebPage"}


async def extract_beacons(job: IngestionJob, fetcher: SafeFetcher) -> ExtractionResult:
    response = await fetcher.get(job.payload.source_url, allowed_hosts=ALLOWED_HOSTS)
    return parse_beacons_page(response.text(), source_url=job.payload.source_url)


def parse_beacons_page(html: str, *, source_url: str) -> ExtractionResult:
    soup = parse_html(html)

    display_name = clean_display_name(meta_content(soup, "og:title", "twitter:title"))
    avatar_url = meta_content(soup, "og:image", "twitter:image")
    if avatar_url and is_default_image(avatar_url):
        avatar_url = None

    if not display_name or not avatar_url:
        for item in json_ld_objects(soup):
            if item.get("@type") not in _PROFILE_TYPES:
                continue
            display_name = display_name or as_text(item.get("name"))
            image = item.get("image")
            image_url = as_text(image) if not isinstance(image, dict) else as_text(image.get("url"))
            if not avatar_url and image_url and not is_default_image(image_url):
                avatar_url = image_url
            break

    if not display_name:
        heading = soup.find("h1")
        if heading is not None:
            text = heading.get_text(" ", strip=True)
            display_name = text if 0 < len(text) < 100 else None

    candidates = iter_anchor_links(soup, source_url, signal=LINK_SIGNAL)
    links, crawl_targets = finalize_links(candidates, source_url=source_url, skip_hosts=SKIP_HOSTS)
    if not links and not crawl_targets and not display_name:
        raise ContentError("beacons page has no recognizable profile content")

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
