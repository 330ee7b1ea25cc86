from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable
from urllib.parse import urlparse

from link_ingest.core.platforms import DetectedLink, detect
from link_ingest.core.urls import host_of

if TYPE_CHECKING:
    from link_ingest.services.models import IngestionJob
    from link_ingest.strategies.fetch import SafeFetcher


class StrategyKind(str, Enum):
    LINKTREE = "import_linktree"
    BEACONS = "import_beacons"
    LAYLO = "import_laylo"
    YOUTUBE = "import_youtube"
    APPLE_MUSIC = "import_apple_music"


# Hub platforms whose pages may be crawled further.
CRAWLABLE_PLATFORMS = frozenset({"linktree", "beacons", "laylo", "youtube", "apple-music"})

# Profiles addressed by an id path instead of a handle.
PROFILE_ID_PATHS: dict[str, re.Pattern[str]] = {
    "youtube": re.compile(r"^/channel/([A-Za-z0-9_-]+)"),
    "apple-music": re.compile(r"^/([a-z]{2,3})/artist/([^/]+)/(\d+)(?:/|$)"),
}


@dataclass(frozen=True, slots=True)
class ExtractedLink:
    url: str
    title: str | None = None
    signal: str = "profile_link"


@dataclass(frozen=True, slots=True)
class ProfileHints:
    display_name: str | None = None
    avatar_url: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.display_name and not self.avatar_url


@dataclass(slots=True)
class ExtractionResult:
    links: list[ExtractedLink] = field(default_factory=list)
    hints: ProfileHints = field(default_factory=ProfileHints)
    crawl_targets: list[str] = field(default_factory=list)
    source_url: str | None = None


Extractor = Callable[["IngestionJob", "SafeFetcher"], Awaitable[ExtractionResult]]
UrlValidator = Callable[[DetectedLink], bool]


def is_profile(detected: DetectedLink) -> bool:
    """True for a creator profile page: a handle, or an id path where the platform has one."""
    if detected.handle is not None:
        return True
    pattern = PROFILE_ID_PATHS.get(detected.platform)
    return pattern is not None and pattern.match(urlparse(detected.canonical_url).path) is not None


def _profile_root(detected: DetectedLink) -> str:
    return f"https://{host_of(detected.canonical_url)}/{detected.handle}"


@dataclass(frozen=True, slots=True)
class Strategy:
    kind: StrategyKind
    platform: str
    allowed_hosts: frozenset[str]
    max_depth: int
    extract: Extractor
    skip_hosts: frozenset[str] = frozenset()
    accepts: UrlValidator = is_profile
    source_root: Callable[[DetectedLink], str] = _profile_root

    def validate_url(self, url: str) -> DetectedLink | None:
        """Return the detected source when ``url`` is a page this strategy can import."""
        detected = detect(url)
        if detected is None or detected.platform != self.platform:
            return None
        if not self.accepts(detected):
            return None
        return detected

    def canonical_source(self, url: str) -> str | None:
        """Canonical profile URL used for dedup keys; sub-pages collapse onto the profile."""
        detected = self.validate_url(url)
        if detected is None:
            return None
        return self.source_root(detected)

    async def fetch_and_extract(self, job: IngestionJob, fetcher: SafeFetcher) -> ExtractionResult:
        return await self.extract(job, fetcher)


def finalize_links(
    candidates: Iterable[ExtractedLink],
    *,
    source_url: str,
    skip_hosts: frozenset[str],
) -> tuple[list[ExtractedLink], list[str]]:
    """Drop unusable candidates and split out crawlable hub pages.

    Links are de-duplicated by canonical identity, keeping the first title seen.
    Candidates on the source's own hosts never become links, but other profiles
    on those hosts are still offered as crawl targets.
    """
    source = detect(source_url)
    source_identity = source.identity if source else None
    links: list[ExtractedLink] = []
    crawl_targets: list[str] = []
    seen_links: set[str] = set()
    seen_targets: set[str] = set()

    for candidate in candidates:
        detected = detect(candidate.url)
        if detected is None or detected.identity == source_identity:
            continue
        host = host_of(detected.canonical_url) or ""
        if host in SHORTENER_HOSTS:
            continue

        if detected.platform in CRAWLABLE_PLATFORMS and is_profile(detected):
            if detected.identity not in seen_targets:
                seen_targets.add(detected.identity)
                crawl_targets.append(detected.canonical_url)

        if _host_in(host, skip_hosts):
            continue
        if detected.identity in seen_links:
            continue
        seen_links.add(detected.identity)
        links.append(ExtractedLink(url=detected.canonical_url, title=candidate.title, signal=candidate.signal))

    return links, crawl_targets


def _host_in(host: str, hosts: frozenset[str]) -> bool:
    return any(host == entry or host.endswith(f".{entry}") for entry in hosts)


SHORTENER_HOSTS = frozenset(
    {
        "bit.ly",
        "tinyurl.com",
        "t.co",
        "ow.ly",
        "buff.ly",
        "goo.gl",
        "rebrand.ly",
        "cutt.ly",
        "shorturl.at",
        "is.gd",
        "lnkd.in",
    }
)
