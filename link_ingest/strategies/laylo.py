"""Laylo drop pages: profile data comes from the JSON API, not the rendered page."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, urlparse

from link_ingest.core.config import get_settings
from link_ingest.core.errors import ContentError
from link_ingest.core.platforms import detect
from link_ingest.services.models import IngestionJob
from link_ingest.strategies.base import ExtractedLink, ExtractionResult, ProfileHints, finalize_links
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.html import as_text

PAGE_HOSTS = frozenset({"laylo.com", "www.laylo.com"})
SKIP_HOSTS = frozenset({"laylo.com", "api.laylo.com", "cdn.laylo.com"})
LINK_SIGNAL = "laylo_profile_link"
SOCIAL_SIGNAL = "laylo_social_link"

logger = logging.getLogger(__name__)


def api_hosts(api_base_url: str | None = None) -> frozenset[str]:
    base = api_base_url or get_settings().laylo_api_base_url
    host = (urlparse(base).hostname or "").lower()
    return frozenset({host}) if host else frozenset()


async def extract_laylo(job: IngestionJob, fetcher: SafeFetcher) -> ExtractionResult:
    detected = detect(job.payload.source_url)
    if detected is None or detected.handle is None:
        raise ContentError("laylo source url has no profile handle")
    api_base_url = get_settings().laylo_api_base_url
    profile, user = await fetch_laylo_profile(detected.handle, fetcher, api_base_url=api_base_url)
    return parse_laylo_profile(profile, user, source_url=job.payload.source_url)


async def fetch_laylo_profile(
    handle: str,
    fetcher: SafeFetcher,
    *,
    api_base_url: str,
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    base = api_base_url.rstrip("/")
    allowed = api_hosts(base)
    profile = await fetcher.get_json(f"{base}/profiles/{quote(handle)}", allowed_hosts=allowed)
    if not isinstance(profile, dict):
        raise ContentError("unexpected laylo profile payload")
    if isinstance(profile.get("profile"), dict):
        profile = profile["profile"]

    user: dict[str, Any] | None = None
    user_id = as_text(profile.get("userId"))
    if user_id:
        try:
            raw_user = await fetcher.get_json(f"{base}/users/{quote(user_id)}", allowed_hosts=allowed)
        except ContentError as exc:
            # The user record only adds optional social links.
            logger.info("laylo user lookup skipped handle=%s reason=%s", handle, exc)
        else:
            user = raw_user if isinstance(raw_user, dict) else None
    return profile, user


def parse_laylo_profile(
    profile: dict[str, Any],
    user: dict[str, Any] | None,
    *,
    source_url: str,
) -> ExtractionResult:
    candidates: list[ExtractedLink] = []
    for item in _as_list(profile.get("links")):
        url = as_text(item.get("url"))
        if url:
            candidates.append(ExtractedLink(url=url, title=as_text(item.get("title")), signal=LINK_SIGNAL))
    for source in (profile, user or {}):
        for item in _as_list(source.get("socialLinks")):
            url = as_text(item.get("url"))
            if url:
                candidates.append(ExtractedLink(url=url, title=as_text(item.get("platform")), signal=SOCIAL_SIGNAL))

    display_name = as_text(profile.get("displayName")) or as_text(profile.get("name"))
    avatar_url = as_text(profile.get("imageUrl")) or as_text(profile.get("avatarUrl"))
    if user:
        display_name = display_name or as_text(user.get("displayName"))
        avatar_url = avatar_url or as_text(user.get("imageUrl"))

    if not candidates and not display_name:
        raise ContentError("laylo profile has no links or display name")

    links, crawl_targets = finalize_links(candidates, source_url=source_url, skip_hosts=SKIP_HOSTS)
    return ExtractionResult(
        links=links,
        hints=ProfileHints(display_name=display_name, avatar_url=avatar_url),
        crawl_targets=crawl_targets,
        source_url=source_url,
    )


def _as_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
