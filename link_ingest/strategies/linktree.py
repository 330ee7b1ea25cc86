from __future__ import annotations

import logging
from typing import Any

from link_ingest.core.errors import ContentError
from link_ingest.services.models import IngestionJob
from link_ingest.strategies.base import ExtractedLink, ExtractionResult, ProfileHints, finalize_links
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.html import (
    as_text,
    dig,
    iter_anchor_links,
    meta_content,
    page_title,
    parse_html,
    script_json,
)

ALLOWED_HOSTS = frozenset({"linktr.ee", "www.linktr.ee", "linktree.com", "www.linktree.com"})
SKIP_HOSTS = frozenset(
    {
        "linktr.ee",
        "linktree.com",
        "assets.production.linktr.ee",
        "ugc.production.linktr.ee",
        "cdn.linktr.ee",
    }
)
LINK_SIGNAL = "linktree_profile_link"
SOCIAL_SIGNAL = "linktree_social_link"

logger = logging.getLogger(__name__)


async def extract_linktree(job: IngestionJob, fetcher: SafeFetcher) -> ExtractionResult:
    response = await fetcher.get(job.payload.source_url, allowed_hosts=ALLOWED_HOSTS)
    return parse_linktree_page(response.text(), source_url=job.payload.source_url)


def parse_linktree_page(html: str, *, source_url: str) -> ExtractionResult:
    soup = parse_html(html)
    next_data = script_json(soup, element_id="__NEXT_DATA__")
    account = dig(next_data, "props", "pageProps", "account") if next_data else None

    candidates: list[ExtractedLink] = []
    display_name: str | None = None
    avatar_url: str | None = None

    if isinstance(account, dict):
        candidates.extend(_account_links(account))
        display_name = as_text(account.get("pageTitle")) or as_text(account.get("displayName"))
        avatar_url = as_text(account.get("profilePictureUrl"))
    else:
        logger.debug("linktree page without account data source_url=%s", source_url)

    # Raw hrefs cover pages whose structured data omits some links.
    candidates.extend(iter_anchor_links(soup, source_url, signal=LINK_SIGNAL))
    display_name = display_name or _clean_title(page_title(soup))
    avatar_url = avatar_url or meta_content(soup, "og:image", "twitter:image")

    links, crawl_targets = finalize_links(candidates, source_url=source_url, skip_hosts=SKIP_HOSTS)
    if not links and not crawl_targets and account is None and display_name is None:
        raise ContentError("linktree page has no recognizable profile content")

    return ExtractionResult(
        links=links,
        hints=ProfileHints(display_name=display_name, avatar_url=avatar_url),
        crawl_targets=crawl_targets,
        source_url=source_url,
    )


def _account_links(account: dict[str, Any]) -> list[ExtractedLink]:
    links: list[ExtractedLink] = []
    for item in account.get("links") or []:
        if not isinstance(item, dict):
            continue
        url = as_text(item.get("url"))
        if url:
            links.append(ExtractedLink(url=url, title=as_text(item.get("title")), signal=LINK_SIGNAL))
    for item in account.get("socialLinks") or []:
        if not isinstance(item, dict):
            continue
        url = as_text(item.get("url"))
        if url:
            links.append(ExtractedLink(url=url, title=as_text(item.get("type")), signal=SOCIAL_SIGNAL))
    return links


def _clean_title(title: str | None) -> str | None:
    if not title:
        return None
    for suffix in (" | Linktree", " - Linktree", " on Linktree"):
        if title.endswith(suffix):
            title = title[: -len(suffix)]
    stripped = title.strip()
    if stripped.startswith("@") and " " not in stripped:
        return None
    return stripped or None
