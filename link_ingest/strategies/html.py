from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from link_ingest.core.errors import ContentError
from link_ingest.strategies.base import ExtractedLink

logger = logging.getLogger(__name__)


def parse_html(text: str) -> BeautifulSoup:
    if not text or not text.strip():
        raise ContentError("empty HTML document")
    return BeautifulSoup(text, "html.parser")


def meta_content(soup: BeautifulSoup, *names: str) -> str | None:
    """First non-empty ``content`` among ``<meta property=...>``/``<meta name=...>`` tags."""
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag is None:
            continue
        content = tag.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
    return None


def page_title(soup: BeautifulSoup) -> str | None:
    title = meta_content(soup, "og:title", "twitter:title")
    if title:
        return title
    if soup.title and soup.title.string:
        stripped = soup.title.string.strip()
        return stripped or None
    return None


def iter_anchor_links(soup: BeautifulSoup, base_url: str, *, signal: str) -> list[ExtractedLink]:
    links: list[ExtractedLink] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not isinstance(href, str):
            continue
        absolute = urljoin(base_url, href.strip())
        if urlparse(absolute).scheme.lower() not in {"http", "https"}:
            continue
        text = anchor.get_text(" ", strip=True) or None
        links.append(ExtractedLink(url=absolute, title=text, signal=signal))
    return links


def script_json(soup: BeautifulSoup, *, element_id: str) -> dict[str, Any] | None:
    """Decode a JSON ``<script id=...>`` block; absent is ``None``, malformed is a content error."""
    tag = soup.find("script", attrs={"id": element_id})
    if tag is None or not tag.string:
        return None
    try:
        payload = json.loads(tag.string)
    except ValueError as exc:
        raise ContentError(f"malformed {element_id} JSON") from exc
    if not isinstance(payload, dict):
        raise ContentError(f"unexpected {element_id} structure")
    return payload


def json_ld_objects(soup: BeautifulSoup) -> list[dict[str, Any]]:
    objects: list[dict[str, Any]] = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        if not tag.string:
            continue
        try:
            payload = json.loads(tag.string)
        except ValueError:
            logger.debug("skipping malformed JSON-LD block")
            continue
        if isinstance(payload, dict):
            graph = payload.get("@graph")
            if isinstance(graph, list):
                objects.extend(item for item in graph if isinstance(item, dict))
            objects.append(payload)
        elif isinstance(payload, list):
            objects.extend(item for item in payload if isinstance(item, dict))
    return objects


def dig(payload: Any, *path: str | int) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or key >= len(current):
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
    return current


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
