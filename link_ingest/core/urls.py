from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "igshid", "_ga", "si", "nd", "source", "mc_cid", "mc_eid"}
UNSAFE_SCHEMES = ("javascript:", "data:", "vbscript:", "file:", "mailto:", "tel:", "ftp:")
DEFAULT_PORTS = {80, 443}

_ENCODED_CONTROL_RE = re.compile(r"%(0a|0d|09|00)", re.IGNORECASE)
_DUPLICATE_SLASHES_RE = re.compile(r"/{2,}")


def canonical_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def canonical_identity(platform: str, normalized_url: str) -> str:
    return f"{platform}:{normalized_url}"


def build_dedup_key(job_type: str, creator_profile_id: str, identity: str) -> str:
    return canonical_hash(f"{job_type}:{creator_profile_id}:{identity}")


def normalize_url(raw_url: str, *, fold_path_case: bool = True) -> str:
    """Normalize a URL into its canonical https form.

    Rules are applied in order: force https, lowercase host, strip ``www.``,
    drop default ports, strip tracking query parameters (remaining ones are
    sorted), strip the trailing slash and drop the fragment. Raises
    ``ValueError`` for unsafe schemes or URLs without a host.
    """
    candidate = (raw_url or "").strip()
    if not candidate:
        raise ValueError("empty url")
    lowered = candidate.lower()
    if lowered.startswith(UNSAFE_SCHEMES):
        raise ValueError("unsafe url scheme")
    if _ENCODED_CONTROL_RE.search(candidate):
        raise ValueError("url contains encoded control characters")

    if candidate.startswith("//"):
        candidate = f"https:{candidate}"
    elif "://" not in candidate:
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError(f"unsupported url scheme: {parsed.scheme}")
    if parsed.username or parsed.password:
        raise ValueError("url must not carry credentials")

    host = (parsed.hostname or "").strip(".").lower()
    if not host or "." not in host:
        raise ValueError("url has no valid host")
    if host.startswith("www."):
        host = host[4:]

    try:
        port = parsed.port
    except ValueError as exc:
        raise ValueError("url has an invalid port") from exc
    netloc = host if port is None or port in DEFAULT_PORTS else f"{host}:{port}"

    path = _DUPLICATE_SLASHES_RE.sub("/", parsed.path or "")
    path = path.rstrip("/")
    if fold_path_case:
        path = path.lower()

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)
    return urlunparse(("https", netloc, path, "", query, ""))


def is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_KEYS


def host_of(url: str) -> str | None:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host.lower()
