"""Platform detection and canonical identity for creator links.

Detection is pure and deterministic: the same input always yields the same
``DetectedLink``, which the merge engine relies on for de-duplication.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlparse, urlunparse

from link_ingest.core.urls import canonical_identity, normalize_url

PlatformCategory = Literal["dsp", "social", "earnings", "websites"]


@dataclass(frozen=True, slots=True)
class HandleRule:
    pattern: re.Pattern[str]
    prefix: str = "@"
    require_prefix: bool = False
    reserved: frozenset[str] = frozenset()
    id_paths: frozenset[str] = frozenset()
    nested_paths: frozenset[str] = frozenset()

    def extract(self, segments: list[str]) -> tuple[bool, str | None]:
        """Return ``(valid, handle)`` for the path segments of a profile URL."""
        if not segments:
            return False, None
        first = segments[0]
        if first in self.id_paths:
            return True, None
        if first in self.nested_paths:
            if len(segments) < 2:
                return False, None
            first = segments[1]
        elif self.require_prefix and not first.startswith(self.prefix):
            return False, None
        handle = normalize_handle(first, prefix=self.prefix)
        if not handle or handle in self.reserved:
            return False, None
        if not self.pattern.fullmatch(handle):
            return False, None
        return True, handle


@dataclass(frozen=True, slots=True)
class Platform:
    id: str
    name: str
    category: PlatformCategory
    handle_rule: HandleRule | None = None
    preserve_path_case: bool = False
    case_sensitive_after: frozenset[str] = frozenset()
    multi_valued: bool = False


@dataclass(frozen=True, slots=True)
class DetectedLink:
    platform: str
    name: str
    category: PlatformCategory
    canonical_url: str
    handle: str | None = None
    multi_valued: bool = False

    @property
    def identity(self) -> str:
        return canonical_identity(self.platform, self.canonical_url)


@dataclass(frozen=True, slots=True)
class _HostPattern:
    host: re.Pattern[str]
    platform_id: str
    path: re.Pattern[str] | None = None
    opaque_path: bool = False


def _host(expression: str) -> re.Pattern[str]:
    return re.compile(rf"(?:^|\.)(?:{expression})$")


def _rule(pattern: str, **kwargs: object) -> HandleRule:
    return HandleRule(pattern=re.compile(pattern), **kwargs)  # type: ignore[arg-type]


PLATFORMS: dict[str, Platform] = {
    platform.id: platform
    for platform in (
        Platform(
            "linktree",
            "Linktree",
            "websites",
            _rule(
                r"[a-z0-9_]{1,30}",
                reserved=frozenset(
                    {
                        "s",
                        "admin",
                        "login",
                        "register",
                        "signup",
                        "marketplace",
                        "discover",
                        "privacy",
                        "terms",
                        "help",
                        "blog",
                        "about",
                        "pricing",
                        "features",
                        "templates",
                        "careers",
                        "contact",
                        "legal",
                        "cookies",
                        "support",
                    }
                ),
            ),
        ),
        Platform(
            "beacons",
            "Beacons",
            "websites",
            _rule(
                r"[a-z0-9][a-z0-9_.]{0,28}[a-z0-9]|[a-z0-9]{1,2}",
                reserved=frozenset(
                    {
                        "login",
                        "signup",
                        "register",
                        "dashboard",
                        "settings",
                        "admin",
                        "api",
                        "app",
                        "help",
                        "support",
                        "about",
                        "pricing",
                        "features",
                        "blog",
                        "terms",
                        "privacy",
                        "contact",
                        "faq",
                        "creators",
                        "explore",
                        "search",
                    }
                ),
            ),
        ),
        Platform(
            "laylo",
            "Laylo",
            "websites",
            _rule(r"[a-z0-9][a-z0-9_.-]{0,29}", reserved=frozenset({"api", "login", "signup", "terms", "privacy"})),
        ),
        Platform("linkfire", "Linkfire", "websites", multi_valued=True),
        Platform("toneden", "ToneDen", "websites", multi_valued=True),
        Platform("spotify", "Spotify", "dsp", preserve_path_case=True),
        Platform("apple-music", "Apple Music", "dsp"),
        Platform("youtube-music", "YouTube Music", "dsp", case_sensitive_after=frozenset({"channel", "browse"})),
        Platform("amazon-music", "Amazon Music", "dsp", preserve_path_case=True),
        Platform(
            "soundcloud",
            "SoundCloud",
            "dsp",
            _rule(r"[a-z0-9_-]{2,25}", reserved=frozenset({"discover", "search", "stream", "upload", "you"})),
        ),
        Platform("bandcamp", "Bandcamp", "dsp"),
        Platform("tidal", "Tidal", "dsp"),
        Platform("deezer", "Deezer", "dsp"),
        Platform(
            "youtube",
            "YouTube",
            "social",
            # Bare first segments are site pages (/about, /creators); channels need @ or c/user/channel.
            _rule(
                r"[a-z0-9._-]{3,30}",
                require_prefix=True,
                reserved=frozenset(
                    {
                        "about",
                        "account",
                        "ads",
                        "creators",
                        "feed",
                        "gaming",
                        "howyoutubeworks",
                        "jobs",
                        "kids",
                        "music",
                        "new",
                        "premium",
                        "press",
                        "results",
                        "t",
                        "yt",
                    }
                ),
                id_paths=frozenset({"channel", "watch", "playlist", "shorts", "live", "embed"}),
                nested_paths=frozenset({"c", "user"}),
            ),
            case_sensitive_after=frozenset({"channel", "shorts", "live", "embed"}),
        ),
        Platform(
            "instagram",
            "Instagram",
            "social",
            _rule(
                r"[a-z0-9._]{1,30}",
                reserved=frozenset({"accounts", "direct", "explore"}),
                id_paths=frozenset({"p", "reel", "reels", "stories", "tv"}),
            ),
            case_sensitive_after=frozenset({"p", "reel", "reels", "tv"}),
        ),
        Platform(
            "tiktok",
            "TikTok",
            "social",
            _rule(r"[a-z0-9._]{2,24}", require_prefix=True, id_paths=frozenset({"tag", "music", "discover"})),
        ),
        Platform(
            "twitter",
            "X (Twitter)",
            "social",
            _rule(
                r"[a-z0-9_]{1,15}",
                reserved=frozenset({"home", "i", "intent", "share", "search", "explore", "settings", "hashtag"}),
            ),
        ),
        Platform("threads", "Threads", "social", _rule(r"[a-z0-9._]{1,30}", require_prefix=True)),
        Platform(
            "facebook",
            "Facebook",
            "social",
            _rule(r"[a-z0-9.]{5,50}", id_paths=frozenset({"profile.php", "pages", "groups", "events"})),
        ),
        Platform("twitch", "Twitch", "social", _rule(r"[a-z0-9_]{4,25}", id_paths=frozenset({"videos", "directory"}))),
        Platform("snapchat", "Snapchat", "social", _rule(r"[a-z0-9._-]{3,15}", nested_paths=frozenset({"add"}))),
        Platform("pinterest", "Pinterest", "social", _rule(r"[a-z0-9_]{3,30}", id_paths=frozenset({"pin"}))),
        Platform(
            "reddit",
            "Reddit",
            "social",
            _rule(r"[a-z0-9_-]{3,20}", nested_paths=frozenset({"user", "u", "r"})),
        ),
        Platform(
            "linkedin",
            "LinkedIn",
            "social",
            _rule(r"[a-z0-9-]{3,100}", nested_paths=frozenset({"in", "company"})),
        ),
        Platform("telegram", "Telegram", "social", _rule(r"[a-z0-9_]{5,32}")),
        Platform("discord", "Discord", "social", preserve_path_case=True),
        Platform("patreon", "Patreon", "earnings", _rule(r"[a-z0-9_-]{1,64}", nested_paths=frozenset({"c"}))),
        Platform("kofi", "Ko-fi", "earnings", _rule(r"[a-z0-9_]{1,64}")),
        Platform("buy-me-a-coffee", "Buy Me a Coffee", "earnings", _rule(r"[a-z0-9_]{1,64}")),
        Platform("venmo", "Venmo", "earnings", _rule(r"[a-z0-9_-]{5,30}", nested_paths=frozenset({"u"}))),
        Platform("paypal", "PayPal", "earnings", _rule(r"[a-z0-9]{1,20}", nested_paths=frozenset({"paypalme"}))),
        Platform("cashapp", "Cash App", "earnings", _rule(r"[a-z][a-z0-9_-]{0,19}", prefix="$", require_prefix=True)),
        Platform("website", "Website", "websites", multi_valued=True),
    )
}

# Ordered; the first matching entry wins. Specific hosts precede general ones.
HOST_PATTERNS: tuple[_HostPattern, ...] = (
    _HostPattern(_host(r"linktr\.ee"), "linktree"),
    _HostPattern(_host(r"beacons\.ai"), "beacons"),
    _HostPattern(_host(r"laylo\.com"), "laylo"),
    _HostPattern(_host(r"lnk\.to|linkfire\.com"), "linkfire", opaque_path=True),
    _HostPattern(_host(r"toneden\.io"), "toneden"),
    _HostPattern(_host(r"spotify\.com"), "spotify"),
    _HostPattern(_host(r"music\.apple\.com"), "apple-music"),
    _HostPattern(_host(r"music\.youtube\.com"), "youtube-music"),
    _HostPattern(_host(r"music\.amazon\.(?:com|co\.uk|de|fr|co\.jp)"), "amazon-music"),
    _HostPattern(_host(r"soundcloud\.com"), "soundcloud"),
    _HostPattern(_host(r"bandcamp\.com"), "bandcamp"),
    _HostPattern(_host(r"tidal\.com"), "tidal"),
    _HostPattern(_host(r"deezer\.com"), "deezer"),
    _HostPattern(_host(r"youtu\.be"), "youtube", opaque_path=True),
    _HostPattern(_host(r"youtube\.com"), "youtube"),
    _HostPattern(_host(r"instagram\.com"), "instagram"),
    _HostPattern(_host(r"vm\.tiktok\.com"), "tiktok", opaque_path=True),
    _HostPattern(_host(r"tiktok\.com"), "tiktok"),
    _HostPattern(_host(r"x\.com"), "twitter"),
    _HostPattern(_host(r"threads\.(?:net|com)"), "threads"),
    _HostPattern(_host(r"facebook\.com"), "facebook"),
    _HostPattern(_host(r"twitch\.tv"), "twitch"),
    _HostPattern(_host(r"snapchat\.com"), "snapchat"),
    _HostPattern(_host(r"pinterest\.com"), "pinterest"),
    _HostPattern(_host(r"reddit\.com"), "reddit"),
    _HostPattern(_host(r"linkedin\.com"), "linkedin"),
    _HostPattern(_host(r"t\.me"), "telegram"),
    _HostPattern(_host(r"discord\.gg"), "discord", opaque_path=True),
    _HostPattern(_host(r"discord\.com"), "discord", path=re.compile(r"^/invite/"), opaque_path=True),
    _HostPattern(_host(r"patreon\.com"), "patreon"),
    _HostPattern(_host(r"ko-fi\.com"), "kofi"),
    _HostPattern(_host(r"buymeacoffee\.com"), "buy-me-a-coffee"),
    _HostPattern(_host(r"venmo\.com"), "venmo"),
    _HostPattern(_host(r"paypal\.(?:me|com)"), "paypal"),
    _HostPattern(_host(r"cash\.app"), "cashapp"),
)

# Hosts that are the same site under another name.
HOST_ALIASES: dict[str, str] = {
    "linktree.com": "linktr.ee",
    "beacons.page": "beacons.ai",
    "twitter.com": "x.com",
    "mobile.twitter.com": "x.com",
    "mobile.x.com": "x.com",
    "m.youtube.com": "youtube.com",
    "m.facebook.com": "facebook.com",
    "fb.com": "facebook.com",
    "telegram.me": "t.me",
    "m.twitch.tv": "twitch.tv",
    "m.tiktok.com": "tiktok.com",
}


def detect(url: str) -> DetectedLink | None:
    """Classify ``url`` into a known platform; ``None`` means Unknown."""
    try:
        provisional = normalize_url(url, fold_path_case=False)
    except ValueError:
        return None

    parsed = urlparse(provisional)
    host = (parsed.hostname or "").lower()
    netloc = parsed.netloc
    alias = HOST_ALIASES.get(host) or _desktop_host(host, parsed.path)
    if alias is not None:
        netloc = netloc.replace(host, alias, 1)
        host = alias

    matched = _match_host(host, parsed.path)
    platform = PLATFORMS[matched.platform_id] if matched else PLATFORMS["website"]
    opaque = bool(matched and matched.opaque_path)

    path = parsed.path if opaque else _fold_path(platform, parsed.path)
    canonical_url = urlunparse(("https", netloc, path, "", parsed.query, ""))

    handle: str | None = None
    if platform.handle_rule is not None and not opaque:
        segments = [segment for segment in path.split("/") if segment]
        valid, handle = platform.handle_rule.extract(segments)
        if not valid:
            return None

    return DetectedLink(
        platform=platform.id,
        name=platform.name,
        category=platform.category,
        canonical_url=canonical_url,
        handle=handle,
        multi_valued=platform.multi_valued,
    )


def get_platform(platform_id: str) -> Platform | None:
    return PLATFORMS.get(platform_id)


def normalize_handle(raw: str, *, prefix: str = "@") -> str:
    handle = raw.strip().lower()
    if handle.startswith(prefix):
        handle = handle[len(prefix):]
    return handle


def _match_host(host: str, path: str) -> _HostPattern | None:
    for entry in HOST_PATTERNS:
        if not entry.host.search(host):
            continue
        if entry.path is not None and not entry.path.search(path):
            continue
        return entry
    return None


def _desktop_host(host: str, path: str) -> str | None:
    """``m.`` host of a handle platform folded onto its desktop host."""
    if not host.startswith("m."):
        return None
    desktop = host[2:]
    desktop = HOST_ALIASES.get(desktop, desktop)
    entry = _match_host(desktop, path)
    if entry is None or PLATFORMS[entry.platform_id].handle_rule is None:
        return None
    return desktop


def _fold_path(platform: Platform, path: str) -> str:
    if platform.preserve_path_case:
        return path
    segments = path.split("/")
    folded: list[str] = []
    keep_next = False
    for segment in segments:
        if keep_next:
            folded.append(segment)
            keep_next = False
            continue
        lowered = segment.lower()
        folded.append(lowered)
        keep_next = lowered in platform.case_sensitive_after
    return "/".join(folded)


__all__ = [
    "DetectedLink",
    "HandleRule",
    "Platform",
    "PLATFORMS",
    "detect",
    "get_platform",
    "normalize_handle",
]
