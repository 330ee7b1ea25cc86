from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from link_ingest.core.errors import ContentError
from link_ingest.services.models import IngestionJob, JobPayload, JobStatus
from link_ingest.strategies import apple_music
from link_ingest.strategies.base import ExtractedLink, StrategyKind, finalize_links
from link_ingest.strategies.beacons import clean_display_name, is_default_image, parse_beacons_page
from link_ingest.strategies.fetch import SafeFetcher
from link_ingest.strategies.laylo import extract_laylo, parse_laylo_profile
from link_ingest.strategies.linktree import parse_linktree_page
from link_ingest.strategies.registry import get_strategy
from link_ingest.strategies.youtube import find_initial_data, parse_youtube_page, unwrap_redirect

NEXT_DATA = {
    "props": {
        "pageProps": {
            "account": {
                "pageTitle": "Artist Name",
                "profilePictureUrl": "https://ugc.production.linktr.ee/avatar.jpg",
                "links": [
                    {"title": "New single", "url": "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb"},
                    {"title": "Merch", "url": "https://artist-merch.com/?utm_source=linktree"},
                    {"title": "More links", "url": "https://beacons.ai/artist"},
                ],
                "socialLinks": [
                    {"type": "INSTAGRAM", "url": "https://instagram.com/artist"},
                    {"type": "YOUTUBE", "url": "https://www.youtube.com/@artist"},
                ],
            }
        }
    }
}

LINKTREE_HTML = f"""
<html>
  <head><title>@artist | Linktree</title></head>
  <body>
    <script id="__NEXT_DATA__" type="application/json">{json.dumps(NEXT_DATA)}</script>
    <a href="https://bit.ly/xyz">short</a>
    <a href="/s/about">About</a>
    <a href="https://instagram.com/Artist/">Instagram</a>
  </body>
</html>
"""


def _job(job_type: str, url: str) -> IngestionJob:
    return IngestionJob(
        id="job-1",
        job_type=job_type,
        creator_profile_id="profile-1",
        payload=JobPayload(source_url=url, creator_profile_id="profile-1"),
        status=JobStatus.PROCESSING,
        dedup_key="dedup",
    )


def test_linktree_next_data_fast_path() -> None:
    result = parse_linktree_page(LINKTREE_HTML, source_url="https://linktr.ee/artist")

    assert [link.url for link in result.links] == [
        "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb",
        "https://artist-merch.com",
        "https://beacons.ai/artist",
        "https://instagram.com/artist",
        "https://youtube.com/@artist",
    ]
    assert result.links[0].title == "New single"
    assert result.links[3].signal == "linktree_social_link"
    assert result.crawl_targets == ["https://beacons.ai/artist", "https://youtube.com/@artist"]
    assert result.hints.display_name == "Artist Name"
    assert result.hints.avatar_url == "https://ugc.production.linktr.ee/avatar.jpg"


def test_linktree_href_fallback() -> None:
    html = """
    <html><head>
      <meta property="og:title" content="Artist Name | Linktree">
      <meta property="og:image" content="https://cdn.example.com/a.png">
    </head><body>
      <a href="https://soundcloud.com/artist">SoundCloud</a>
      <a href="mailto:booking@example.com">Booking</a>
    </body></html>
    """
    result = parse_linktree_page(html, source_url="https://linktr.ee/artist")

    assert [link.url for link in result.links] == ["https://soundcloud.com/artist"]
    assert result.hints.display_name == "Artist Name"
    assert result.hints.avatar_url == "https://cdn.example.com/a.png"


def test_linktree_without_content_is_a_content_error() -> None:
    with pytest.raises(ContentError):
        parse_linktree_page("<html><body></body></html>", source_url="https://linktr.ee/artist")
    with pytest.raises(ContentError):
        parse_linktree_page("   ", source_url="https://linktr.ee/artist")
    with pytest.raises(ContentError):
        parse_linktree_page(
            '<script id="__NEXT_DATA__">{not json</script>',
            source_url="https://linktr.ee/artist",
        )


def test_beacons_meta_and_json_ld() -> None:
    ld = {"@type": "Person", "name": "Ignored", "image": {"url": "https://img.example.com/a.jpg"}}
    html = f"""
    <html><head>
      <meta property="og:title" content="Artist Name | Beacons">
      <meta property="og:image" content="https://cdn.beacons.ai/default-avatar.png">
      <script type="application/ld+json">{json.dumps(ld)}</script>
    </head><body>
      <a href="https://soundcloud.com/artist">SoundCloud</a>
      <a href="https://beacons.ai/login">Log in</a>
      <a href="https://linktr.ee/artist">Linktree</a>
    </body></html>
    """
    result = parse_beacons_page(html, source_url="https://beacons.ai/artist")

    assert result.hints.display_name == "Artist Name"
    assert result.hints.avatar_url == "https://img.example.com/a.jpg"
    assert [link.url for link in result.links] == ["https://soundcloud.com/artist", "https://linktr.ee/artist"]
    assert result.crawl_targets == ["https://linktr.ee/artist"]


def test_beacons_helpers() -> None:
    assert clean_display_name("Artist on Beacons") == "Artist"
    assert clean_display_name("Artist's Beacons") == "Artist"
    assert clean_display_name(" | Beacons") is None
    assert is_default_image("https://cdn.beacons.ai/og-default.png")
    assert not is_default_image("https://img.example.com/me.jpg")


def test_laylo_profile_payload() -> None:
    profile = {
        "displayName": "Artist",
        "imageUrl": "https://cdn.laylo.com/artist.jpg",
        "links": [{"title": "Tickets", "url": "https://tickets.example.com/show"}],
        "socialLinks": [{"platform": "instagram", "url": "https://instagram.com/artist"}],
    }
    user = {"socialLinks": [{"platform": "tiktok", "url": "https://www.tiktok.com/@artist"}]}

    result = parse_laylo_profile(profile, user, source_url="https://laylo.com/artist")

    assert [link.url for link in result.links] == [
        "https://tickets.example.com/show",
        "https://instagram.com/artist",
        "https://tiktok.com/@artist",
    ]
    assert result.hints.display_name == "Artist"
    with pytest.raises(ContentError):
        parse_laylo_profile({}, None, source_url="https://laylo.com/artist")


def test_laylo_extract_calls_api_and_tolerates_missing_user() -> None:
    requested: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        if request.url.path == "/profiles/artist":
            body = {"profile": {"name": "Artist", "userId": "u1", "links": [{"url": "https://artist.com"}]}}
            return httpx.Response(200, json=body, request=request)
        return httpx.Response(404, request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await extract_laylo(_job("import_laylo", "https://laylo.com/artist"), SafeFetcher(client=client))

    result = asyncio.run(run())
    assert requested == ["/profiles/artist", "/users/u1"]
    assert [link.url for link in result.links] == ["https://artist.com"]
    assert result.hints.display_name == "Artist"


YT_INITIAL_DATA = {
    "metadata": {
        "channelMetadataRenderer": {
            "title": "Artist",
            "avatar": {"thumbnails": [{"url": "https://yt3.ggpht.com/small"}, {"url": "https://yt3.ggpht.com/large"}]},
        }
    },
    "header": {"badges": [{"metadataBadgeRenderer": {"style": "BADGE_STYLE_TYPE_VERIFIED_ARTIST"}}]},
    "links": [
        {
            "navigationEndpoint": {
                "urlEndpoint": {
                    "url": "https://www.youtube.com/redirect?event=channel&q=https%3A%2F%2Finstagram.com%2Fartist"
                }
            }
        },
        {"navigationEndpoint": {"urlEndpoint": {"url": "https://linktr.ee/artist"}}},
        {"navigationEndpoint": {"urlEndpoint": {"url": "https://www.youtube.com/@artist"}}},
    ],
}


def test_youtube_initial_data_fast_path() -> None:
    html = f"<html><body><script>var ytInitialData = {json.dumps(YT_INITIAL_DATA)};</script></body></html>"
    result = parse_youtube_page(html, source_url="https://youtube.com/@artist")

    assert [link.url for link in result.links] == ["https://instagram.com/artist", "https://linktr.ee/artist"]
    assert {link.signal for link in result.links} == {"youtube_official_artist"}
    assert result.crawl_targets == ["https://linktr.ee/artist"]
    assert result.hints.display_name == "Artist"
    assert result.hints.avatar_url == "https://yt3.ggpht.com/large"


def test_youtube_helpers() -> None:
    assert unwrap_redirect("https://www.youtube.com/redirect?q=https%3A%2F%2Fexample.com") == "https://example.com"
    assert unwrap_redirect("https://example.com/a") == "https://example.com/a"
    assert find_initial_data("<html></html>") is None
    with pytest.raises(ContentError):
        find_initial_data('<script>var ytInitialData = {"broken": </script>')


def test_finalize_links_drops_source_shorteners_and_duplicates() -> None:
    links, targets = finalize_links(
        [
            ExtractedLink(url="https://linktr.ee/artist"),
            ExtractedLink(url="https://t.co/abc"),
            ExtractedLink(url="https://x.com/Artist", title="X"),
            ExtractedLink(url="https://twitter.com/artist", title="Twitter"),
            ExtractedLink(url="https://linktr.ee/otherartist"),
        ],
        source_url="https://linktr.ee/artist",
        skip_hosts=frozenset({"linktr.ee"}),
    )
    assert [(link.url, link.title) for link in links] == [("https://x.com/artist", "X")]
    assert targets == ["https://linktr.ee/otherartist"]


def test_strategy_canonical_source() -> None:
    youtube = get_strategy(StrategyKind.YOUTUBE)
    linktree = get_strategy("import_linktree")
    assert youtube is not None and linktree is not None
    assert youtube.canonical_source("https://www.youtube.com/channel/UCabc123/about") == (
        "https://youtube.com/channel/UCabc123"
    )
    assert youtube.canonical_source("https://youtube.com/watch?v=abc") is None
    assert linktree.canonical_source("https://linktr.ee/Artist?utm_source=ig") == "https://linktr.ee/artist"
    assert linktree.canonical_source("https://beacons.ai/artist") is None


def test_id_addressed_profiles_are_crawl_targets() -> None:
    _, targets = finalize_links(
        [
            ExtractedLink(url="https://www.youtube.com/channel/UCabc123/videos"),
            ExtractedLink(url="https://youtube.com/watch?v=abc"),
            ExtractedLink(url="https://music.apple.com/us/artist/artist-name/123456"),
            ExtractedLink(url="https://music.apple.com/us/album/first-album/111"),
        ],
        source_url="https://linktr.ee/artist",
        skip_hosts=frozenset({"linktr.ee"}),
    )
    assert targets == [
        "https://youtube.com/channel/UCabc123/videos",
        "https://music.apple.com/us/artist/artist-name/123456",
    ]


APPLE_MUSIC_LD = {"@type": "MusicGroup", "name": "Artist Name", "sameAs": ["https://instagram.com/artist"]}

APPLE_MUSIC_HTML = f"""
<html><head>
  <meta property="og:title" content="Artist Name on Apple Music">
  <meta property="og:image" content="https://is1-ssl.mzstatic.com/image/thumb/artist.jpg">
  <script type="application/ld+json">{json.dumps(APPLE_MUSIC_LD)}</script>
</head><body>
  <a href="/us/artist/other-artist/555">Similar artist</a>
  <a href="/us/album/first-album/111">Album</a>
  <a href="https://linktr.ee/artist">Linktree</a>
  <a href="https://www.apple.com/privacy/">Privacy</a>
</body></html>
"""


def test_apple_music_artist_page() -> None:
    result = apple_music.parse_apple_music_page(
        APPLE_MUSIC_HTML, source_url="https://music.apple.com/us/artist/artist-name/123456"
    )

    assert [link.url for link in result.links] == ["https://instagram.com/artist", "https://linktr.ee/artist"]
    assert {link.signal for link in result.links} == {"apple_music_artist_link"}
    assert result.crawl_targets == ["https://linktr.ee/artist"]
    assert result.hints.display_name == "Artist Name"
    assert result.hints.avatar_url == "https://is1-ssl.mzstatic.com/image/thumb/artist.jpg"


def test_apple_music_fetches_only_from_apple_music() -> None:
    requested: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, text=APPLE_MUSIC_HTML, request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            job = _job("import_apple_music", "https://music.apple.com/us/artist/artist-name/123456")
            return await apple_music.extract_apple_music(job, SafeFetcher(client=client))

    result = asyncio.run(run())
    assert requested == ["https://music.apple.com/us/artist/artist-name/123456"]
    assert result.hints.display_name == "Artist Name"


def test_apple_music_helpers() -> None:
    assert apple_music.clean_display_name("Artist - Apple Music") == "Artist"
    assert apple_music.clean_display_name("Artist | Apple Music") == "Artist"
    assert apple_music.clean_display_name("Apple Music") is None
    assert apple_music.is_default_image("https://is1-ssl.mzstatic.com/default-artist.png")
    with pytest.raises(ContentError):
        apple_music.parse_apple_music_page("<html><body></body></html>", source_url="https://music.apple.com/us")


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        (
            "https://www.music.apple.com/US/artist/Taylor-Swift/159260351?l=en",
            "https://music.apple.com/us/artist/taylor-swift/159260351",
        ),
        (
            "https://music.apple.com/gb/artist/adele/262836961/see-all?section=top-songs",
            "https://music.apple.com/gb/artist/adele/262836961",
        ),
        ("https://music.apple.com/us/album/midnights/1649434004", None),
        ("https://music.apple.com/us/artist/taylor-swift", None),
        ("https://music.apple.com.fake.com/us/artist/test/123", None),
        ("https://fake-music.apple.com/us/artist/test/123", None),
    ],
)
def test_apple_music_canonical_source(url: str, expected: str | None) -> None:
    strategy = get_strategy(StrategyKind.APPLE_MUSIC)
    assert strategy is not None
    assert strategy.canonical_source(url) == expected
