from __future__ import annotations

from link_ingest.strategies import apple_music, beacons, laylo, linktree, youtube
from link_ingest.strategies.base import Strategy, StrategyKind


def _build_strategies() -> dict[StrategyKind, Strategy]:
    return {
        StrategyKind.LINKTREE: Strategy(
            kind=StrategyKind.LINKTREE,
            platform="linktree",
            allowed_hosts=linktree.ALLOWED_HOSTS,
            max_depth=3,
            extract=linktree.extract_linktree,
            skip_hosts=linktree.SKIP_HOSTS,
        ),
        StrategyKind.BEACONS: Strategy(
            kind=StrategyKind.BEACONS,
            platform="beacons",
            allowed_hosts=beacons.ALLOWED_HOSTS,
            max_depth=3,
            extract=beacons.extract_beacons,
            skip_hosts=beacons.SKIP_HOSTS,
        ),
        StrategyKind.LAYLO: Strategy(
            kind=StrategyKind.LAYLO,
            platform="laylo",
            allowed_hosts=laylo.PAGE_HOSTS | laylo.api_hosts(),
            max_depth=3,
            extract=laylo.extract_laylo,
            skip_hosts=laylo.SKIP_HOSTS,
        ),
        StrategyKind.YOUTUBE: Strategy(
            kind=StrategyKind.YOUTUBE,
            platform="youtube",
            allowed_hosts=youtube.ALLOWED_HOSTS,
            max_depth=1,
            extract=youtube.extract_youtube,
            skip_hosts=youtube.SKIP_HOSTS,
            source_root=youtube.channel_root,
        ),
        StrategyKind.APPLE_MUSIC: Strategy(
            kind=StrategyKind.APPLE_MUSIC,
            platform="apple-music",
            allowed_hosts=apple_music.ALLOWED_HOSTS,
            max_depth=1,
            extract=apple_music.extract_apple_music,
            skip_hosts=apple_music.SKIP_HOSTS,
            source_root=apple_music.artist_root,
        ),
    }


STRATEGIES: dict[StrategyKind, Strategy] = _build_strategies()


def get_strategy(kind: StrategyKind | str) -> Strategy | None:
    try:
        return STRATEGIES[StrategyKind(kind)]
    except ValueError:
        return None


def resolve_strategy(url: str) -> Strategy | None:
    """First strategy able to import ``url``; platforms without one are detection-only."""
    for strategy in STRATEGIES.values():
        if strategy.validate_url(url) is not None:
            return strategy
    return None
