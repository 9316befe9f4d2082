"""Hand-off to the device's native map application."""

from __future__ import annotations

import asyncio
import webbrowser
from typing import Callable, Protocol
from urllib.parse import quote, urlencode

from src.common.logging import get_logger

logger = get_logger(__name__)

Launcher = Callable[[str], bool]


class Navigator(Protocol):
    async def open(self, coordinates: tuple[float, float], label: str) -> None: ...


def build_navigation_url(
    coordinates: tuple[float, float],
    label: str,
    platform: str,
    mode: str = "driving",
) -> str:
    """Deep link for Apple Maps on iOS and Google Maps elsewhere."""

    lat, lon = coordinates
    destination = f"{lat},{lon}"
    if platform.lower() == "ios":
        query = urlencode(
            {"daddr": destination, "q": label or "Destination", "dirflg": "d"},
            quote_via=quote,
            safe=",",
        )
        return f"http://maps.apple.com/?{query}"
    query = urlencode(
        {"api": "1", "destination": destination, "travelmode": mode},
        quote_via=quote,
        safe=",",
    )
    return f"https://www.google.com/maps/dir/?{query}"


async def open_external_navigator(
    coordinates: tuple[float, float],
    label: str,
    platform: str = "android",
    *,
    launcher: Launcher = webbrowser.open,
) -> bool:
    """Open turn-by-turn directions to ``coordinates``; failures are only logged."""

    url = build_navigation_url(coordinates, label, platform)
    try:
        opened = await asyncio.to_thread(launcher, url)
    except (OSError, webbrowser.Error) as exc:
        logger.warning("navigator_failed", url=url, error=str(exc))
        return False
    if not opened:
        logger.warning("navigator_unavailable", url=url)
        return False
    logger.info("navigator_opened", url=url, label=label)
    return True


class ExternalNavigator:
    """:class:`Navigator` bound to the session's platform and launcher."""

    def __init__(self, platform: str, launcher: Launcher = webbrowser.open) -> None:
        self._platform = platform
        self._launcher = launcher

    async def open(self, coordinates: tuple[float, float], label: str) -> None:
        await open_external_navigator(
            coordinates, label, self._platform, launcher=self._launcher
        )
