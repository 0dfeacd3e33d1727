import logging
import re
from typing import Any

from trackchat.clients.ytdlp import SEARCH_PREFIX, YtDlpClient
from trackchat.models.track import Track

log = logging.getLogger(__name__)

URI_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def is_direct_reference(query: str) -> bool:
    """A query starting with a URI scheme is a link; anything else is a search term."""
    return bool(URI_SCHEME.match(query.strip()))


class Resolver:
    """Resolves any input (search query or URL) to playable Track(s)."""

    def __init__(self, ytdlp: YtDlpClient):
        self.ytdlp = ytdlp

    async def resolve(self, query: str) -> list[Track]:
        """
        Resolve a query to a list of tracks.

        Supports:
        - Natural language search (e.g., "never gonna give you up"), first result only
        - Direct URLs yt-dlp understands

        Returns an empty list when nothing was found; "no match" is not an error.
        """
        query = query.strip()
        if not query:
            return []

        target = query if is_direct_reference(query) else f"{SEARCH_PREFIX}1:{query}"
        log.info("Resolving %r", target)

        info = await self.ytdlp.dump_json(target)
        if info is None:
            return []

        track = self._track_from_info(info)
        if track is None:
            log.info("yt-dlp returned no playable URL for %r", target)
            return []
        return [track]

    @staticmethod
    def _track_from_info(info: dict[str, Any]) -> Track | None:
        url = info.get("webpage_url") or info.get("url")
        if not url:
            return None

        duration = info.get("duration") or 0
        return Track(
            title=info.get("title") or "Unknown",
            author=info.get("uploader") or info.get("channel") or "Unknown",
            url=url,
            thumbnail_url=info.get("thumbnail"),
            duration_ms=int(duration * 1000),
            raw=info,
        )
