from urllib.parse import urlparse

import discord

from trackchat.models.track import Track

STATUS_PREFIX = "💥 Blasting "
STATUS_TITLE_LENGTH = 160
YOUTUBE_HOSTS = ("youtube.com", "youtu.be")


def is_youtube_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == name or host.endswith("." + name) for name in YOUTUBE_HOSTS)


def now_playing_status(track: Track) -> str:
    """Text shown under the bot in the voice channel and as its activity name."""
    title = track.title
    if len(title) > STATUS_TITLE_LENGTH:
        title = title[: STATUS_TITLE_LENGTH - 3] + "..."
    return STATUS_PREFIX + title


def listeners_state(channel) -> str:
    """Activity state such as "to 3 listeners in #lounge". Bots are not counted."""
    members = getattr(channel, "members", None) or []
    listeners = sum(1 for member in members if not member.bot)
    name = getattr(channel, "name", None) or "voice"
    return f"to {listeners} listener{'s' if listeners != 1 else ''} in #{name}"


def track_activity(track: Track, channel) -> discord.Activity:
    """Streaming activity linking the video for YouTube tracks, listening otherwise."""
    if is_youtube_url(track.url):
        return discord.Activity(
            type=discord.ActivityType.streaming,
            name=now_playing_status(track),
            state=listeners_state(channel),
            url=track.url,
        )
    return discord.Activity(
        type=discord.ActivityType.listening,
        name=now_playing_status(track),
        state=listeners_state(channel),
    )
