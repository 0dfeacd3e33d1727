import discord

from trackchat.models.track import Track

STATS_TITLE_LENGTH = 50


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _plays(count: int) -> str:
    return "1 play" if count == 1 else f"{count} plays"


def now_playing_embed(track: Track) -> discord.Embed:
    """Create the "Now Playing" embed. Replies and reactions to it become comments."""
    embed = discord.Embed(
        title="Now Playing",
        description=f"**[{track.title}]({track.url})**",
        color=discord.Color.green(),
    )
    embed.add_field(name="Channel", value=track.author, inline=True)
    embed.add_field(name="Duration", value=track.duration_str, inline=True)

    if track.thumbnail_url:
        embed.set_thumbnail(url=track.thumbnail_url)

    footer = "Reply to this message to leave a comment at this point in the track"
    if track.requested_by:
        footer = f"Requested by {track.requested_by} • {footer}"
    embed.set_footer(text=footer)
    return embed


def added_to_queue_embed(track: Track, position: int) -> discord.Embed:
    """Create an embed for a track added to the queue."""
    embed = discord.Embed(
        title="Added to Queue",
        description=f"**{track.title}** by {track.author}",
        color=discord.Color.blue(),
    )
    embed.add_field(name="Position", value=str(position + 1), inline=True)
    embed.add_field(name="Duration", value=track.duration_str, inline=True)

    if track.thumbnail_url:
        embed.set_thumbnail(url=track.thumbnail_url)

    embed.set_footer(text=f"Requested by {track.requested_by}")
    return embed


def queue_embed(tracks: list[Track], current: Track | None) -> discord.Embed:
    """Create an embed showing the current queue."""
    embed = discord.Embed(
        title="Music Queue",
        color=discord.Color.purple(),
    )

    if current:
        embed.add_field(
            name="Now Playing",
            value=f"**{current.title}** by {current.author} [{current.duration_str}]",
            inline=False,
        )

    if tracks:
        queue_text = "\n".join(
            f"`{i + 1}.` **{t.title}** by {t.author} [{t.duration_str}]"
            for i, t in enumerate(tracks[:10])  # Show max 10 tracks
        )
        if len(tracks) > 10:
            queue_text += f"\n\n*...and {len(tracks) - 10} more*"
        embed.add_field(name="Up Next", value=queue_text, inline=False)
    elif not current:
        embed.description = "The queue is empty."

    total_tracks = len(tracks) + (1 if current else 0)
    embed.set_footer(text=f"{total_tracks} track(s) in queue")
    return embed


def music_stats_embed(
    total_plays: int,
    user_total_plays: int,
    top_listeners: list[dict],
    top_tracks: list[dict],
    top_user_tracks: list[dict],
) -> discord.Embed:
    """Play statistics for a guild. Track numbering matches the buttons of MusicStatsView."""
    embed = discord.Embed(
        title="📊 Music Stats",
        description=(
            f"**Total plays on this server:** {total_plays}\n"
            f"**Your total plays:** {user_total_plays}"
        ),
        color=discord.Color(0x0099FF),
    )

    listeners = "\n".join(
        f"{i + 1}. **{entry['user_name']}** — {_plays(entry['play_count'])}"
        for i, entry in enumerate(top_listeners)
    )
    embed.add_field(
        name="👂 Top 10 Listeners (Server)",
        value=listeners or "_No plays recorded yet!_",
        inline=False,
    )

    def track_lines(entries: list[dict], start: int) -> str:
        return "\n".join(
            f"{start + i + 1}. **{_truncate(entry['video_title'], STATS_TITLE_LENGTH)}**"
            f" — {_plays(entry['play_count'])}"
            for i, entry in enumerate(entries)
        )

    embed.add_field(
        name="🏆 Top 10 Most Played (Server)",
        value=track_lines(top_tracks, 0) or "_No plays recorded yet!_",
        inline=False,
    )
    embed.add_field(
        name="🎵 Your Top 10 Most Played",
        value=track_lines(top_user_tracks, len(top_tracks)) or "_You haven't played anything yet!_",
        inline=False,
    )
    return embed


def error_embed(message: str) -> discord.Embed:
    """Create an error embed."""
    return discord.Embed(
        title="Error",
        description=message,
        color=discord.Color.red(),
    )
