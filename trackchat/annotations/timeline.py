"""Recording and replaying the comment/reaction timeline of a track.

Listeners annotate a track by replying to (or reacting on) the "Now Playing"
message while it plays. Each annotation is stored with its offset from the
start of the tracking session. The next time the same track starts in the
same guild, every stored annotation is posted again at the same offset.
"""

import asyncio
import itertools
import logging
import sqlite3
from typing import Any, Callable

import discord

from trackchat.annotations.sessions import SessionRegistry, TrackingSession
from trackchat.models.annotation import Annotation, Comment, Reaction
from trackchat.storage.database import MusicDatabase

log = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 200
COMMAND_PREFIX = "#"  # Replies starting with this are commands, not comments
URL_PREFIXES = ("http://", "https://")
CONFIRM_EMOJI = "💬"
REACTION_BIG_REPEAT = 3

# Comments are delivered before reactions that share an offset
_KIND_ORDER = {Comment: 0, Reaction: 1}


def is_url_line(line: str) -> bool:
    return line.startswith(URL_PREFIXES)


def truncate_text(text: str, max_length: int = MAX_COMMENT_LENGTH) -> str:
    """Shorten text for display without ever cutting a URL."""
    if is_url_line(text):
        return text

    if "\n" in text:
        return "\n".join(
            line if is_url_line(line) else truncate_text(line, max_length)
            for line in text.split("\n")
        )

    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_offset(offset_ms: int) -> str:
    """Format an offset as M:SS"""
    minutes = offset_ms // 60000
    seconds = (offset_ms % 60000) // 1000
    return f"{minutes}:{seconds:02d}"


def render_comment(comment: Comment, max_length: int = MAX_COMMENT_LENGTH) -> str:
    text_parts = []
    url_parts = []
    for line in comment.text.split("\n"):
        if is_url_line(line):
            url_parts.append(line)
        elif line.strip():
            text_parts.append(line)

    message = f"💬 **{comment.user_name}:**"
    if text_parts:
        message += f" {truncate_text(' '.join(text_parts), max_length)}"

    # URLs on their own lines so Discord embeds GIFs and images
    if url_parts:
        message += "\n" + "\n".join(url_parts)
    return message


def render_reaction(reaction: Reaction) -> str:
    big_emoji = " ".join([reaction.emoji] * REACTION_BIG_REPEAT)
    return f"**{reaction.user_name}:**\n\n{big_emoji}"


def comment_text_from_message(message: discord.Message) -> str:
    """Message text plus attachment and sticker URLs, one per line."""
    lines = []
    content = message.content.strip()
    if content:
        lines.append(content)
    lines.extend(attachment.url for attachment in message.attachments)
    lines.extend(sticker.url for sticker in message.stickers)
    return "\n".join(lines)


class TimelineScheduler:
    """Stores annotations and replays them against the active tracking session."""

    def __init__(
        self,
        store: MusicDatabase,
        sessions: SessionRegistry,
        get_channel: Callable[[int], Any],
        max_comment_length: int = MAX_COMMENT_LENGTH,
        ignore_prefix: str = COMMAND_PREFIX,
    ):
        self.store = store
        self.sessions = sessions
        self.get_channel = get_channel
        self.max_comment_length = max_comment_length
        self.ignore_prefix = ignore_prefix

    # ---- Capture ----

    def record_comment(
        self,
        room_id: int,
        track_url: str,
        user_id: int,
        user_name: str,
        text: str,
        offset_ms: int,
    ) -> Comment:
        """Persist a comment in full; truncation only happens when it is displayed."""
        comment = Comment(
            track_url=track_url,
            room_id=room_id,
            user_id=user_id,
            user_name=user_name,
            offset_ms=offset_ms,
            text=text,
        )
        self.store.save_comment(comment)
        return comment

    def record_reaction(
        self,
        room_id: int,
        track_url: str,
        user_id: int,
        user_name: str,
        emoji: str,
        offset_ms: int,
    ) -> Reaction:
        reaction = Reaction(
            track_url=track_url,
            room_id=room_id,
            user_id=user_id,
            user_name=user_name,
            offset_ms=offset_ms,
            emoji=emoji,
        )
        self.store.save_reaction(reaction)
        return reaction

    async def handle_reply(self, message: discord.Message) -> bool:
        """
        Record a reply to the tracked "Now Playing" message as a comment.

        Returns True if the message was a reply to the active session's anchor
        (even if it turned out to be empty), False if it is none of our business.
        """
        if message.author.bot:
            return False
        if self.ignore_prefix and message.content.startswith(self.ignore_prefix):
            return False
        if message.reference is None or message.reference.message_id is None:
            return False
        if message.guild is None:
            return False

        session = self.sessions.get_active(message.guild.id)
        if session is None or message.reference.message_id != session.anchor_message_id:
            return False

        offset_ms = self.sessions.offset_ms(session)
        user_name = message.author.display_name

        text = comment_text_from_message(message)
        if not text:
            log.debug("Ignored empty reply from %s", user_name)
            return True

        try:
            self.record_comment(
                session.room_id, session.track_url, message.author.id, user_name, text, offset_ms
            )
        except sqlite3.Error:
            log.exception("Failed to save comment from %s", user_name)
            return True

        log.info("Recorded comment from %s at %s: %r", user_name, format_offset(offset_ms), text[:50])

        try:
            await message.add_reaction(CONFIRM_EMOJI)
        except discord.HTTPException as e:
            log.debug("Could not confirm comment: %s", e)
        return True

    def handle_reaction(
        self,
        room_id: int | None,
        message_id: int,
        user_id: int,
        user_name: str,
        emoji: str,
        is_bot: bool = False,
    ) -> bool:
        """Record a reaction placed on the active anchor message. Returns True if handled."""
        if is_bot or room_id is None:
            return False

        session = self.sessions.get_active(room_id)
        if session is None or session.anchor_message_id != message_id:
            return False

        offset_ms = self.sessions.offset_ms(session)
        try:
            self.record_reaction(room_id, session.track_url, user_id, user_name, emoji, offset_ms)
        except sqlite3.Error:
            log.exception("Failed to save reaction from %s", user_name)
            return True

        log.info("Recorded reaction from %s at %s: %s", user_name, format_offset(offset_ms), emoji)
        return True

    # ---- Replay ----

    def merged_timeline(self, room_id: int, track_url: str) -> list[Annotation]:
        """Comments and reactions for a track, by offset, comments first on ties."""
        items: list[Annotation] = [
            *self.store.get_comments(track_url, room_id),
            *self.store.get_reactions(track_url, room_id),
        ]
        items.sort(key=lambda item: (item.offset_ms, _KIND_ORDER[type(item)]))
        return items

    def schedule_playback(self, room_id: int, track_url: str) -> int:
        """
        Schedule every stored annotation of the track against the active session.

        Annotations sharing an offset go out from a single task, in timeline
        order, so timer jitter cannot reorder them. Returns the number of
        annotations scheduled; scheduling the same track twice in one session
        schedules nothing the second time.
        """
        session = self.sessions.get_active(room_id)
        if session is None:
            log.warning("No active session for guild %s, cannot schedule playback", room_id)
            return 0
        if track_url in session.scheduled_urls:
            log.debug("Playback already scheduled for %s in this session", track_url)
            return 0
        session.scheduled_urls.add(track_url)

        items = self.merged_timeline(room_id, track_url)
        if not items:
            log.debug("No comments or reactions to play back for track: %s", track_url)
            return 0

        comments = sum(1 for item in items if isinstance(item, Comment))
        log.info(
            "Scheduling %d comments and %d reactions for playback",
            comments,
            len(items) - comments,
        )

        for offset_ms, batch in itertools.groupby(items, key=lambda item: item.offset_ms):
            task = asyncio.create_task(self._deliver_batch(session, offset_ms, list(batch)))
            session.add_task(task)
        return len(items)

    async def _deliver_batch(
        self, session: TrackingSession, offset_ms: int, items: list[Annotation]
    ) -> None:
        await asyncio.sleep(offset_ms / 1000)
        for item in items:
            if session.cancelled:
                return
            await self._deliver(session, item)

    def render(self, item: Annotation) -> str:
        if isinstance(item, Comment):
            return render_comment(item, self.max_comment_length)
        return render_reaction(item)

    async def _deliver(self, session: TrackingSession, item: Annotation) -> None:
        """Send one annotation. Failures are logged and never stop the rest of the timeline."""
        channel = self.get_channel(session.channel_id)
        if channel is None:
            log.warning("Channel %s is gone, skipping playback at %dms", session.channel_id, item.offset_ms)
            return

        try:
            await channel.send(self.render(item))
        except Exception as e:
            log.warning("Failed to send playback at %dms: %s", item.offset_ms, e)
            return

        log.debug("Displayed %s at %dms: %s", type(item).__name__.lower(), item.offset_ms, item.user_name)
