import asyncio
from types import SimpleNamespace

import pytest

from trackchat.annotations.sessions import SessionRegistry
from trackchat.annotations.timeline import (
    TimelineScheduler,
    render_comment,
    render_reaction,
    truncate_text,
)
from trackchat.models.annotation import Comment, Reaction

ROOM = 42
TRACK_URL = "https://www.youtube.com/watch?v=track"
OTHER_URL = "https://www.youtube.com/watch?v=other"
CHANNEL_ID = 7
ANCHOR_ID = 555


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeChannel:
    def __init__(self, fail_on: set[str] | None = None):
        self.sent: list[str] = []
        self.fail_on = fail_on or set()

    async def send(self, content: str):
        if any(marker in content for marker in self.fail_on):
            raise RuntimeError("Unknown Channel")
        self.sent.append(content)


def _scheduler(db, channel=None, clock=None):
    sessions = SessionRegistry(clock=clock) if clock else SessionRegistry()
    channels = {CHANNEL_ID: channel} if channel else {}
    return TimelineScheduler(db, sessions, get_channel=channels.get)


def _message(content="", reply_to=ANCHOR_ID, bot=False, attachments=(), stickers=()):
    reactions = []

    async def add_reaction(emoji):
        reactions.append(emoji)

    message = SimpleNamespace(
        author=SimpleNamespace(id=99, bot=bot, display_name="alice"),
        content=content,
        reference=SimpleNamespace(message_id=reply_to) if reply_to else None,
        guild=SimpleNamespace(id=ROOM),
        attachments=[SimpleNamespace(url=url) for url in attachments],
        stickers=[SimpleNamespace(url=url) for url in stickers],
        add_reaction=add_reaction,
    )
    message.reactions_added = reactions
    return message


# ---- Display text ----


def test_long_comment_is_truncated_for_display_only(db):
    text = "a" * 250
    scheduler = _scheduler(db)

    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", text, 0)

    shown = truncate_text(text)
    assert len(shown) == 200
    assert shown == "a" * 197 + "..."
    [stored] = db.get_comments(TRACK_URL, ROOM)
    assert stored.text == text


def test_url_is_never_truncated():
    url = "https://example.com/" + "x" * 230
    assert len(url) == 250
    assert truncate_text(url) == url


def test_multiline_truncates_text_lines_only():
    url = "https://media.tenor.com/" + "g" * 300
    text = "b" * 220 + "\n" + url

    assert truncate_text(text) == "b" * 197 + "...\n" + url


def test_short_text_is_unchanged():
    assert truncate_text("nice drop") == "nice drop"


def test_render_comment_puts_urls_on_their_own_lines():
    comment = Comment(
        track_url=TRACK_URL,
        room_id=ROOM,
        user_id=1,
        user_name="alice",
        offset_ms=0,
        text="look at this\nhttps://a.example/1.gif\nhttps://a.example/2.png",
    )

    assert render_comment(comment) == (
        "💬 **alice:** look at this\nhttps://a.example/1.gif\nhttps://a.example/2.png"
    )


def test_render_reaction_repeats_emoji():
    reaction = Reaction(
        track_url=TRACK_URL, room_id=ROOM, user_id=1, user_name="bob", offset_ms=0, emoji="🔥"
    )

    assert render_reaction(reaction) == "**bob:**\n\n🔥 🔥 🔥"


def test_negative_offset_is_rejected(db):
    with pytest.raises(ValueError):
        _scheduler(db).record_comment(ROOM, TRACK_URL, 1, "alice", "hi", -1)
    with pytest.raises(ValueError):
        _scheduler(db).record_reaction(ROOM, TRACK_URL, 1, "alice", "🔥", -5)


# ---- Merge order ----


def test_comment_comes_before_reaction_at_same_offset(db):
    scheduler = _scheduler(db)
    scheduler.record_reaction(ROOM, TRACK_URL, 2, "bob", "🔥", 2000)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "drop!", 2000)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "intro", 500)
    scheduler.record_reaction(ROOM, TRACK_URL, 2, "bob", "👏", 3000)

    timeline = scheduler.merged_timeline(ROOM, TRACK_URL)

    assert [(type(item).__name__, item.offset_ms) for item in timeline] == [
        ("Comment", 500),
        ("Comment", 2000),
        ("Reaction", 2000),
        ("Reaction", 3000),
    ]


def test_timeline_is_scoped_to_track_and_room(db):
    scheduler = _scheduler(db)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "mine", 100)
    scheduler.record_comment(ROOM, OTHER_URL, 1, "alice", "other track", 100)
    scheduler.record_comment(ROOM + 1, TRACK_URL, 1, "alice", "other room", 100)

    assert [c.text for c in scheduler.merged_timeline(ROOM, TRACK_URL)] == ["mine"]


# ---- Replay ----


def test_recorded_comment_replays_once_in_next_session(db):
    channel = FakeChannel()
    scheduler = _scheduler(db, channel)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "nice drop", 30)

    async def main():
        scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
        first = scheduler.schedule_playback(ROOM, TRACK_URL)
        second = scheduler.schedule_playback(ROOM, TRACK_URL)
        await asyncio.sleep(0.01)
        early = list(channel.sent)
        await asyncio.sleep(0.15)
        return first, second, early

    first, second, early = asyncio.run(main())

    assert (first, second) == (1, 0)
    assert early == []
    assert channel.sent == ["💬 **alice:** nice drop"]


def test_same_offset_delivers_comment_then_reaction(db):
    channel = FakeChannel()
    scheduler = _scheduler(db, channel)
    scheduler.record_reaction(ROOM, TRACK_URL, 2, "bob", "🔥", 20)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "here it comes", 20)

    async def main():
        scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
        scheduler.schedule_playback(ROOM, TRACK_URL)
        await asyncio.sleep(0.1)

    asyncio.run(main())

    assert channel.sent == ["💬 **alice:** here it comes", "**bob:**\n\n🔥 🔥 🔥"]


def test_superseding_session_cancels_pending_deliveries(db):
    channel = FakeChannel()
    scheduler = _scheduler(db, channel)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "first", 100)
    scheduler.record_reaction(ROOM, TRACK_URL, 2, "bob", "🔥", 500)

    async def main():
        scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
        scheduler.schedule_playback(ROOM, TRACK_URL)
        await asyncio.sleep(0.05)
        scheduler.sessions.start(ROOM, ANCHOR_ID + 1, CHANNEL_ID, OTHER_URL)
        await asyncio.sleep(0.6)

    asyncio.run(main())

    assert channel.sent == []


def test_stop_cancels_pending_deliveries(db):
    channel = FakeChannel()
    scheduler = _scheduler(db, channel)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "later", 100)

    async def main():
        scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
        scheduler.schedule_playback(ROOM, TRACK_URL)
        assert scheduler.sessions.stop(ROOM) == 1
        await asyncio.sleep(0.2)

    asyncio.run(main())

    assert channel.sent == []


def test_failed_delivery_does_not_stop_the_rest(db):
    channel = FakeChannel(fail_on={"boom"})
    scheduler = _scheduler(db, channel)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "boom", 10)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "still here", 10)
    scheduler.record_reaction(ROOM, TRACK_URL, 2, "bob", "👏", 30)

    async def main():
        scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
        scheduler.schedule_playback(ROOM, TRACK_URL)
        await asyncio.sleep(0.15)

    asyncio.run(main())

    assert channel.sent == ["💬 **alice:** still here", "**bob:**\n\n👏 👏 👏"]


def test_missing_channel_is_skipped(db):
    scheduler = _scheduler(db, channel=None)
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "into the void", 10)

    async def main():
        scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
        count = scheduler.schedule_playback(ROOM, TRACK_URL)
        await asyncio.sleep(0.1)
        return count

    assert asyncio.run(main()) == 1


def test_schedule_without_session_does_nothing(db):
    scheduler = _scheduler(db, FakeChannel())
    scheduler.record_comment(ROOM, TRACK_URL, 1, "alice", "hi", 10)

    assert scheduler.schedule_playback(ROOM, TRACK_URL) == 0


# ---- Capture ----


def test_reply_to_anchor_is_recorded_with_offset(db):
    clock = FakeClock()
    scheduler = _scheduler(db, clock=clock)
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
    clock.now += 3.0
    message = _message("nice drop", attachments=["https://cdn.example/a.gif"])

    handled = asyncio.run(scheduler.handle_reply(message))

    assert handled
    [comment] = db.get_comments(TRACK_URL, ROOM)
    assert comment.offset_ms == 3000
    assert comment.text == "nice drop\nhttps://cdn.example/a.gif"
    assert comment.user_name == "alice"
    assert comment.user_id == 99
    assert message.reactions_added == ["💬"]


def test_sticker_only_reply_is_recorded(db):
    scheduler = _scheduler(db, clock=FakeClock())
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)

    asyncio.run(scheduler.handle_reply(_message("", stickers=["https://media.example/s.png"])))

    [comment] = db.get_comments(TRACK_URL, ROOM)
    assert comment.text == "https://media.example/s.png"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": "#skip"},
        {"content": "hello", "reply_to": None},
        {"content": "hello", "reply_to": ANCHOR_ID + 1},
        {"content": "hello", "bot": True},
    ],
)
def test_unrelated_messages_are_ignored(db, kwargs):
    scheduler = _scheduler(db, clock=FakeClock())
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)

    assert asyncio.run(scheduler.handle_reply(_message(**kwargs))) is False
    assert db.get_comments(TRACK_URL, ROOM) == []


def test_reply_without_session_is_ignored(db):
    scheduler = _scheduler(db, clock=FakeClock())

    assert asyncio.run(scheduler.handle_reply(_message("hello"))) is False


def test_empty_reply_is_handled_but_not_stored(db):
    scheduler = _scheduler(db, clock=FakeClock())
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)

    assert asyncio.run(scheduler.handle_reply(_message("   "))) is True
    assert db.get_comments(TRACK_URL, ROOM) == []


def test_reaction_on_anchor_is_recorded(db):
    clock = FakeClock()
    scheduler = _scheduler(db, clock=clock)
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
    clock.now += 1.5

    assert scheduler.handle_reaction(ROOM, ANCHOR_ID, 5, "bob", "🔥")

    [reaction] = db.get_reactions(TRACK_URL, ROOM)
    assert (reaction.emoji, reaction.offset_ms, reaction.user_name) == ("🔥", 1500, "bob")


def test_reaction_elsewhere_or_by_bot_is_ignored(db):
    scheduler = _scheduler(db, clock=FakeClock())
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)

    assert not scheduler.handle_reaction(ROOM, ANCHOR_ID + 1, 5, "bob", "🔥")
    assert not scheduler.handle_reaction(ROOM, ANCHOR_ID, 5, "bot", "🔥", is_bot=True)
    assert not scheduler.handle_reaction(None, ANCHOR_ID, 5, "bob", "🔥")
    assert db.get_reactions(TRACK_URL, ROOM) == []


def test_capture_persists_after_session_ends(db):
    clock = FakeClock()
    scheduler = _scheduler(db, clock=clock)
    scheduler.sessions.start(ROOM, ANCHOR_ID, CHANNEL_ID, TRACK_URL)
    clock.now += 2.0
    scheduler.handle_reaction(ROOM, ANCHOR_ID, 5, "bob", "🎉")
    scheduler.sessions.stop(ROOM)

    assert [r.offset_ms for r in db.get_reactions(TRACK_URL, ROOM)] == [2000]
