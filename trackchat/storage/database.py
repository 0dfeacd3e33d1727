import logging
import sqlite3
from datetime import datetime

from trackchat.models.annotation import Comment, Reaction

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS play_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_url TEXT NOT NULL,
    video_title TEXT NOT NULL,
    user_id TEXT NOT NULL,
    user_name TEXT NOT NULL,
    guild_id TEXT NOT NULL,
    played_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_video_url ON play_history(video_url);
CREATE INDEX IF NOT EXISTS idx_user_id ON play_history(user_id);
CREATE INDEX IF NOT EXISTS idx_guild_id ON play_history(guild_id);

CREATE TABLE IF NOT EXISTS track_comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_url TEXT NOT NULL,
    guild_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    user_name TEXT NOT NULL,
    comment_text TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_track_comments_video ON track_comments(video_url, guild_id);

CREATE TABLE IF NOT EXISTS track_reactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_url TEXT NOT NULL,
    guild_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    user_name TEXT NOT NULL,
    reaction_emoji TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_track_reactions_video ON track_reactions(video_url, guild_id);
"""


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class MusicDatabase:
    """SQLite store for play history and track annotations."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            log.info("Initialized SQLite database at %s", self.db_path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            log.info("Closed database connection")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self.conn:
            return self.conn.execute(sql, params)

    # ---- Play history ----

    def record_play(
        self, track_url: str, title: str, user_id: int, user_name: str, room_id: int
    ) -> None:
        self._execute(
            """
            INSERT INTO play_history (video_url, video_title, user_id, user_name, guild_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (track_url, title, str(user_id), user_name, str(room_id)),
        )
        log.debug("Recorded play: %r by %s", title, user_name)

    def top_tracks(self, room_id: int, limit: int = 10) -> list[dict]:
        """Most played tracks in a guild, most recent first on equal counts."""
        rows = self.conn.execute(
            """
            SELECT video_url, video_title, COUNT(*) AS play_count, MAX(played_at) AS last_played
            FROM play_history
            WHERE guild_id = ?
            GROUP BY video_url
            ORDER BY play_count DESC, last_played DESC
            LIMIT ?
            """,
            (str(room_id), limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def top_tracks_by_user(self, room_id: int, user_id: int, limit: int = 10) -> list[dict]:
        rows = self.conn.execute(
            """
            SELECT video_url, video_title, COUNT(*) AS play_count, MAX(played_at) AS last_played
            FROM play_history
            WHERE guild_id = ? AND user_id = ?
            GROUP BY video_url
            ORDER BY play_count DESC, last_played DESC
            LIMIT ?
            """,
            (str(room_id), str(user_id), limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def top_listeners(self, room_id: int, limit: int = 10) -> list[dict]:
        rows = self.conn.execute(
            """
            SELECT user_id, user_name, COUNT(*) AS play_count
            FROM play_history
            WHERE guild_id = ?
            GROUP BY user_id
            ORDER BY play_count DESC
            LIMIT ?
            """,
            (str(room_id), limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def total_plays(self, room_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total FROM play_history WHERE guild_id = ?",
            (str(room_id),),
        ).fetchone()
        return row["total"] if row else 0

    def user_total_plays(self, room_id: int, user_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total FROM play_history WHERE guild_id = ? AND user_id = ?",
            (str(room_id), str(user_id)),
        ).fetchone()
        return row["total"] if row else 0

    def clear_music_stats(self, room_id: int) -> int:
        cursor = self._execute("DELETE FROM play_history WHERE guild_id = ?", (str(room_id),))
        log.info("Cleared %d music stats records for guild %s", cursor.rowcount, room_id)
        return cursor.rowcount

    # ---- Track annotations ----

    def save_comment(self, comment: Comment) -> None:
        self._execute(
            """
            INSERT INTO track_comments
                (video_url, guild_id, user_id, user_name, comment_text, timestamp_ms)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                comment.track_url,
                str(comment.room_id),
                str(comment.user_id),
                comment.user_name,
                comment.text,
                comment.offset_ms,
            ),
        )
        log.debug("Saved track comment at %dms by %s", comment.offset_ms, comment.user_name)

    def save_reaction(self, reaction: Reaction) -> None:
        self._execute(
            """
            INSERT INTO track_reactions
                (video_url, guild_id, user_id, user_name, reaction_emoji, timestamp_ms)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                reaction.track_url,
                str(reaction.room_id),
                str(reaction.user_id),
                reaction.user_name,
                reaction.emoji,
                reaction.offset_ms,
            ),
        )
        log.debug("Saved track reaction at %dms by %s", reaction.offset_ms, reaction.user_name)

    def get_comments(self, track_url: str, room_id: int) -> list[Comment]:
        """All comments on a track in a guild, ordered by offset then insertion."""
        rows = self.conn.execute(
            """
            SELECT user_id, user_name, comment_text, timestamp_ms, created_at
            FROM track_comments
            WHERE video_url = ? AND guild_id = ?
            ORDER BY timestamp_ms ASC, id ASC
            """,
            (track_url, str(room_id)),
        ).fetchall()
        return [
            Comment(
                track_url=track_url,
                room_id=room_id,
                user_id=int(row["user_id"]),
                user_name=row["user_name"],
                offset_ms=row["timestamp_ms"],
                created_at=_parse_timestamp(row["created_at"]),
                text=row["comment_text"],
            )
            for row in rows
        ]

    def get_reactions(self, track_url: str, room_id: int) -> list[Reaction]:
        rows = self.conn.execute(
            """
            SELECT user_id, user_name, reaction_emoji, timestamp_ms, created_at
            FROM track_reactions
            WHERE video_url = ? AND guild_id = ?
            ORDER BY timestamp_ms ASC, id ASC
            """,
            (track_url, str(room_id)),
        ).fetchall()
        return [
            Reaction(
                track_url=track_url,
                room_id=room_id,
                user_id=int(row["user_id"]),
                user_name=row["user_name"],
                offset_ms=row["timestamp_ms"],
                created_at=_parse_timestamp(row["created_at"]),
                emoji=row["reaction_emoji"],
            )
            for row in rows
        ]

    def clear_annotations(self, room_id: int, track_url: str | None = None) -> int:
        """Delete comments and reactions for a guild, or for one track in it."""
        if track_url is None:
            where, params = "guild_id = ?", (str(room_id),)
        else:
            where, params = "video_url = ? AND guild_id = ?", (track_url, str(room_id))

        deleted = 0
        with self.conn:
            for table in ("track_comments", "track_reactions"):
                deleted += self.conn.execute(f"DELETE FROM {table} WHERE {where}", params).rowcount

        log.info("Cleared %d annotations for guild %s (track: %s)", deleted, room_id, track_url or "all")
        return deleted
