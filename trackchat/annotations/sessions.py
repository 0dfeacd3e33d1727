import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

log = logging.getLogger(__name__)


@dataclass
class TrackingSession:
    """Binds one anchor message in a guild to the track currently playing."""

    room_id: int
    anchor_message_id: int
    channel_id: int
    track_url: str
    started_at: float  # Clock seconds, same clock as the owning registry
    cancelled: bool = False
    scheduled_urls: set[str] = field(default_factory=set)
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def add_task(self, task: asyncio.Task) -> None:
        """Register a scheduled delivery so that cancel() can stop it."""
        if self.cancelled:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self) -> int:
        """Cancel every pending delivery. Returns how many were still pending."""
        self.cancelled = True
        count = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                count += 1
        self._tasks.clear()
        return count


class SessionRegistry:
    """At most one active tracking session per guild; a new one replaces the old."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._sessions: dict[int, TrackingSession] = {}

    def offset_ms(self, session: TrackingSession) -> int:
        """Milliseconds elapsed since the session started."""
        return max(0, int((self._clock() - session.started_at) * 1000))

    def start(
        self, room_id: int, anchor_message_id: int, channel_id: int, track_url: str
    ) -> TrackingSession:
        self.stop(room_id)

        session = TrackingSession(
            room_id=room_id,
            anchor_message_id=anchor_message_id,
            channel_id=channel_id,
            track_url=track_url,
            started_at=self._clock(),
        )
        self._sessions[room_id] = session
        log.info("Started tracking session for guild %s, message %s", room_id, anchor_message_id)
        return session

    def stop(self, room_id: int) -> int:
        """End the guild's session, if any. Returns the number of cancelled deliveries."""
        session = self._sessions.pop(room_id, None)
        if session is None:
            return 0

        cancelled = session.cancel()
        log.info(
            "Stopped tracking session for guild %s, cancelled %d scheduled deliveries",
            room_id,
            cancelled,
        )
        return cancelled

    def get_active(self, room_id: int) -> TrackingSession | None:
        return self._sessions.get(room_id)

    def stop_all(self) -> None:
        for room_id in list(self._sessions):
            self.stop(room_id)
