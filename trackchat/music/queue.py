from collections import deque

from trackchat.models.track import Track


class RoomQueue:
    """FIFO of tracks waiting to play in one guild."""

    def __init__(self):
        self._tracks: deque[Track] = deque()
        self.current: Track | None = None

    def add(self, track: Track) -> int:
        """Append a track. Returns its position (0 = plays next)."""
        self._tracks.append(track)
        return len(self._tracks) - 1

    def next(self) -> Track | None:
        """Advance to the next track; None (and no current track) when empty."""
        self.current = self._tracks.popleft() if self._tracks else None
        return self.current

    def clear(self) -> None:
        """Drop waiting tracks; the current one keeps playing."""
        self._tracks.clear()

    def get_list(self) -> list[Track]:
        return list(self._tracks)

    def is_empty(self) -> bool:
        return not self._tracks

    def __len__(self) -> int:
        return len(self._tracks)


class QueueManager:
    """Manages queues for all guilds."""

    def __init__(self):
        self._queues: dict[int, RoomQueue] = {}

    def get(self, room_id: int) -> RoomQueue:
        """Get or create a queue for a guild."""
        return self._queues.setdefault(room_id, RoomQueue())

    def remove(self, room_id: int) -> None:
        """Remove a guild's queue (call when bot leaves voice)."""
        self._queues.pop(room_id, None)
