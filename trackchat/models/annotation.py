from dataclasses import dataclass
from datetime import datetime


@dataclass
class Annotation:
    """Something a listener left on a track, pinned to an offset from the session start."""

    track_url: str
    room_id: int
    user_id: int
    user_name: str
    offset_ms: int
    created_at: datetime | None = None

    def __post_init__(self):
        if self.offset_ms < 0:
            raise ValueError(f"offset_ms must be >= 0, got {self.offset_ms}")


@dataclass
class Comment(Annotation):
    text: str = ""


@dataclass
class Reaction(Annotation):
    emoji: str = ""
