from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class Track:
    """A resolved track. Immutable; queue bookkeeping is set with dataclasses.replace."""

    title: str
    author: str
    url: str  # Canonical URL, also the key for comments and play stats
    thumbnail_url: str | None
    duration_ms: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    requested_by: str | None = None  # Set when queueing
    requested_by_id: int | None = None

    def with_requester(self, name: str, user_id: int) -> "Track":
        """Copy of the track stamped with who queued it."""
        return replace(self, requested_by=name, requested_by_id=user_id)

    @property
    def duration_str(self) -> str:
        """Format duration as MM:SS"""
        total_seconds = self.duration_ms // 1000
        minutes = total_seconds // 60
        seconds = total_seconds % 60
        return f"{minutes}:{seconds:02d}"
