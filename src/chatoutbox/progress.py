"""
Worker-local progress cache: which chat message currently shows a progress slot.

Keyed by (destination, progress_key). Not persisted; a restarted worker
simply sends a fresh message for the next update of each slot.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from chatoutbox.types import Destination

# Idle entries are evicted after this many seconds.
PROGRESS_TTL_SECONDS = 30 * 60

ProgressKey = Tuple[Destination, str]


@dataclass
class ProgressEntry:
    message_id: int
    text: str
    reply_markup: Optional[dict]
    updated_at: float
    # created_at of the newest update the message shows.
    applied_at: Optional[datetime] = None

    def same_content(self, text: str, reply_markup: Optional[dict]) -> bool:
        return self.text == text and (self.reply_markup or None) == (reply_markup or None)

    def is_newer_than(self, created_at: Optional[datetime]) -> bool:
        """True if the message already shows an update enqueued after created_at."""
        if self.applied_at is None or created_at is None:
            return False
        return created_at < self.applied_at

    def mark_applied(self, created_at: Optional[datetime]) -> None:
        if created_at is not None and not self.is_newer_than(created_at):
            self.applied_at = created_at


class ProgressCache:
    """Map of progress slots to the physical message that displays them."""

    def __init__(
        self,
        ttl_seconds: float = PROGRESS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[ProgressKey, ProgressEntry] = {}

    def get(self, destination: Destination, progress_key: str) -> Optional[ProgressEntry]:
        return self._entries.get((destination, progress_key))

    def bind(
        self,
        destination: Destination,
        progress_key: str,
        message_id: int,
        text: str,
        reply_markup: Optional[dict],
        applied_at: Optional[datetime] = None,
    ) -> ProgressEntry:
        """Point the slot at message_id with this content (new or rebound)."""
        entry = ProgressEntry(
            message_id=message_id,
            text=text,
            reply_markup=reply_markup,
            updated_at=self._clock(),
            applied_at=applied_at,
        )
        self._entries[(destination, progress_key)] = entry
        return entry

    def touch(
        self,
        entry: ProgressEntry,
        text: str,
        reply_markup: Optional[dict],
        applied_at: Optional[datetime] = None,
    ) -> None:
        """Record that entry's message now shows this content."""
        entry.text = text
        entry.reply_markup = reply_markup
        entry.updated_at = self._clock()
        entry.mark_applied(applied_at)

    def evict_idle(self) -> int:
        """Drop entries not updated within the TTL. Returns how many were dropped."""
        cutoff = self._clock() - self.ttl_seconds
        stale = [k for k, e in self._entries.items() if e.updated_at < cutoff]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: ProgressKey) -> bool:
        return key in self._entries
