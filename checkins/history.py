from typing import Dict, List, Optional

from .messages import CheckIn

"""
history.py — the reconciliation buffer: latest check-in per identity.

Used on both sides of the wire: the client keeps one to feed its display, and
the relay keeps one as the authoritative recent history it replays to new
connections. Same rule everywhere, so both views converge.

Rules:
- One entry per identity. A strictly newer timestamp replaces; anything else
  is dropped silently. Arrival order doesn't matter, only the timestamps do.
- Equal timestamps: a confirmed copy replaces a pending local echo of itself.
- Over capacity: the entry with the oldest timestamp goes.
- Display order (newest first) is recomputed on every snapshot().

No locking: all mutation happens on the event loop thread.
"""

DEFAULT_CAPACITY = 100


class HistoryBuffer:
    """In-memory identity -> CheckIn map with a hard size bound."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: Dict[str, CheckIn] = {}

    def upsert(self, checkin: CheckIn) -> bool:
        """Apply one check-in. Returns True when the retained set changed."""
        existing = self._entries.get(checkin.identity)
        if existing is None:
            self._entries[checkin.identity] = checkin
            if len(self._entries) > self.capacity:
                self._evict_oldest()
            # The newcomer may itself have been the oldest.
            return checkin.identity in self._entries

        if checkin.timestamp > existing.timestamp:
            self._entries[checkin.identity] = checkin
            return True
        if checkin.timestamp == existing.timestamp and existing.pending and not checkin.pending:
            self._entries[checkin.identity] = checkin
            return True
        return False

    def _evict_oldest(self) -> None:
        oldest = min(self._entries.values(), key=lambda c: c.timestamp)
        del self._entries[oldest.identity]

    def snapshot(self) -> List[CheckIn]:
        """All retained entries, newest first. Pure; safe to call any time."""
        return sorted(self._entries.values(), key=lambda c: c.timestamp, reverse=True)

    def get(self, identity: str) -> Optional[CheckIn]:
        return self._entries.get(identity)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries
