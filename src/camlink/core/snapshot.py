"""
Time-limited cache of snapshot URIs, keyed by profile token.
"""

import time
from typing import Callable, Dict, Optional, Tuple

DEFAULT_SNAPSHOT_TTL = 60.0


class SnapshotCache:
    """
    Caches GetSnapshotUri results so snapshots don't refetch the URI every time.

    Entries expire lazily on lookup; there is no background sweep.
    """

    def __init__(self, ttl: float = DEFAULT_SNAPSHOT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, profile_token: str) -> Optional[str]:
        entry = self._entries.get(profile_token)
        if entry is None:
            return None

        uri, cached_at = entry
        if self._clock() - cached_at >= self.ttl:
            del self._entries[profile_token]
            return None
        return uri

    def set(self, profile_token: str, uri: str):
        self._entries[profile_token] = (uri, self._clock())

    def invalidate(self, profile_token: str):
        self._entries.pop(profile_token, None)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
