"""
Short-lived per-user session state.

Interactive flows (e.g. "send me the QR code for this account within
two minutes") keep a small amount of state between two calls from the
same user. ExpiringSessionMap holds it keyed by (actor_id, resource_id),
evicts lazily on access and on every insert, and can be purged
explicitly. There is no background thread.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")

SessionKey = Tuple[Hashable, Hashable]


class ExpiringSessionMap(Generic[V]):
    """Thread-safe map whose entries expire ``ttl`` seconds after insertion."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[SessionKey, Tuple[float, V]] = {}
        self._lock = threading.Lock()

    def put(self, actor_id: Hashable, resource_id: Hashable, value: V) -> float:
        """Store ``value``, replacing any previous session; returns its deadline.

        Expired sessions of every key are dropped on the way in.
        """
        now = self._clock()
        deadline = now + self.ttl
        with self._lock:
            self._drop_expired(now)
            self._entries[(actor_id, resource_id)] = (deadline, value)
        return deadline

    def get(self, actor_id: Hashable, resource_id: Hashable) -> Optional[V]:
        key = (actor_id, resource_id)
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            if item[0] <= self._clock():
                del self._entries[key]
                return None
            return item[1]

    def pop(self, actor_id: Hashable, resource_id: Hashable) -> Optional[V]:
        """Remove and return a live session (None if absent or expired)."""
        with self._lock:
            item = self._entries.pop((actor_id, resource_id), None)
        if item is None or item[0] <= self._clock():
            return None
        return item[1]

    def remaining(self, actor_id: Hashable, resource_id: Hashable) -> float:
        """Seconds left on a session, 0 when absent or expired."""
        with self._lock:
            item = self._entries.get((actor_id, resource_id))
        if item is None:
            return 0.0
        return max(0.0, item[0] - self._clock())

    def _drop_expired(self, now: float) -> int:
        # Caller holds self._lock
        expired = [k for k, (deadline, _) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._drop_expired(now)

    def __contains__(self, key: SessionKey) -> bool:
        return self.get(*key) is not None

    def __len__(self) -> int:
        self.purge_expired()
        with self._lock:
            return len(self._entries)


@dataclass
class EnrollmentSession:
    """Pending TOTP enrollment for one account."""
    account_id: str
    account_name: str
    user_id: str
    started_at: float
