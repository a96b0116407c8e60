import time
from typing import Callable, Dict, Hashable, List


Clock = Callable[[], float]


class SuppressionGate:
    """Keyed, time-bounded gates that silence external refreshes.

    A gate opened with ``suppress`` stays active until ``release`` or until
    ``window`` seconds pass, whichever comes first, so a forgotten release can
    never suppress refreshes for longer than the window.
    """

    def __init__(self, window: float, clock: Clock = time.monotonic) -> None:
        self.window = window
        self._clock = clock
        self._deadlines: Dict[Hashable, float] = {}

    def suppress(self, key: Hashable) -> None:
        self._deadlines[key] = self._clock() + self.window

    def release(self, key: Hashable) -> None:
        self._deadlines.pop(key, None)

    def is_suppressed(self, key: Hashable) -> bool:
        deadline = self._deadlines.get(key)
        if deadline is None:
            return False
        if self._clock() >= deadline:
            del self._deadlines[key]
            return False
        return True

    def clear(self) -> None:
        self._deadlines.clear()


class PendingReadOverlay:
    """Conversations the user just read, forced to zero unread until ``ttl`` passes."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._marked_at: Dict[str, float] = {}

    def mark(self, conversation_id: str) -> None:
        self._marked_at[conversation_id] = self._clock()

    def is_active(self, conversation_id: str) -> bool:
        marked_at = self._marked_at.get(conversation_id)
        return marked_at is not None and self._clock() - marked_at < self.ttl

    def discard(self, conversation_id: str) -> None:
        self._marked_at.pop(conversation_id, None)

    def purge_expired(self) -> List[str]:
        now = self._clock()
        expired = [cid for cid, marked_at in self._marked_at.items() if now - marked_at >= self.ttl]
        for cid in expired:
            del self._marked_at[cid]
        return expired

    def active_ids(self) -> List[str]:
        return [cid for cid in self._marked_at if self.is_active(cid)]

    def clear(self) -> None:
        self._marked_at.clear()
