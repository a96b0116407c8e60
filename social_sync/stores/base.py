import logging
from typing import Callable, Hashable, List, Optional, Set


logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class PendingMarkers:
    """Per-entity in-flight guards.

    Every successful ``try_acquire`` must be paired with ``release`` in a
    ``finally`` block.
    """

    def __init__(self) -> None:
        self._pending: Set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        if key in self._pending:
            return False
        self._pending.add(key)
        return True

    def release(self, key: Hashable) -> None:
        self._pending.discard(key)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def keys(self) -> List[Hashable]:
        return list(self._pending)

    def clear(self) -> None:
        self._pending.clear()


class BaseStore:

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self.loading = False
        self.error: Optional[str] = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Store listener failed")

    def clear_error(self) -> None:
        self.error = None
        self._notify()
