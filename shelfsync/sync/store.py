"""
Single-writer holder of the current sync state.
"""

from typing import Callable, List, Optional

from shelfsync.sync.models import Initial, SyncState
from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[SyncState], None]


class StoreDisposedError(RuntimeError):
    """Raised when an operation is started on a disposed store."""


class StateStore:
    """
    Holds exactly one immutable SyncState and publishes every replacement.

    ``emit`` is the only write path. Subscribers are notified synchronously
    in subscription order. Once disposed, writes are dropped so results of
    operations that finish after teardown are discarded.
    """

    def __init__(self, initial: Optional[SyncState] = None):
        self._state: SyncState = initial if initial is not None else Initial()
        self._subscribers: List[Subscriber] = []
        self._disposed = False
        self.version = 0

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def disposed(self) -> bool:
        return self._disposed

    def ensure_active(self) -> None:
        if self._disposed:
            raise StoreDisposedError("Cannot operate on a disposed state store")

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            Callable that removes the subscription
        """
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(self, state: SyncState) -> bool:
        """
        Replace the state and notify subscribers.

        Returns:
            False if the store is disposed and the write was dropped
        """
        if self._disposed:
            logger.debug("Dropping state write after dispose", state=type(state).__name__)
            return False
        self._state = state
        self.version += 1
        for subscriber in list(self._subscribers):
            try:
                subscriber(state)
            except Exception:
                logger.exception("State subscriber failed")
        return True

    def dispose(self) -> None:
        self._disposed = True
        self._subscribers.clear()
