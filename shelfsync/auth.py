"""
Authentication state published to the rest of the service.

The login flow itself lives elsewhere; this module only holds the current
state and tells listeners when it changes.
"""

import enum
from typing import Callable, List

from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)


class AuthState(str, enum.Enum):
    INITIAL = "initial"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


AuthListener = Callable[[AuthState], None]


class AuthStateSource:
    """
    Observable auth state machine.

    Listeners are called synchronously, in registration order, with the new
    state. A listener that raises is logged and does not stop the others.
    """

    def __init__(self, initial: AuthState = AuthState.INITIAL):
        self._state = initial
        self._listeners: List[AuthListener] = []

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state == AuthState.AUTHENTICATED

    def add_listener(self, listener: AuthListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AuthListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_state(self, state: AuthState) -> None:
        state = AuthState(state)
        if state == self._state:
            return
        logger.info("Auth state changed", previous=self._state.value, current=state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Auth listener failed", state=state.value)
