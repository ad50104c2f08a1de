"""Identity context the samples are attributed to."""

import threading
from typing import Callable, List, Optional
from pydantic import BaseModel, ConfigDict
from sharedUtils.logger.logger import get_logger

logger = get_logger(__name__)

IdentityListener = Callable[[Optional['Identity'], Optional['Identity']], None]


class Identity(BaseModel):
    """
    Authenticated user scope.

    Attributes:
        user_id: Owner of the samples on the remote store
        access_token: Bearer token presented to the remote store
        device_id: Optional device filter used by read queries
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    access_token: str
    device_id: Optional[str] = None


class IdentityProvider:
    """
    Holds the current identity and notifies subscribers of every transition.

    Listeners are called with ``(previous, current)`` outside the internal
    lock, in subscription order. ``current`` is None after a logout.
    Every login notifies, even when the identity did not change.
    """

    def __init__(self, identity: Optional[Identity] = None):
        self._lock = threading.Lock()
        self._identity = identity
        self._listeners: List[IdentityListener] = []

    def current(self) -> Optional[Identity]:
        with self._lock:
            return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self.current() is not None

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def login(self, identity: Identity) -> None:
        logger.info("Identity changed to user %s", identity.user_id)
        self._transition(identity)

    def logout(self) -> None:
        logger.info("Identity cleared")
        self._transition(None)

    def _transition(self, new: Optional[Identity]) -> None:
        with self._lock:
            old = self._identity
            self._identity = new
            listeners = list(self._listeners)

        # A repeated login is still an event: it renews refused credentials
        if old is None and new is None:
            return

        for listener in listeners:
            listener(old, new)
