"""
Session manager.

One observable store per client runtime holds the authenticated session.
Consumers register on mount and deregister on teardown; the store itself
only changes when the backend reports an auth-state transition.
"""

import logging
from typing import Callable, List, Optional

from hackbuddy.models import Identity, Session

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Session]], None]

ANONYMOUS_NAME = "Anonymous User"


def display_name(identity: Identity) -> str:
    """Name used for a lazily created profile."""
    if identity.full_name:
        return identity.full_name
    if identity.email:
        local_part = identity.email.split("@")[0]
        if local_part:
            return local_part
    return ANONYMOUS_NAME


class SessionStore:
    def __init__(self):
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []
        self._unbind: Optional[Callable[[], None]] = None

    @property
    def current(self) -> Optional[Session]:
        return self._session

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity if self._session else None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, session: Optional[Session]):
        self._session = session
        for listener in list(self._listeners):
            listener(session)

    async def bind(self, backend) -> Optional[Session]:
        """Seed from the backend and mirror its later auth-state changes."""
        self.unbind()
        self.publish(await backend.get_session())
        self._unbind = backend.on_auth_state_change(self._on_auth_event)
        return self._session

    def unbind(self):
        if self._unbind is not None:
            self._unbind()
            self._unbind = None

    def _on_auth_event(self, event: str, session: Optional[Session]):
        logger.debug("Auth state changed: %s", event)
        self.publish(session)
