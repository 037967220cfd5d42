"""
Identity provider capability.

The queue engine only needs to know who the current user is and when that
changes. Any provider that can answer both questions works; the HTTP layer
uses a fixed identity per bearer token, tests and scripts use the
in-memory provider below.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """An authenticated identity."""
    user_id: UUID
    email: Optional[str] = None


SessionCallback = Callable[[Optional[Session]], None]
Unsubscribe = Callable[[], None]


class IdentityProvider(Protocol):
    def get_current_session(self) -> Optional[Session]:
        ...

    def on_session_change(self, callback: SessionCallback) -> Unsubscribe:
        ...


class InMemoryIdentityProvider:
    """Holds the current session and notifies listeners when it changes."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session
        self._listeners: list[SessionCallback] = []

    def get_current_session(self) -> Optional[Session]:
        return self._session

    def on_session_change(self, callback: SessionCallback) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def sign_in(self, session: Session) -> None:
        self._set(session)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, session: Optional[Session]) -> None:
        if session == self._session:
            return
        self._session = session
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Session change listener failed")


class StaticIdentityProvider:
    """A session that never changes (one per bearer token)."""

    def __init__(self, session: Session):
        self._session = session

    def get_current_session(self) -> Optional[Session]:
        return self._session

    def on_session_change(self, callback: SessionCallback) -> Unsubscribe:
        return lambda: None
