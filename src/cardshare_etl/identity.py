"""cardshare_etl.identity

The authenticated user handed to the pipeline, and an injectable session
event bus.  Sign-up, OTP and password flows live with the auth provider;
this module only carries the identity the ingestion core trusts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

log = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

SESSION_EVENTS = frozenset({SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED})

DEFAULT_SUPPORTER_NAME = "お客様"


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("authenticated user is missing an id")
        if not self.email:
            raise ValueError("authenticated user is missing a verified email")


SessionListener = Callable[[str, "AuthenticatedUser | None"], None]


@dataclass
class SessionEvents:
    """Observable for session lifecycle events."""

    _listeners: list[SessionListener] = field(default_factory=list)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: str, user: AuthenticatedUser | None = None) -> None:
        if event not in SESSION_EVENTS:
            raise ValueError(f"unknown session event: {event!r}")
        for listener in list(self._listeners):
            listener(event, user)


def log_session_event(event: str, user: AuthenticatedUser | None) -> None:
    """Default listener: one log line per session event."""
    log.info("session event %s user=%s", event, user.id if user else None)
