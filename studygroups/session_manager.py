"""
Session Manager - Holds the bearer credential used for portal requests
Saves and loads the token from local file storage and broadcasts the
"session expired" / "session renewed" signals the sync engine reacts to
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Dict, Any, Callable, List

from .config import settings
from .errors import AuthExpiredError
from .models import MessageAuthor

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class SessionManager:
    """Owns the current credential and its expiry"""

    def __init__(self, session_file: Optional[Path] = None, ttl_hours: Optional[int] = None):
        self.session_file = Path(session_file) if session_file else settings.SESSION_DIR / "session.json"
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.TOKEN_TTL_HOURS)

        self.access_token: Optional[str] = None
        self.user: Optional[MessageAuthor] = None
        self.expires_at: Optional[datetime] = None
        self.expired = False

        self._expired_listeners: List[Listener] = []
        self._renewed_listeners: List[Listener] = []

    # Signals

    def on_expired(self, callback: Listener) -> Callable[[], None]:
        self._expired_listeners.append(callback)
        return lambda: self._expired_listeners.remove(callback)

    def on_renewed(self, callback: Listener) -> Callable[[], None]:
        self._renewed_listeners.append(callback)
        return lambda: self._renewed_listeners.remove(callback)

    # Lifecycle

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token) and not self.expired

    def start(self, access_token: str, user: MessageAuthor, expires_at: Optional[datetime] = None,
              persist: bool = True):
        """
        Install a fresh credential (after login or re-authentication)

        Args:
            access_token: JWT issued by the portal
            user: Identity of the logged-in user, used as author of optimistic messages
            expires_at: Token expiry; defaults to now + TTL
            persist: Also write the session file
        """
        was_expired = self.expired
        self.access_token = access_token
        self.user = user
        self.expires_at = expires_at or datetime.now(timezone.utc) + self.ttl
        self.expired = False
        logger.info("Session started for %s (expires %s)", user.id, self.expires_at.isoformat())

        if persist:
            self.save_session()
        if was_expired:
            for callback in list(self._renewed_listeners):
                callback()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expired:
            return True
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def check_expiry(self, now: Optional[datetime] = None) -> bool:
        """Periodic check; fires the expiry signal once the TTL has passed"""
        if self.access_token and not self.expired and self.is_expired(now):
            self.expire("token lifetime elapsed")
        return self.expired

    def expire(self, reason: str = ""):
        """Drop the credential and notify listeners. Idempotent."""
        if self.expired:
            return
        logger.warning("Session expired%s", f": {reason}" if reason else "")
        self.expired = True
        self.access_token = None
        self.clear_session()
        for callback in list(self._expired_listeners):
            callback()

    def auth_headers(self) -> Dict[str, str]:
        """Authorization header for the next request"""
        if self.expired or not self.access_token:
            raise AuthExpiredError()
        return {"Authorization": f"Bearer {self.access_token}"}

    # Persistence

    def save_session(self) -> bool:
        try:
            self.session_file.parent.mkdir(parents=True, exist_ok=True)
            session_data = {
                "access_token": self.access_token,
                "expires_at": self.expires_at.isoformat() if self.expires_at else None,
                "user": self.user.model_dump(by_alias=True) if self.user else None,
            }
            with open(self.session_file, 'w') as f:
                json.dump(session_data, f)
            logger.debug("Session saved to %s", self.session_file)
            return True
        except OSError as e:
            logger.error("Error saving session: %s", e)
            return False

    def load_session(self) -> bool:
        """
        Restore a saved credential

        Returns:
            True when a valid, unexpired session was restored
        """
        if not self.session_file.exists():
            logger.debug("No saved session found")
            return False

        try:
            with open(self.session_file, 'r') as f:
                session_data: Dict[str, Any] = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Error loading session: %s", e)
            return False

        required_fields = ['access_token', 'expires_at', 'user']
        if not all(session_data.get(field) for field in required_fields):
            logger.warning("Session file corrupted - missing required fields")
            self.clear_session()
            return False

        expires_at = datetime.fromisoformat(session_data['expires_at'])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) >= expires_at:
            logger.info("Saved session already expired")
            self.clear_session()
            return False

        self.start(
            session_data['access_token'],
            MessageAuthor.model_validate(session_data['user']),
            expires_at=expires_at,
            persist=False,
        )
        return True

    def clear_session(self) -> bool:
        try:
            if self.session_file.exists():
                self.session_file.unlink()
                logger.debug("Session file cleared")
            return True
        except OSError as e:
            logger.error("Error clearing session: %s", e)
            return False


class AuthGate:
    """
    Cancellation handle shared by the sync components.

    Operations take a ticket before suspending and verify it afterwards;
    an expiry in between bumps the epoch so the result is treated as failed.
    """

    def __init__(self, session: Optional[SessionManager] = None):
        self.epoch = 0
        self.halted = bool(session is not None and session.expired)
        if session is not None:
            session.on_expired(self.halt)
            session.on_renewed(self.resume)

    def halt(self):
        if not self.halted:
            self.halted = True
            self.epoch += 1

    def resume(self):
        self.halted = False

    def check(self) -> int:
        """Ticket for an operation about to start"""
        if self.halted:
            raise AuthExpiredError()
        return self.epoch

    def verify(self, ticket: int):
        if self.halted or ticket != self.epoch:
            raise AuthExpiredError()
