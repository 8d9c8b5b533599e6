"""
Identity sessions.

A Session follows one identity through its lifecycle:

    unknown -> anonymous -> authenticating -> active | banned -> anonymous

The last step happens on logout or when the session expires.

Role and ban flag are taken fresh from the users collection at sign-in and then
followed live, so a promotion or a ban applies without signing in again.
"""

import logging
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

import config
from errors import PortalError
from schemas import HistoryEntry, Identity, Material, Result, User
from store import StudyStore, validation_message

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    BANNED = "banned"


def push_history(entries: List[HistoryEntry], entry: HistoryEntry, limit: int) -> List[HistoryEntry]:
    """Most-recent-first list without repeats of the same material, capped at limit."""
    rest = [e for e in entries if e.material_id != entry.material_id]
    return ([entry] + rest)[:limit]


class Session:
    def __init__(self, store: StudyStore, history_limit: int = config.RECENT_HISTORY_LIMIT):
        self.store = store
        self.history_limit = history_limit
        self.state = SessionState.UNKNOWN
        self.identity: Optional[Identity] = None
        self.role: Optional[str] = None
        self.is_banned = False
        self.recently_viewed: List[HistoryEntry] = []
        self.recently_downloaded: List[HistoryEntry] = []
        self._remove_listener: Optional[Callable[[], None]] = None

    @property
    def signed_in(self) -> bool:
        return self.state in (SessionState.ACTIVE, SessionState.BANNED)

    @property
    def uid(self) -> Optional[str]:
        return self.identity.uid if self.identity else None

    @property
    def is_admin(self) -> bool:
        if not self.signed_in:
            return False
        return self.store.is_admin(str(self.identity.email), self.role)

    def begin_sign_in(self):
        self.state = SessionState.AUTHENTICATING

    def complete_sign_in(self, identity: Identity):
        """Resolve the user document and start following it.

        Gateway failures propagate after the session falls back to anonymous.
        """
        try:
            user = self.store.resolve_identity(identity)
        except Exception:
            self.fail_sign_in()
            raise
        self.identity = identity
        self._apply(user)
        self._remove_listener = self.store.add_user_listener(self._on_users)
        logger.info("User %s signed in (%s)", identity.uid, self.state.value)

    def fail_sign_in(self):
        self.state = SessionState.ANONYMOUS

    def sign_out(self):
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self.identity is not None:
            logger.info("User %s signed out", self.identity.uid)
        self.identity = None
        self.role = None
        self.is_banned = False
        self.recently_viewed = []
        self.recently_downloaded = []
        self.state = SessionState.ANONYMOUS

    def _apply(self, user: User):
        self.role = user.role
        self.is_banned = user.is_banned
        self.state = SessionState.BANNED if user.is_banned else SessionState.ACTIVE

    def _on_users(self, users: Dict[str, User]):
        user = users.get(self.uid) if self.uid else None
        if user is None or not self.signed_in:
            return
        previous = self.state
        self._apply(user)
        if self.state != previous:
            logger.info("User %s moved from %s to %s", self.uid, previous.value, self.state.value)

    # ----------------------
    # Recent history
    # ----------------------

    def _entry(self, material: Material) -> HistoryEntry:
        subject = self.store.get_subject_by_id(material.subject_id)
        return HistoryEntry(
            material_id=material.id,
            title=material.title,
            subject=subject.name if subject else "Unknown",
            link=material.link,
            type=material.type,
            timestamp=datetime.now(timezone.utc),
        )

    def record_view(self, material: Material):
        self.recently_viewed = push_history(self.recently_viewed, self._entry(material), self.history_limit)

    def record_download(self, material: Material):
        self.recently_downloaded = push_history(self.recently_downloaded, self._entry(material), self.history_limit)


class SessionRegistry:
    """Sessions keyed by an opaque token handed out at login.

    A session expires ``idle_timeout`` seconds after its last request or
    ``max_age`` seconds after login, whichever comes first. Expired sessions are
    signed out and forgotten, which also drops their user listener.
    """

    def __init__(self, store: StudyStore, history_limit: int = config.RECENT_HISTORY_LIMIT,
                 idle_timeout: float = config.SESSION_IDLE_TIMEOUT, max_age: float = config.SESSION_MAX_AGE,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.history_limit = history_limit
        self.idle_timeout = idle_timeout
        self.max_age = max_age
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        # token -> (logged in at, last request at)
        self._seen: Dict[str, Tuple[float, float]] = {}

    def _expired(self, token: str, now: float) -> bool:
        started, last_seen = self._seen[token]
        return now - last_seen > self.idle_timeout or now - started > self.max_age

    def _expire(self, token: str):
        session = self._sessions.pop(token)
        del self._seen[token]
        logger.info("Session for %s expired", session.uid)
        session.sign_out()

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [token for token in self._sessions if self._expired(token, now)]
        for token in expired:
            self._expire(token)
        return len(expired)

    def get(self, token: Optional[str]) -> Optional[Session]:
        if not token or token not in self._sessions:
            return None
        now = self.clock()
        if self._expired(token, now):
            self._expire(token)
            return None
        started, _ = self._seen[token]
        self._seen[token] = (started, now)
        return self._sessions[token]

    def login(self, identity: Union[Identity, dict]) -> Result:
        try:
            identity = Identity.model_validate(identity)
        except ValidationError as e:
            return Result.fail(validation_message(e), "validation")

        self.purge_expired()
        session = Session(self.store, self.history_limit)
        session.begin_sign_in()
        try:
            session.complete_sign_in(identity)
        except PortalError as e:
            logger.error("Login error: %s", e.message)
            return Result.fail(e.message, e.code)
        except Exception:
            logger.exception("Login error")
            return Result.fail("Failed to sign in", "gateway")

        token = secrets.token_urlsafe(32)
        now = self.clock()
        self._sessions[token] = session
        self._seen[token] = (now, now)
        return Result.ok(token)

    def logout(self, token: Optional[str]) -> Result:
        session = self.get(token)
        if session is None:
            return Result.fail("Session not found", "not_found")
        del self._sessions[token]
        del self._seen[token]
        session.sign_out()
        return Result.ok()

    def close(self):
        for session in self._sessions.values():
            session.sign_out()
        self._sessions.clear()
        self._seen.clear()
