"""
Server-side sessions and identity claims.

A session holds exactly one claim for its whole life: no identity, an
administrator, or an anonymous participant bound to one conversation.
Sessions live in a process-local store; they are not shared between
worker processes.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from fastapi import Request, Response

from anonchat.config import settings
from anonchat.errors import AuthorizationError
from anonchat.utils import generate_token, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# Claims
# =============================================================================

@dataclass(frozen=True)
class NoClaim:
    role: str = "none"


@dataclass(frozen=True)
class AdminClaim:
    account_id: int
    username: str
    role: str = "admin"


@dataclass(frozen=True)
class ParticipantClaim:
    conversation_id: int
    code: str
    role: str = "participant"


Claim = Union[NoClaim, AdminClaim, ParticipantClaim]

NO_CLAIM = NoClaim()


# =============================================================================
# Store
# =============================================================================

@dataclass
class SessionRecord:
    created_at: datetime
    last_seen: datetime
    claim: Claim = NO_CLAIM
    data: Dict[str, Any] = field(default_factory=dict)


class SessionStore:
    """
    Thread-safe in-memory session store with idle and absolute expiry.

    Also holds short-lived signals shared between sessions of this process
    (typing indicators), which read as absent once older than signal_ttl.

    Expired sessions and stale signals are swept on writes, at most once
    per idle timeout, so abandoned entries do not accumulate.
    """

    def __init__(self, idle_timeout: int, absolute_timeout: int,
                 signal_ttl: Optional[int] = None):
        self.idle_timeout = timedelta(seconds=idle_timeout)
        self.absolute_timeout = timedelta(seconds=absolute_timeout)
        self.signal_ttl = timedelta(seconds=settings.TYPING_FRESHNESS_SECONDS if signal_ttl is None else signal_ttl)
        self._sessions: Dict[str, SessionRecord] = {}
        self._signals: Dict[Tuple, datetime] = {}
        self._lock = threading.Lock()
        self._last_purge: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, record: SessionRecord, now: datetime) -> bool:
        return (
            now - record.last_seen > self.idle_timeout
            or now - record.created_at > self.absolute_timeout
        )

    def create(self, now: Optional[datetime] = None) -> Tuple[str, SessionRecord]:
        now = now or utcnow()
        session_id = generate_token(32)
        record = SessionRecord(created_at=now, last_seen=now)
        with self._lock:
            self._maybe_purge(now)
            self._sessions[session_id] = record
        return session_id, record

    def get(self, session_id: Optional[str], now: Optional[datetime] = None) -> Optional[SessionRecord]:
        """Return a live session and refresh its idle timer, or None."""
        if not session_id:
            return None
        now = now or utcnow()
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            if self._expired(record, now):
                del self._sessions[session_id]
                logger.info("Session expired")
                return None
            record.last_seen = now
            return record

    def regenerate(self, session_id: str) -> str:
        """Move a session's state to a fresh identifier."""
        new_id = generate_token(32)
        with self._lock:
            record = self._sessions.pop(session_id)
            self._sessions[new_id] = record
        return new_id

    def destroy(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        with self._lock:
            self._sessions.pop(session_id, None)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired sessions and stale signals; return sessions dropped."""
        now = now or utcnow()
        with self._lock:
            return self._purge(now)

    def _purge(self, now: datetime) -> int:
        # Caller holds the lock
        stale = [sid for sid, rec in self._sessions.items() if self._expired(rec, now)]
        for sid in stale:
            del self._sessions[sid]
        for key in [k for k, ts in self._signals.items() if now - ts > self.signal_ttl]:
            del self._signals[key]
        self._last_purge = now
        if stale:
            logger.info(f"Purged {len(stale)} expired sessions")
        return len(stale)

    def _maybe_purge(self, now: datetime) -> None:
        if self._last_purge is None or now - self._last_purge >= self.idle_timeout:
            self._purge(now)

    def set_signal(self, key: Tuple, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        with self._lock:
            self._maybe_purge(now)
            self._signals[key] = now

    def clear_signal(self, key: Tuple) -> None:
        with self._lock:
            self._signals.pop(key, None)

    def signal_age(self, key: Tuple, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the signal was last set, or None if never set."""
        now = now or utcnow()
        with self._lock:
            ts = self._signals.get(key)
        if ts is None:
            return None
        return (now - ts).total_seconds()

    def signal_count(self) -> int:
        with self._lock:
            return len(self._signals)


# =============================================================================
# Per-request context
# =============================================================================

class SessionContext:
    """
    The session as seen by one request.

    Carries the claim established for this session and a handle to the
    store; cookie changes are written to the response of the request.
    """

    def __init__(self, store: SessionStore, response: Response, session_id: Optional[str] = None,
                 record: Optional[SessionRecord] = None):
        self.store = store
        self.response = response
        self.session_id = session_id if record is not None else None
        self._record = record

    @property
    def started(self) -> bool:
        return self._record is not None

    @property
    def claim(self) -> Claim:
        return self._record.claim if self._record is not None else NO_CLAIM

    @property
    def data(self) -> Dict[str, Any]:
        """Scoped key-value data of the session; starts the session if needed."""
        self.start()
        return self._record.data

    def start(self) -> None:
        """Idempotently ensure a session exists and the client holds its cookie."""
        if self._record is not None:
            return
        self.session_id, self._record = self.store.create()
        self._set_cookie()
        logger.debug("Session started")

    def authenticate_as_admin(self, account_id: int, username: str) -> AdminClaim:
        return self._establish(AdminClaim(account_id=account_id, username=username))

    def authenticate_as_participant(self, conversation_id: int, code: str) -> ParticipantClaim:
        return self._establish(ParticipantClaim(conversation_id=conversation_id, code=code))

    def end(self) -> None:
        """Destroy the claim and invalidate the session identifier."""
        if self.session_id:
            self.store.destroy(self.session_id)
        self.session_id = None
        self._record = None
        self.response.delete_cookie(
            settings.SESSION_COOKIE_NAME,
            path="/",
            secure=settings.SESSION_COOKIE_SECURE,
            httponly=True,
            samesite="strict",
        )

    def ensure_can_claim(self, claim) -> None:
        """Raise AuthorizationError if the session already holds a different claim."""
        current = self.claim
        if not isinstance(current, NoClaim) and current != claim:
            logger.warning(f"Refused claim switch from {current.role} to {claim.role}")
            raise AuthorizationError()

    def _establish(self, claim):
        self.start()
        self.ensure_can_claim(claim)

        self._record.claim = claim
        # New identifier on privilege change (session fixation)
        self.session_id = self.store.regenerate(self.session_id)
        self._set_cookie()
        logger.info(f"Session authenticated as {claim.role}")
        return claim

    def _set_cookie(self) -> None:
        self.response.set_cookie(
            settings.SESSION_COOKIE_NAME,
            self.session_id,
            path="/",
            secure=settings.SESSION_COOKIE_SECURE,
            httponly=True,
            samesite="strict",
        )


def get_session(request: Request, response: Response) -> SessionContext:
    """
    Dependency resolving the session for the current request.

    No session is created here; callers that need one call start().
    """
    store: SessionStore = request.app.state.session_store
    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    record = store.get(session_id)
    return SessionContext(store, response, session_id, record)
