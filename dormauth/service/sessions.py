from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from dormauth.config import Settings
from dormauth.logging import get_logger
from dormauth.service.errors import InvalidSessionError, SessionExpiredError
from dormauth.service.tokens import hash_token, new_opaque_token
from dormauth.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class SessionBackend(Protocol):
    def admit_session(
        self,
        session: Session,
        *,
        cap: int,
        idle_timeout: timedelta,
        now: datetime,
    ) -> tuple[Session, Optional[Session]]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, *, now: datetime) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_session(self, session_id: str, *, user_id: Optional[str] = None) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def purge_expired_sessions(self, *, now: datetime, idle_timeout: timedelta) -> int: ...


@dataclass
class SessionGrant:
    """A freshly admitted session plus the only copy of its bearer token."""

    session: Session
    token: str


def describe_device(user_agent: Optional[str]) -> dict:
    ua = user_agent or ""
    lowered = ua.lower()
    if "ipad" in lowered or "tablet" in lowered:
        device_type = "Tablet"
    elif "mobile" in lowered or "iphone" in lowered:
        device_type = "Mobile"
    else:
        device_type = "Desktop"

    if "Firefox" in ua:
        browser = "Firefox"
    elif "SamsungBrowser" in ua:
        browser = "Samsung Internet"
    elif "OPR" in ua or "Opera" in ua:
        browser = "Opera"
    elif "Edg" in ua:
        browser = "Edge"
    elif "Trident" in ua:
        browser = "Internet Explorer"
    elif "Chrome" in ua:
        browser = "Chrome"
    elif "Safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown Browser"

    # Android and iOS agents also mention Linux / Mac OS X
    if "Android" in ua:
        os_name = "Android"
    elif "iPhone" in ua or "iPad" in ua or "iOS" in ua:
        os_name = "iOS"
    elif "Win" in ua:
        os_name = "Windows"
    elif "Mac" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown OS"
    return {"device_type": device_type, "browser": browser, "os": os_name}


class SessionStore:
    """Live sessions per identity with a concurrency cap and lazy expiry.

    Idle and absolute timeouts are checked when a token is presented; the
    periodic cleanup only reclaims space.
    """

    def __init__(
        self,
        backend: SessionBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.session_idle_minutes)

    @property
    def absolute_lifetime(self) -> timedelta:
        return timedelta(hours=self.settings.session_absolute_hours)

    def create(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> SessionGrant:
        token = new_opaque_token()
        now = self._now()
        session = Session.new(
            user.id,
            hash_token(token),
            now=now,
            ttl_minutes=int(self.absolute_lifetime.total_seconds() // 60),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        session, evicted = self.backend.admit_session(
            session,
            cap=self.settings.max_concurrent_sessions,
            idle_timeout=self.idle_timeout,
            now=now,
        )
        if evicted is not None:
            logger.info(
                "session_evicted",
                user_id=user.id,
                evicted_session_id=evicted.id,
                cap=self.settings.max_concurrent_sessions,
            )
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return SessionGrant(session=session, token=token)

    def is_active(self, session: Session, now: Optional[datetime] = None) -> bool:
        return session.is_active(now or self._now(), self.idle_timeout)

    def validate(self, token: Optional[str]) -> Session:
        """Resolve a bearer token to a live session.

        Unknown and expired tokens both fail; expired rows are deleted.
        """
        if not token:
            raise InvalidSessionError("session expired or invalid")
        session = self.backend.get_session_by_token_hash(hash_token(token))
        if session is None:
            raise InvalidSessionError("session expired or invalid")
        now = self._now()
        if not self.is_active(session, now):
            self.backend.revoke_session(session.id)
            reason = "absolute" if now >= session.expires_at else "idle"
            logger.info(
                "session_expired",
                user_id=session.user_id,
                session_id=session.id,
                reason=reason,
            )
            raise SessionExpiredError("session expired or invalid")
        return session

    def touch(self, session: Session) -> Session:
        touched = self.backend.touch_session(session.id, now=self._now())
        if touched is None:
            raise InvalidSessionError("session expired or invalid")
        return touched

    def resolve(self, token: Optional[str]) -> Optional[Session]:
        """Best-effort lookup that never raises; used by logout."""
        if not token:
            return None
        return self.backend.get_session_by_token_hash(hash_token(token))

    def revoke(self, session_id: str, *, user_id: Optional[str] = None) -> bool:
        revoked = self.backend.revoke_session(session_id, user_id=user_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return revoked

    def revoke_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        count = self.backend.revoke_user_sessions(user_id, except_session_id=except_session_id)
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            revoked=count,
            kept_session_id=except_session_id,
        )
        return count

    def list_active(self, user_id: str, *, current_session_id: Optional[str] = None) -> List[dict]:
        now = self._now()
        sessions = [
            s for s in self.backend.list_user_sessions(user_id) if self.is_active(s, now)
        ]
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return [
            {
                "id": s.id,
                "user_agent": s.user_agent,
                "ip_address": s.ip_addr,
                "created_at": s.created_at.isoformat(),
                "last_activity_at": s.last_activity_at.isoformat(),
                "expires_at": s.expires_at.isoformat(),
                "is_current": s.id == current_session_id,
                **describe_device(s.user_agent),
            }
            for s in sessions
        ]

    def cleanup_expired(self) -> int:
        removed = self.backend.purge_expired_sessions(now=self._now(), idle_timeout=self.idle_timeout)
        if removed:
            logger.info("sessions_cleaned", removed=removed)
        return removed
