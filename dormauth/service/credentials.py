from __future__ import annotations

import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from dormauth.config import Settings
from dormauth.logging import get_logger
from dormauth.service.errors import LockoutError
from dormauth.service.password_policy import PasswordPolicy
from dormauth.storage.models import FailureState, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = "student",
        is_active: bool = True,
        must_change_password: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def tombstone_user(self, user_id: str, *, now: datetime) -> Optional[User]: ...

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[FailureState]: ...

    def clear_login_failures(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[User]: ...


class CredentialStore:
    """Identity records, password hashes and lockout counters.

    The store behind it persists every mutation immediately; this class
    owns hashing and the lockout arithmetic.
    """

    def __init__(
        self,
        store: IdentityStore,
        policy: PasswordPolicy,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.settings = settings
        self._clock = clock or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the identity is unknown so timing stays uniform
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return self._clock()

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_minutes)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def register(
        self,
        *,
        email: str,
        name: str,
        password: str,
        phone: Optional[str] = None,
        role: str = "student",
    ) -> User:
        """Create the identity row and its first password.

        Callers validate the password against the policy first.
        """
        pwd_hash, algo = self.hash_password(password)
        user = self.store.create_user(email, name, phone=phone, role=role)
        now = self._now()
        self.store.save_password(
            user.id,
            pwd_hash,
            algo,
            changed_at=now,
            expires_at=self.policy.expiry(now),
        )
        return self.store.get_user(user.id) or user

    def lookup(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email.strip().lower())

    def get(self, user_id: str) -> Optional[User]:
        user = self.store.get_user(user_id)
        if user is None or user.is_deleted:
            return None
        return user

    def verify_password(self, user: Optional[User], password: str) -> bool:
        """Constant-time verify; an unknown identity burns a dummy verify."""
        if user is None:
            self._verify_hash(self._dummy_hash, password)
            return False
        record = self.store.get_password_record(user.id)
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            self._verify_hash(self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        return self._verify_hash(stored_hash, password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def set_password(self, user: User, password: str) -> User:
        """Store a new hash, restart the expiry clock and clear lockout."""
        pwd_hash, algo = self.hash_password(password)
        now = self._now()
        self.store.save_password(
            user.id, pwd_hash, algo, changed_at=now, expires_at=self.policy.expiry(now)
        )
        self.store.clear_login_failures(user.id)
        logger.info("password_updated", user_id=user.id)
        return self.store.get_user(user.id) or user

    def increment_failure(self, user: User) -> FailureState:
        """Atomically charge one failed attempt against the identity.

        An elapsed lock restarts the counter at 1. Reaching the ceiling sets
        ``locked_until``. A lock that is still active is reported back
        untouched with ``already_locked``.
        """
        state = self.store.record_login_failure(
            user.id,
            now=self._now(),
            max_attempts=self.settings.max_login_attempts,
            lockout=self.lockout_duration,
        )
        if state is None:
            return FailureState(count=0)
        if state.locked_until is not None and not state.already_locked:
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=state.count,
                locked_until=state.locked_until.isoformat(),
            )
        return state

    def reset_failures(
        self,
        user: User,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        stamp_login: bool = True,
    ) -> User:
        """Clear the failure counters; optionally record this as the last login."""
        updated = self.store.clear_login_failures(
            user.id,
            now=self._now() if stamp_login else None,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return updated or user

    def unlock(self, user: User) -> User:
        updated = self.store.clear_login_failures(user.id)
        logger.info("account_unlocked", user_id=user.id)
        return updated or user

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        return user.locked_until is not None and user.locked_until > now

    def lock_remaining(self, user: User, now: Optional[datetime] = None) -> timedelta:
        now = now or self._now()
        if not self.is_locked(user, now):
            return timedelta(0)
        return user.locked_until - now

    def lockout_error(self, locked_until: datetime) -> LockoutError:
        remaining = max(0.0, (locked_until - self._now()).total_seconds())
        minutes = max(1, math.ceil(remaining / 60))
        return LockoutError(
            f"Account is locked. Try again in {minutes} minutes",
            detail={
                "locked_until": locked_until.isoformat(),
                "retry_after_seconds": int(math.ceil(remaining)),
            },
        )

    def tombstone(self, user: User) -> Optional[User]:
        return self.store.tombstone_user(user.id, now=self._now())
