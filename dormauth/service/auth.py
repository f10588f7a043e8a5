from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine, List, Optional, Set

from dormauth.config import Settings
from dormauth.logging import get_logger, mask_email
from dormauth.service.audit import AuditAction, AuditActor, AuditSink, serialize_record
from dormauth.service.credentials import CredentialStore
from dormauth.service.email import EmailService
from dormauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from dormauth.service.ip_guard import IPGuard
from dormauth.service.mfa import MFAEngine, SetupInfo
from dormauth.service.password_policy import PasswordPolicy, PolicyResult
from dormauth.service.sessions import SessionGrant, SessionStore
from dormauth.service.tokens import keyed_digest
from dormauth.storage.errors import ConstraintViolation
from dormauth.storage.memory import MemoryStore
from dormauth.storage.models import (
    PasswordResetRecord,
    ResetStage,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, a verification code has been sent."
)


@dataclass
class AuthContext:
    user: User
    session: Session

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def session_id(self) -> str:
        return self.session.id


@dataclass
class LoginResult:
    """Outcome of a successful credential or MFA step.

    Exactly one of ``grant`` and ``mfa_token`` is set.
    """

    user: User
    grant: Optional[SessionGrant] = None
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    mfa_method: Optional[str] = None
    password_expired: bool = False
    password_expiry_warning: Optional[dict] = None
    must_change_password: bool = False
    backup_codes_remaining: Optional[int] = None
    warning: Optional[str] = None

    @property
    def message(self) -> str:
        if self.mfa_required:
            return "MFA verification required"
        if self.must_change_password:
            return "Login successful, but you must change your password."
        if self.password_expired:
            return "Login successful, but your password has expired."
        return "Login successful"


def public_user(user: User, *, mfa_enabled: bool = False) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "mfa_enabled": mfa_enabled,
        "created_at": user.created_at.isoformat(),
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthOrchestrator:
    """Sequences the risk-control components for every auth operation.

    Login runs: IP gate, identity lookup, pessimistic failure charge,
    password verify, then either an MFA challenge or a session. Security
    notices and audit writes never fail the operation that triggered them.
    """

    def __init__(
        self,
        store: MemoryStore,
        credentials: CredentialStore,
        policy: PasswordPolicy,
        ip_guard: IPGuard,
        sessions: SessionStore,
        mfa: MFAEngine,
        audit: AuditSink,
        email: EmailService,
        settings: Settings,
        *,
        reset_key: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.policy = policy
        self.ip_guard = ip_guard
        self.sessions = sessions
        self.mfa = mfa
        self.audit = audit
        self.email = email
        self.settings = settings
        self._reset_key = reset_key
        self._clock = clock or utcnow
        self._background: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    # -- background notifications ---------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(self._guarded(coro, name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guarded(coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error("background_task_failed", task=name, error=str(exc))

    def _notify(self, send: Callable[..., bool], *args: Any, name: str) -> None:
        async def _deliver() -> None:
            sent = await asyncio.to_thread(send, *args)
            if not sent:
                logger.warning("notification_not_delivered", notification=name)

        self._spawn(_deliver(), name=name)

    async def drain_background(self) -> None:
        """Await in-flight notifications; used at shutdown and in tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- registration and login -----------------------------------------------

    def _require_policy(self, password: str, message: str) -> PolicyResult:
        result = self.policy.evaluate(password)
        if not result.valid:
            raise ValidationError(
                message,
                detail={"violations": result.violations, "strength": result.strength},
            )
        return result

    async def register(
        self,
        *,
        email: str,
        name: str,
        password: str,
        phone: Optional[str] = None,
        actor: Optional[AuditActor] = None,
    ) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("registration is disabled")
        email = _normalize_email(email)
        self._require_policy(password, "Password does not meet security requirements")
        try:
            user = self.credentials.register(email=email, name=name, password=password, phone=phone)
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists") from exc
        logger.info("user_registered", user_id=user.id, email=mask_email(email))
        self.audit.record(
            AuditAction.CREATE,
            "user",
            user.id,
            user.name,
            after=public_user(user),
            actor=actor or AuditActor(user_id=user.id, name=user.name),
        )
        return user

    def _expiry_advisory(self, user: User, result: LoginResult) -> LoginResult:
        status = self.policy.expiry_status(user.password_expires_at, self._now())
        if status.expired:
            result.password_expired = True
        elif status.warn:
            result.password_expiry_warning = {
                "days_until_expiry": status.days_until_expiry,
                "message": f"Your password will expire in {status.days_until_expiry} days.",
            }
        result.must_change_password = user.must_change_password
        return result

    async def login(
        self,
        *,
        email: str,
        password: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if ip_addr:
            await self.ip_guard.gate(ip_addr)
        user = self.credentials.lookup(_normalize_email(email))
        if user is None:
            self.credentials.verify_password(None, password)
            logger.warning("login_failed", reason="unknown_identity", ip=ip_addr)
            raise AuthenticationError("Invalid credentials")

        # Charged before verifying so concurrent guesses cannot exceed the ceiling
        failure = self.credentials.increment_failure(user)
        if failure.already_locked and failure.locked_until is not None:
            logger.warning("login_rejected_locked", user_id=user.id, ip=ip_addr)
            raise self.credentials.lockout_error(failure.locked_until)

        if not self.credentials.verify_password(user, password):
            remaining = max(0, self.settings.max_login_attempts - failure.count)
            detail: dict = {}
            if 0 < remaining <= self.settings.lockout_warning_threshold:
                detail = {
                    "attempts_remaining": remaining,
                    "warning": f"{remaining} attempt(s) remaining before account lockout",
                }
            logger.warning(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                failed_attempts=failure.count,
                ip=ip_addr,
            )
            if failure.locked_until is not None:
                self.audit.record(
                    AuditAction.LOCK,
                    "user",
                    user.id,
                    user.name,
                    after={
                        "lock_expires_at": failure.locked_until,
                        "lock_minutes": self.settings.lockout_minutes,
                    },
                    actor=AuditActor(None, None, ip_addr, user_agent),
                )
            raise AuthenticationError("Invalid credentials", detail=detail)

        if not user.is_active:
            self.credentials.reset_failures(user, stamp_login=False)
            logger.warning("login_rejected_inactive", user_id=user.id)
            raise AuthenticationError("Account is deactivated. Please contact support.")

        if self.mfa.is_enabled(user.id):
            self.credentials.reset_failures(user, stamp_login=False)
            logger.info("login_mfa_required", user_id=user.id)
            return LoginResult(
                user=user,
                mfa_required=True,
                mfa_token=self.mfa.issue_challenge(user),
                mfa_method="totp",
            )

        user = self.credentials.reset_failures(user, ip_addr=ip_addr, user_agent=user_agent)
        grant = self.sessions.create(user, user_agent=user_agent, ip_addr=ip_addr)
        logger.info("login_succeeded", user_id=user.id, session_id=grant.session.id)
        self.audit.record(
            AuditAction.LOGIN,
            "user",
            user.id,
            user.name,
            actor=AuditActor(user.id, user.name, ip_addr, user_agent),
        )
        return self._expiry_advisory(user, LoginResult(user=user, grant=grant))

    def _stamp_login(self, user: User, ip_addr: Optional[str], user_agent: Optional[str]) -> User:
        updated = self.store.update_user(
            user.id,
            last_login_at=self._now(),
            last_login_ip=ip_addr,
            last_login_user_agent=user_agent,
        )
        return updated or user

    async def verify_mfa(
        self,
        token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if ip_addr:
            await self.ip_guard.ensure_not_blocked(ip_addr)
        outcome = await self.mfa.challenge(token, code, user_agent=user_agent, ip_addr=ip_addr)
        user = self._stamp_login(outcome.user, ip_addr, user_agent)
        self.audit.record(
            AuditAction.LOGIN,
            "user",
            user.id,
            user.name,
            after={"mfa": "totp"},
            actor=AuditActor(user.id, user.name, ip_addr, user_agent),
        )
        return self._expiry_advisory(user, LoginResult(user=user, grant=outcome.grant))

    async def redeem_backup_code(
        self,
        token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if ip_addr:
            await self.ip_guard.ensure_not_blocked(ip_addr)
        outcome = await self.mfa.redeem_backup_code(
            token, code, user_agent=user_agent, ip_addr=ip_addr
        )
        user = self._stamp_login(outcome.user, ip_addr, user_agent)
        self.audit.record(
            AuditAction.LOGIN,
            "user",
            user.id,
            user.name,
            after={"mfa": "backup_code"},
            actor=AuditActor(user.id, user.name, ip_addr, user_agent),
        )
        result = LoginResult(
            user=user,
            grant=outcome.grant,
            backup_codes_remaining=outcome.remaining,
            warning=outcome.warning,
        )
        return self._expiry_advisory(user, result)

    async def logout(self, token: Optional[str], *, actor: Optional[AuditActor] = None) -> bool:
        """Delete the session behind ``token`` if any; always succeeds."""
        session = self.sessions.resolve(token)
        if session is None:
            return False
        self.sessions.revoke(session.id)
        logger.info("logout", user_id=session.user_id, session_id=session.id)
        user = self.store.get_user(session.user_id)
        name = user.name if user else None
        actor = actor or AuditActor()
        self.audit.record(
            AuditAction.LOGOUT,
            "session",
            session.id,
            name,
            actor=AuditActor(session.user_id, name, actor.ip_address, actor.user_agent),
        )
        return True

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        session = self.sessions.validate(token)
        user = self.credentials.get(session.user_id)
        if user is None or not user.is_active:
            self.sessions.revoke(session.id)
            raise AuthenticationError("session expired or invalid")
        session = self.sessions.touch(session)
        return AuthContext(user=user, session=session)

    # -- profile and passwords ------------------------------------------------

    def profile(self, ctx: AuthContext) -> dict:
        user = ctx.user
        data = public_user(user, mfa_enabled=self.mfa.is_enabled(user.id))
        status = self.policy.expiry_status(user.password_expires_at, self._now())
        data["password"] = {
            "changed_at": user.password_changed_at.isoformat() if user.password_changed_at else None,
            "expires_at": user.password_expires_at.isoformat() if user.password_expires_at else None,
            "expired": status.expired,
            "days_until_expiry": status.days_until_expiry,
            "must_change": user.must_change_password,
        }
        return data

    def validate_password(self, password: str) -> PolicyResult:
        return self.policy.evaluate(password)

    def password_requirements(self) -> dict:
        return {
            "min_length": self.policy.min_length,
            "max_length": self.policy.max_length,
            "expiry_days": self.policy.expiry_days,
            "requirements": self.policy.requirements(),
        }

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        *,
        actor: Optional[AuditActor] = None,
    ) -> int:
        """Swap the password and sign out every other session."""
        user = ctx.user
        if not self.credentials.verify_password(user, current_password):
            raise AuthenticationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")
        self._require_policy(new_password, "New password does not meet security requirements")
        self.credentials.set_password(user, new_password)
        revoked = self.sessions.revoke_all(user.id, except_session_id=ctx.session_id)
        self.audit.record(
            AuditAction.PASSWORD_CHANGE,
            "user",
            user.id,
            user.name,
            after={"other_sessions_revoked": revoked},
            actor=actor or AuditActor(user.id, user.name),
        )
        self._notify(self.email.send_password_changed, user.email, user.name, name="password_changed")
        return revoked

    # -- password reset --------------------------------------------------------

    def _reset_digest(self, user_id: str, value: str) -> str:
        return keyed_digest(self._reset_key, f"reset:{user_id}:{value}")

    async def forgot_password(self, email: str) -> dict:
        """Issue a reset code; the response never reveals whether the email exists."""
        email = _normalize_email(email)
        response = {"message": FORGOT_PASSWORD_MESSAGE, "email": mask_email(email)}
        user = self.credentials.lookup(email)
        if user is None or not user.is_active:
            logger.info("password_reset_requested", known=False)
            return response
        code = str(secrets.randbelow(900000) + 100000)
        now = self._now()
        record = PasswordResetRecord(
            user_id=user.id,
            stage=ResetStage.CODE,
            secret_hash=self._reset_digest(user.id, code),
            expires_at=now + timedelta(minutes=self.settings.reset_code_ttl_minutes),
            created_at=now,
        )
        self.store.put_reset_record(record)
        logger.info("password_reset_requested", known=True, user_id=user.id)
        self._spawn(self._deliver_reset_code(user, record, code), name="reset_code")
        return response

    async def _deliver_reset_code(self, user: User, record: PasswordResetRecord, code: str) -> None:
        try:
            sent = await asyncio.to_thread(
                self.email.send_reset_code,
                user.email,
                user.name,
                code,
                ttl_minutes=self.settings.reset_code_ttl_minutes,
            )
        except Exception as exc:
            logger.error("password_reset_email_error", user_id=user.id, error=str(exc))
            sent = False
        if not sent:
            # An undeliverable code must not stay redeemable
            self.store.delete_reset_record(user.id, expected=record)
            logger.warning("password_reset_email_failed", user_id=user.id)

    def _current_reset(self, user: Optional[User], stage: ResetStage) -> PasswordResetRecord:
        record = self.store.get_reset_record(user.id) if user else None
        if record is None or record.stage != stage:
            raise ValidationError(
                "Invalid or expired verification code"
                if stage == ResetStage.CODE
                else "Invalid or expired reset session"
            )
        if record.expires_at <= self._now():
            self.store.delete_reset_record(record.user_id, expected=record)
            raise ValidationError(
                "Verification code has expired. Please request a new one."
                if stage == ResetStage.CODE
                else "Reset session has expired. Please start over."
            )
        return record

    def _matches(self, record: PasswordResetRecord, value: str) -> bool:
        return secrets.compare_digest(
            record.secret_hash, self._reset_digest(record.user_id, (value or "").strip())
        )

    async def verify_reset_code(self, email: str, code: str) -> str:
        """Exchange a valid reset code for a short-lived reset token."""
        user = self.credentials.lookup(_normalize_email(email))
        record = self._current_reset(user, ResetStage.CODE)
        if not self._matches(record, code):
            attempts = self.store.record_reset_attempt(
                record.user_id, max_attempts=self.settings.reset_max_attempts
            )
            logger.warning("password_reset_code_invalid", user_id=record.user_id, attempts=attempts)
            raise ValidationError("Invalid verification code")
        token = secrets.token_hex(32)
        now = self._now()
        self.store.put_reset_record(
            PasswordResetRecord(
                user_id=record.user_id,
                stage=ResetStage.TOKEN,
                secret_hash=self._reset_digest(record.user_id, token),
                expires_at=now + timedelta(minutes=self.settings.reset_token_ttl_minutes),
                created_at=now,
            )
        )
        logger.info("password_reset_code_verified", user_id=record.user_id)
        return token

    async def reset_password(self, email: str, token: str, new_password: str) -> None:
        self._require_policy(new_password, "Password does not meet security requirements")
        user = self.credentials.lookup(_normalize_email(email))
        record = self._current_reset(user, ResetStage.TOKEN)
        if not self._matches(record, token):
            self.store.record_reset_attempt(
                record.user_id, max_attempts=self.settings.reset_max_attempts
            )
            raise ValidationError("Invalid reset token")
        if not self.store.delete_reset_record(record.user_id, expected=record):
            raise ValidationError("Invalid or expired reset session")
        user = self.credentials.set_password(user, new_password)
        revoked = self.sessions.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            "user",
            user.id,
            user.name,
            after={"sessions_revoked": revoked},
            actor=AuditActor(user.id, user.name),
        )
        self._notify(self.email.send_password_changed, user.email, user.name, name="password_changed")

    # -- sessions --------------------------------------------------------------

    def list_sessions(self, ctx: AuthContext) -> List[dict]:
        return self.sessions.list_active(ctx.user_id, current_session_id=ctx.session_id)

    def revoke_session(self, ctx: AuthContext, session_id: str) -> None:
        if not self.sessions.revoke(session_id, user_id=ctx.user_id):
            raise NotFoundError("Session not found")
        self.audit.record(
            AuditAction.SESSION_REVOKE,
            "session",
            session_id,
            actor=AuditActor(ctx.user_id, ctx.user.name),
        )

    def revoke_all_sessions(self, ctx: AuthContext, *, keep_current: bool = True) -> int:
        keep = ctx.session_id if keep_current else None
        revoked = self.sessions.revoke_all(ctx.user_id, except_session_id=keep)
        self.audit.record(
            AuditAction.SESSION_REVOKE,
            "user",
            ctx.user_id,
            ctx.user.name,
            after={"sessions_revoked": revoked, "kept_current": keep_current},
            actor=AuditActor(ctx.user_id, ctx.user.name),
        )
        return revoked

    # -- MFA management --------------------------------------------------------

    def setup_mfa(self, ctx: AuthContext) -> SetupInfo:
        return self.mfa.begin_setup(ctx.user)

    async def complete_mfa_setup(self, ctx: AuthContext, code: str) -> List[str]:
        codes = self.mfa.complete_setup(ctx.user, code)
        self.audit.record(
            AuditAction.MFA_ENABLE,
            "user",
            ctx.user_id,
            ctx.user.name,
            before={"mfa_enabled": False},
            after={"mfa_enabled": True, "mfa_method": "totp"},
            actor=AuditActor(ctx.user_id, ctx.user.name),
        )
        self._notify(self.email.send_mfa_enabled, ctx.user.email, ctx.user.name, name="mfa_enabled")
        return codes

    async def disable_mfa(self, ctx: AuthContext, password: str) -> int:
        self.mfa.disable(ctx.user, password)
        revoked = self.sessions.revoke_all(ctx.user_id, except_session_id=ctx.session_id)
        self.audit.record(
            AuditAction.MFA_DISABLE,
            "user",
            ctx.user_id,
            ctx.user.name,
            before={"mfa_enabled": True},
            after={"mfa_enabled": False, "other_sessions_revoked": revoked},
            actor=AuditActor(ctx.user_id, ctx.user.name),
        )
        self._notify(self.email.send_mfa_disabled, ctx.user.email, ctx.user.name, name="mfa_disabled")
        return revoked

    async def regenerate_backup_codes(self, ctx: AuthContext, password: str) -> List[str]:
        codes = self.mfa.regenerate_backup_codes(ctx.user, password)
        self.audit.record(
            AuditAction.MFA_BACKUP_REGENERATE,
            "user",
            ctx.user_id,
            ctx.user.name,
            actor=AuditActor(ctx.user_id, ctx.user.name),
        )
        return codes

    def mfa_status(self, ctx: AuthContext) -> dict:
        return self.mfa.status(ctx.user)

    # -- account lifecycle -----------------------------------------------------

    async def delete_account(self, ctx: AuthContext, password: str) -> None:
        user = ctx.user
        if not password:
            raise ValidationError("Password is required to delete account")
        if not self.credentials.verify_password(user, password):
            raise AuthenticationError("Incorrect password")
        self.credentials.tombstone(user)
        logger.info("account_deleted", user_id=user.id)
        self.audit.record(
            AuditAction.DELETE,
            "user",
            user.id,
            user.name,
            before=public_user(user),
            actor=AuditActor(user.id, user.name),
        )

    async def unlock_account(self, admin: AuthContext, user_id: str) -> User:
        user = self.credentials.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        before = {"locked": self.credentials.is_locked(user)}
        user = self.credentials.unlock(user)
        self.audit.record(
            AuditAction.UNLOCK,
            "user",
            user.id,
            user.name,
            before=before,
            after={"locked": False},
            actor=AuditActor(admin.user_id, admin.user.name),
        )
        return user

    def list_audit(self, **filters: Any) -> dict:
        records, total = self.audit.list(**filters)
        return {
            "items": [serialize_record(record) for record in records],
            "total": total,
        }

    async def cleanup_expired(self) -> dict:
        now = self._now()
        counts = {
            "sessions": self.sessions.cleanup_expired(),
            "reset_records": self.store.purge_expired_resets(now=now),
            "ip_guard": self.ip_guard.cleanup_expired(),
            "mfa": self.mfa.cleanup_expired(),
        }
        if any(counts.values()):
            logger.info("cleanup_completed", **counts)
        return counts
