from __future__ import annotations

import base64
import hashlib
import hmac
import io
import math
import secrets
import struct
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from dormauth.config import Settings
from dormauth.logging import get_logger
from dormauth.service.credentials import CredentialStore
from dormauth.service.errors import AuthenticationError, LockoutError, ValidationError
from dormauth.service.sessions import SessionGrant, SessionStore
from dormauth.service.tokens import SignedTokenCodec, keyed_digest
from dormauth.storage.memory import MemoryStore
from dormauth.storage.models import (
    MFADisabled,
    MFAEnabled,
    MFAPendingSetup,
    MFAState,
    User,
    utcnow,
)
from dormauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

CHALLENGE_PURPOSE = "mfa_challenge"
TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# One adjacent step either side absorbs authenticator clock drift
TOTP_DRIFT_STEPS = 1


@dataclass
class SetupInfo:
    secret: str
    provisioning_uri: str
    qr_code: str


@dataclass
class ChallengeResult:
    grant: SessionGrant
    user: User


@dataclass
class BackupRedemption:
    grant: SessionGrant
    user: User
    remaining: int
    warning: Optional[str] = None


def generate_totp(secret: str, for_time: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``secret`` at unix time ``for_time``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(for_time // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def render_qr_svg(data: str) -> str:
    """Render ``data`` as an SVG QR code wrapped in a data URL."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(image_factory=SvgPathImage)
    stream = io.BytesIO()
    img.save(stream)
    encoded = base64.b64encode(stream.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


class MFAEngine:
    """TOTP enrolment, challenge verification and backup codes.

    Per identity the state moves ``MFADisabled -> MFAPendingSetup ->
    MFAEnabled -> MFADisabled``. Leaving ``MFAEnabled`` requires the
    account password. A challenge token is the only way to reach a session
    once MFA is on, and each challenge works at most once.
    """

    def __init__(
        self,
        store: MemoryStore,
        sessions: SessionStore,
        credentials: CredentialStore,
        codec: SignedTokenCodec,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        code_key: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.credentials = credentials
        self.codec = codec
        self.cache = cache
        self.settings = settings
        self._code_key = code_key
        self._clock = clock or utcnow
        self._state_lock = threading.Lock()
        # In-memory fallbacks when Redis is unavailable
        self._consumed_challenges: Dict[str, datetime] = {}
        self._attempts: Dict[str, tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    # -- TOTP ------------------------------------------------------------------

    @staticmethod
    def new_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    def totp_at(self, secret: str, when: datetime) -> str:
        return generate_totp(secret, when.timestamp())

    def verify_totp(self, secret: str, code: str) -> bool:
        code = (code or "").strip().replace(" ", "")
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now_ts = self._now().timestamp()
        matched = False
        for step in range(-TOTP_DRIFT_STEPS, TOTP_DRIFT_STEPS + 1):
            generated = generate_totp(secret, now_ts + step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                matched = True
        return matched

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    # -- backup codes ----------------------------------------------------------

    @staticmethod
    def _normalize_backup_code(code: str) -> str:
        return (code or "").strip().replace("-", "").replace(" ", "").upper()

    def _hash_backup_code(self, code: str) -> str:
        return keyed_digest(self._code_key, "backup:" + self._normalize_backup_code(code))

    def _generate_backup_codes(self) -> tuple[List[str], List[str]]:
        codes = [
            secrets.token_hex(4).upper() for _ in range(self.settings.mfa_backup_code_count)
        ]
        return codes, [self._hash_backup_code(code) for code in codes]

    # -- enrolment -------------------------------------------------------------

    def state(self, user_id: str) -> MFAState:
        return self.store.get_mfa_state(user_id)

    def is_enabled(self, user_id: str) -> bool:
        return isinstance(self.state(user_id), MFAEnabled)

    def status(self, user: User) -> dict:
        state = self.state(user.id)
        enabled = isinstance(state, MFAEnabled)
        return {
            "mfa_enabled": enabled,
            "state": state.kind,
            "mfa_method": "totp" if enabled else None,
            "backup_codes_remaining": state.remaining_backup_codes if enabled else 0,
        }

    def begin_setup(self, user: User) -> SetupInfo:
        if self.is_enabled(user.id):
            raise ValidationError("MFA is already enabled")
        secret = self.new_secret()
        self.store.set_mfa_pending(user.id, secret, now=self._now())
        uri = self.provisioning_uri(secret, user.email)
        logger.info("mfa_setup_started", user_id=user.id)
        return SetupInfo(secret=secret, provisioning_uri=uri, qr_code=render_qr_svg(uri))

    def complete_setup(self, user: User, code: str) -> List[str]:
        """Confirm the pending secret and return the one-time backup codes."""
        state = self.state(user.id)
        if isinstance(state, MFAEnabled):
            raise ValidationError("MFA is already enabled")
        if not isinstance(state, MFAPendingSetup):
            raise ValidationError("MFA setup not initiated. Please start setup first.")
        if not self.verify_totp(state.secret, code):
            logger.warning("mfa_setup_code_invalid", user_id=user.id)
            raise ValidationError("Invalid verification code")
        codes, hashes = self._generate_backup_codes()
        if not self.store.enable_mfa(
            user.id, expected_secret=state.secret, code_hashes=hashes, now=self._now()
        ):
            raise ValidationError("MFA setup not initiated. Please start setup first.")
        logger.info("mfa_enabled", user_id=user.id, backup_codes=len(codes))
        return codes

    def _require_password(self, user: User, password: str) -> None:
        if not self.credentials.verify_password(user, password):
            logger.warning("mfa_password_reproof_failed", user_id=user.id)
            raise AuthenticationError("Invalid password")

    def disable(self, user: User, password: str) -> None:
        if not self.is_enabled(user.id):
            raise ValidationError("MFA is not enabled")
        self._require_password(user, password)
        self.store.clear_mfa(user.id)
        logger.info("mfa_disabled", user_id=user.id)

    def regenerate_backup_codes(self, user: User, password: str) -> List[str]:
        if not self.is_enabled(user.id):
            raise ValidationError("MFA is not enabled")
        self._require_password(user, password)
        codes, hashes = self._generate_backup_codes()
        # Old codes are replaced in the same write that installs the new ones
        if not self.store.replace_backup_codes(user.id, hashes):
            raise ValidationError("MFA is not enabled")
        logger.info("mfa_backup_codes_regenerated", user_id=user.id)
        return codes

    # -- challenge -------------------------------------------------------------

    @property
    def challenge_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.mfa_challenge_ttl_minutes)

    def issue_challenge(self, user: User) -> str:
        now = self._now()
        return self.codec.encode(
            {
                "sub": user.id,
                "purpose": CHALLENGE_PURPOSE,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + self.challenge_ttl).timestamp()),
            }
        )

    def decode_challenge(self, token: str) -> dict:
        return self.codec.decode(token, now=self._now(), purpose=CHALLENGE_PURPOSE)

    def _challenge_user(self, token: str) -> tuple[dict, User, MFAEnabled]:
        payload = self.decode_challenge(token)
        user = self.credentials.get(str(payload.get("sub", "")))
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid or expired temporary token")
        state = self.state(user.id)
        if not isinstance(state, MFAEnabled):
            raise AuthenticationError("MFA not enabled for this user")
        return payload, user, state

    async def challenge(
        self,
        token: str,
        code: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> ChallengeResult:
        """Verify a TOTP code against a challenge token and open a session."""
        payload, user, state = self._challenge_user(token)
        await self._ensure_not_locked(user.id)
        if not self.verify_totp(state.secret, code):
            await self._record_failure(user.id)
            logger.warning("mfa_code_invalid", user_id=user.id)
            raise AuthenticationError("Invalid MFA code")
        await self._consume_challenge(payload)
        await self._clear_failures(user.id)
        grant = self.sessions.create(user, user_agent=user_agent, ip_addr=ip_addr)
        logger.info("mfa_challenge_passed", user_id=user.id, session_id=grant.session.id)
        return ChallengeResult(grant=grant, user=user)

    async def redeem_backup_code(
        self,
        token: str,
        code: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> BackupRedemption:
        """Spend one unused backup code in place of a TOTP code."""
        payload, user, _state = self._challenge_user(token)
        await self._ensure_not_locked(user.id)
        # Claim the challenge before spending a code
        await self._consume_challenge(payload)
        remaining = self.store.consume_backup_code(
            user.id, self._hash_backup_code(code), now=self._now()
        )
        if remaining is None:
            await self._release_challenge(payload)
            await self._record_failure(user.id)
            logger.warning("mfa_backup_code_invalid", user_id=user.id)
            raise AuthenticationError("Invalid or already used backup code")
        await self._clear_failures(user.id)
        grant = self.sessions.create(user, user_agent=user_agent, ip_addr=ip_addr)
        warning = None
        if remaining < self.settings.mfa_backup_code_warning:
            warning = (
                f"Only {remaining} backup code(s) remaining. "
                "Consider regenerating backup codes."
            )
        logger.info(
            "mfa_backup_code_used", user_id=user.id, session_id=grant.session.id
        )
        return BackupRedemption(grant=grant, user=user, remaining=remaining, warning=warning)

    async def _consume_challenge(self, payload: dict) -> None:
        jti = str(payload.get("jti") or "")
        if not jti:
            raise AuthenticationError("Invalid or expired temporary token")
        ttl = max(1, int(float(payload["exp"]) - self._now().timestamp()) + 1)
        if self.cache:
            fresh = await self.cache.consume_once(f"mfa:challenge:{jti}", ttl)
        else:
            now = self._now()
            with self._state_lock:
                fresh = jti not in self._consumed_challenges
                if fresh:
                    self._consumed_challenges[jti] = now + timedelta(seconds=ttl)
        if not fresh:
            logger.warning("mfa_challenge_replayed", user_id=payload.get("sub"))
            raise AuthenticationError("Invalid or expired temporary token")

    async def _release_challenge(self, payload: dict) -> None:
        jti = str(payload.get("jti") or "")
        if self.cache:
            await self.cache.release_once(f"mfa:challenge:{jti}")
        else:
            with self._state_lock:
                self._consumed_challenges.pop(jti, None)

    # -- failed attempt lockout ------------------------------------------------

    def _lockout_error(self, seconds: int) -> LockoutError:
        minutes = max(1, math.ceil(seconds / 60))
        return LockoutError(
            f"Too many failed MFA attempts. Try again in {minutes} minutes",
            detail={"retry_after_seconds": seconds},
        )

    async def _ensure_not_locked(self, user_id: str) -> None:
        if self.cache:
            remaining = await self.cache.check_mfa_lockout(user_id)
        else:
            now = self._now()
            with self._state_lock:
                until = self._lockouts.get(user_id)
                if until is not None and until <= now:
                    self._lockouts.pop(user_id, None)
                    until = None
            remaining = int(math.ceil((until - now).total_seconds())) if until else 0
        if remaining > 0:
            raise self._lockout_error(remaining)

    async def _record_failure(self, user_id: str) -> None:
        lockout_seconds = self.settings.mfa_lockout_minutes * 60
        if self.cache:
            locked, _attempts = await self.cache.atomic_mfa_attempt(
                user_id,
                max_attempts=self.settings.mfa_max_attempts,
                lockout_seconds=lockout_seconds,
            )
        else:
            now = self._now()
            window = timedelta(seconds=lockout_seconds)
            with self._state_lock:
                count, started = self._attempts.get(user_id, (0, now))
                if now - started >= window:
                    count, started = 0, now
                count += 1
                locked = count >= self.settings.mfa_max_attempts
                if locked:
                    self._lockouts[user_id] = now + window
                    self._attempts.pop(user_id, None)
                else:
                    self._attempts[user_id] = (count, started)
        if locked:
            logger.warning("mfa_locked_out", user_id=user_id)

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)

    def cleanup_expired(self) -> int:
        now = self._now()
        removed = 0
        with self._state_lock:
            for jti, until in list(self._consumed_challenges.items()):
                if until <= now:
                    self._consumed_challenges.pop(jti, None)
                    removed += 1
            for user_id, until in list(self._lockouts.items()):
                if until <= now:
                    self._lockouts.pop(user_id, None)
                    removed += 1
        return removed
