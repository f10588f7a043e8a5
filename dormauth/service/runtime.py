from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from dormauth.config import Settings, get_settings, reset_settings_cache
from dormauth.logging import get_logger
from dormauth.service.audit import AuditSink
from dormauth.service.auth import AuthOrchestrator
from dormauth.service.credentials import CredentialStore
from dormauth.service.email import EmailService
from dormauth.service.ip_guard import IPGuard
from dormauth.service.mfa import MFAEngine
from dormauth.service.password_policy import PasswordPolicy
from dormauth.service.sessions import SessionStore
from dormauth.service.tokens import SignedTokenCodec
from dormauth.storage.memory import MemoryStore
from dormauth.storage.models import utcnow
from dormauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding the pool to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the IP guard, MFA lockout and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; IP blocks, MFA lockouts "
                    "and rate limits are process-local."
                ),
                mode=fallback_mode,
            )

        self.policy = PasswordPolicy.from_settings(self.settings)
        self.credentials = CredentialStore(
            self.store, self.policy, self.settings, clock=self.clock
        )
        self.ip_guard = IPGuard(self.cache, self.settings, clock=self.clock)
        self.sessions = SessionStore(self.store, self.settings, clock=self.clock)
        self.codec = SignedTokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.mfa = MFAEngine(
            self.store,
            self.sessions,
            self.credentials,
            self.codec,
            self.cache,
            self.settings,
            code_key=self.settings.jwt_secret,
            clock=self.clock,
        )
        self.audit = AuditSink(self.store, clock=self.clock)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthOrchestrator(
            self.store,
            self.credentials,
            self.policy,
            self.ip_guard,
            self.sessions,
            self.mfa,
            self.audit,
            self.email,
            self.settings,
            reset_key=self.settings.jwt_secret,
            clock=self.clock,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            max_sessions=self.settings.max_concurrent_sessions,
        )

    async def close(self) -> None:
        await self.auth.drain_background()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Optional[Callable[[], datetime]] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            # Sync client can be closed without an event loop
            asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket limit, backed by Redis when available.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = runtime.clock()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


def prune_local_rate_limits(runtime: Runtime, max_age: timedelta = timedelta(hours=1)) -> int:
    now = runtime.clock()
    with runtime._local_rate_limit_lock:
        stale = [k for k, (_, ts) in runtime._local_rate_limits.items() if now - ts >= max_age]
        for key in stale:
            runtime._local_rate_limits.pop(key, None)
    return len(stale)
