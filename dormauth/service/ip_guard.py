from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from dormauth.config import Settings
from dormauth.logging import get_logger
from dormauth.service.errors import IPBlockedError
from dormauth.storage.models import utcnow
from dormauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass
class _Window:
    count: int
    started_at: datetime


@dataclass
class _Block:
    until: datetime


@dataclass
class _Strikes:
    count: int
    last_at: datetime


class IPGuard:
    """Per-IP login attempt counter with escalating temporary blocks.

    A fixed window counts every login attempt from an IP. Exceeding the
    threshold blocks the IP for ``ip_block_minutes``, doubling per repeat
    offence up to ``ip_block_max_minutes``. The window counter and the block
    record are independent; neither expires the other.

    Redis Lua scripts provide the atomic increment-and-block when a cache is
    configured. Otherwise a process-local map guarded by a lock is used.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._blocks: Dict[str, _Block] = {}
        self._strikes: Dict[str, _Strikes] = {}

    def _now(self) -> datetime:
        return self._clock()

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.ip_window_minutes)

    @property
    def strike_memory(self) -> timedelta:
        return timedelta(hours=self.settings.ip_strike_memory_hours)

    def _block_duration(self, strikes: int) -> timedelta:
        minutes = self.settings.ip_block_minutes * (2 ** max(0, strikes - 1))
        return timedelta(minutes=min(minutes, self.settings.ip_block_max_minutes))

    async def is_blocked(self, ip: str) -> bool:
        return await self.block_remaining(ip) > 0

    async def block_remaining(self, ip: str) -> int:
        """Seconds until the block on ``ip`` lifts, 0 when not blocked."""
        if self.cache:
            return await self.cache.ip_block_ttl(ip)
        now = self._now()
        with self._lock:
            block = self._blocks.get(ip)
            if block is None:
                return 0
            if block.until <= now:
                self._blocks.pop(ip, None)
                return 0
            return int(math.ceil((block.until - now).total_seconds()))

    async def record_attempt(self, ip: str) -> bool:
        """Count one attempt; False when the IP is (now) blocked."""
        allowed, _ = await self._record(ip)
        return allowed

    async def _record(self, ip: str) -> tuple[bool, int]:
        if self.cache:
            allowed, block_seconds, count = await self.cache.ip_attempt(
                ip,
                threshold=self.settings.ip_block_threshold,
                window_seconds=int(self.window.total_seconds()),
                base_block_seconds=self.settings.ip_block_minutes * 60,
                max_block_seconds=self.settings.ip_block_max_minutes * 60,
                strike_ttl_seconds=int(self.strike_memory.total_seconds()),
            )
            if not allowed and count > 0:
                logger.warning(
                    "ip_blocked", ip=ip, attempts=count, block_seconds=block_seconds
                )
            return allowed, block_seconds

        now = self._now()
        with self._lock:
            block = self._blocks.get(ip)
            if block is not None and block.until > now:
                return False, int(math.ceil((block.until - now).total_seconds()))
            window = self._windows.get(ip)
            if window is None or now - window.started_at >= self.window:
                window = _Window(count=0, started_at=now)
                self._windows[ip] = window
            window.count += 1
            if window.count <= self.settings.ip_block_threshold:
                return True, 0
            duration = self._block_locked(ip, now)
            attempts = window.count
        logger.warning(
            "ip_blocked",
            ip=ip,
            attempts=attempts,
            block_seconds=int(duration.total_seconds()),
        )
        return False, int(duration.total_seconds())

    def _block_locked(self, ip: str, now: datetime, duration: Optional[timedelta] = None) -> timedelta:
        strikes = self._strikes.get(ip)
        if strikes is None or now - strikes.last_at >= self.strike_memory:
            strikes = _Strikes(count=0, last_at=now)
        strikes.count += 1
        strikes.last_at = now
        self._strikes[ip] = strikes
        if duration is None:
            duration = self._block_duration(strikes.count)
        self._blocks[ip] = _Block(until=now + duration)
        return duration

    async def block(self, ip: str, duration: Optional[timedelta] = None) -> timedelta:
        """Explicitly block ``ip``; default duration follows the escalation ladder."""
        if self.cache:
            duration = duration or self._block_duration(1)
            await self.cache.ip_block(ip, int(duration.total_seconds()))
        else:
            with self._lock:
                duration = self._block_locked(ip, self._now(), duration)
        logger.warning("ip_block_set", ip=ip, block_seconds=int(duration.total_seconds()))
        return duration

    async def unblock(self, ip: str) -> None:
        if self.cache:
            await self.cache.ip_unblock(ip)
            return
        with self._lock:
            self._blocks.pop(ip, None)
            self._windows.pop(ip, None)
            self._strikes.pop(ip, None)
        logger.info("ip_unblocked", ip=ip)

    def blocked_error(self, retry_after: int) -> IPBlockedError:
        minutes = max(1, math.ceil(retry_after / 60))
        return IPBlockedError(
            "Your IP has been temporarily blocked due to too many failed login "
            f"attempts. Try again in {minutes} minutes",
            detail={"retry_after_seconds": retry_after},
        )

    async def ensure_not_blocked(self, ip: str) -> None:
        """Reject a blocked IP without counting an attempt."""
        remaining = await self.block_remaining(ip)
        if remaining > 0:
            raise self.blocked_error(remaining)

    async def gate(self, ip: str) -> None:
        """Login gate: block check first, then count against the window."""
        await self.ensure_not_blocked(ip)
        allowed, retry_after = await self._record(ip)
        if not allowed:
            raise self.blocked_error(retry_after)

    def cleanup_expired(self) -> int:
        """Drop stale local windows, blocks and strike records."""
        if self.cache:
            return 0
        now = self._now()
        removed = 0
        with self._lock:
            for ip, window in list(self._windows.items()):
                if now - window.started_at >= self.window:
                    self._windows.pop(ip, None)
                    removed += 1
            for ip, block in list(self._blocks.items()):
                if block.until <= now:
                    self._blocks.pop(ip, None)
                    removed += 1
            for ip, strikes in list(self._strikes.items()):
                if now - strikes.last_at >= self.strike_memory:
                    self._strikes.pop(ip, None)
                    removed += 1
        return removed
