from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    STUDENT = "student"
    WARDEN = "warden"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


ADMIN_ROLES = frozenset({Role.ADMIN.value, Role.SUPERADMIN.value})


@dataclass
class User:
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: str = Role.STUDENT.value
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    password_changed_at: Optional[datetime] = None
    password_expires_at: Optional[datetime] = None
    must_change_password: bool = False
    failed_login_count: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    last_login_user_agent: Optional[str] = None
    deleted_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class FailureState:
    """Lockout counters after an atomic failure increment."""

    count: int
    locked_until: Optional[datetime] = None
    already_locked: bool = False


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        now: datetime,
        ttl_minutes: int = 8 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        meta: Dict | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_active(self, now: datetime, idle_timeout: timedelta) -> bool:
        return now < self.expires_at and now - self.last_activity_at <= idle_timeout


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class MFADisabled:
    kind = "disabled"


@dataclass(frozen=True)
class MFAPendingSetup:
    secret: str
    created_at: datetime = field(default_factory=utcnow)
    kind = "pending_setup"


@dataclass(frozen=True)
class MFAEnabled:
    secret: str
    backup_codes: tuple[BackupCode, ...] = ()
    enabled_at: datetime = field(default_factory=utcnow)
    kind = "enabled"

    @property
    def remaining_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)


MFAState = Union[MFADisabled, MFAPendingSetup, MFAEnabled]


class ResetStage(str, Enum):
    CODE = "code"
    TOKEN = "token"


@dataclass
class PasswordResetRecord:
    user_id: str
    stage: ResetStage
    secret_hash: str
    expires_at: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditRecord:
    id: str
    action: str
    target_type: str
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    changes: Dict | None = None
    performed_by: Optional[str] = None
    performed_by_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


__all__: List[str] = [
    "ADMIN_ROLES",
    "AuditRecord",
    "BackupCode",
    "FailureState",
    "MFADisabled",
    "MFAEnabled",
    "MFAPendingSetup",
    "MFAState",
    "PasswordResetRecord",
    "ResetStage",
    "Role",
    "Session",
    "User",
    "UserAuthCredential",
    "utcnow",
]
