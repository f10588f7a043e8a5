from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional

from dormauth.logging import get_logger
from dormauth.storage.memory import MemoryStore
from dormauth.storage.models import AuditRecord, utcnow

logger = get_logger(__name__)

# Removed from snapshots before anything is written
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "password_hash",
        "new_password",
        "current_password",
        "mfa_secret",
        "secret",
        "backup_codes",
        "reset_code",
        "reset_token",
        "token",
        "token_hash",
        "failed_login_count",
        "last_failed_login_at",
        "locked_until",
    }
)


class AuditAction:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    MFA_ENABLE = "MFA_ENABLE"
    MFA_DISABLE = "MFA_DISABLE"
    MFA_BACKUP_REGENERATE = "MFA_BACKUP_REGENERATE"
    SESSION_REVOKE = "SESSION_REVOKE"


@dataclass
class AuditActor:
    """Who performed a mutation and from where."""

    user_id: Optional[str] = None
    name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def client_ip(
    forwarded_for: Optional[str], peer: Optional[str], trusted_proxies: int = 0
) -> Optional[str]:
    """Resolve the caller address.

    ``X-Forwarded-For`` is client-writable, so it is only read when
    ``trusted_proxies`` reverse proxies sit in front of the app. The client
    is then the hop the outermost trusted proxy appended, counted from the
    right.
    """
    if trusted_proxies <= 0 or not forwarded_for:
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    if not hops:
        return peer
    return hops[-min(trusted_proxies, len(hops))]


def sanitize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: sanitize(item)
            for key, item in value.items()
            if str(key).lower() not in SENSITIVE_FIELDS
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def changed_fields(before: Mapping, after: Mapping) -> tuple[dict, dict]:
    keys = set(before) | set(after)
    diff_before = {k: before.get(k) for k in keys if before.get(k) != after.get(k)}
    diff_after = {k: after.get(k) for k in keys if before.get(k) != after.get(k)}
    return diff_before, diff_after


class AuditSink:
    """Append-only audit trail for security-relevant mutations.

    ``record`` never raises: a failed write is logged and the caller's
    operation carries on.
    """

    def __init__(self, store: MemoryStore, *, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or utcnow

    def record(
        self,
        action: str,
        target_type: str,
        target_id: Optional[str] = None,
        target_name: Optional[str] = None,
        *,
        before: Optional[Mapping] = None,
        after: Optional[Mapping] = None,
        actor: Optional[AuditActor] = None,
    ) -> Optional[AuditRecord]:
        actor = actor or AuditActor()
        try:
            clean_before = sanitize(before) if before is not None else None
            clean_after = sanitize(after) if after is not None else None
            if action == AuditAction.UPDATE and clean_before and clean_after:
                clean_before, clean_after = changed_fields(clean_before, clean_after)
            changes = None
            if clean_before is not None or clean_after is not None:
                changes = {"before": clean_before, "after": clean_after}
            record = AuditRecord(
                id=str(uuid.uuid4()),
                action=action,
                target_type=target_type,
                target_id=target_id,
                target_name=target_name,
                changes=changes,
                performed_by=actor.user_id,
                performed_by_name=actor.name,
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
                created_at=self._clock(),
            )
            return self.store.append_audit_record(record)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=action,
                target_type=target_type,
                target_id=target_id,
                error=str(exc),
            )
            return None

    def list(
        self,
        *,
        action: Optional[str] = None,
        target_type: Optional[str] = None,
        performed_by: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[List[AuditRecord], int]:
        limit = max(1, min(limit, 100))
        return self.store.list_audit_records(
            action=action,
            target_type=target_type,
            performed_by=performed_by,
            search=search,
            limit=limit,
            offset=max(0, offset),
        )


def serialize_record(record: AuditRecord) -> dict:
    return {
        "id": record.id,
        "action": record.action,
        "target_type": record.target_type,
        "target_id": record.target_id,
        "target_name": record.target_name,
        "changes": record.changes,
        "performed_by": record.performed_by,
        "performed_by_name": record.performed_by_name,
        "ip_address": record.ip_address,
        "user_agent": record.user_agent,
        "created_at": record.created_at.isoformat(),
    }
