from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken

from dormauth.logging import get_logger
from dormauth.storage.errors import ConstraintViolation, StorageUnavailable
from dormauth.storage.models import (
    AuditRecord,
    BackupCode,
    FailureState,
    MFADisabled,
    MFAEnabled,
    MFAPendingSetup,
    MFAState,
    PasswordResetRecord,
    ResetStage,
    Session,
    User,
    utcnow,
)

# Idle-activity stamps newer than this stay in memory until the next write
TOUCH_PERSIST_INTERVAL = timedelta(seconds=60)


class MemoryStore:
    """In-process identity store persisted to a JSON snapshot on every write.

    All reads and writes go through ``_data_lock`` so compound operations
    (lockout increments, session admission, backup-code redemption) are
    linearized per process.
    """

    def __init__(
        self, fs_root: str = "/tmp/dormauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.mfa_states: Dict[str, MFAState] = {}
        self.reset_records: Dict[str, PasswordResetRecord] = {}
        self.audit_records: List[AuditRecord] = []
        self._persisted_activity: Dict[str, datetime] = {}
        # RLock so compound operations can call helpers that also lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            shared_fs = Path(os.getenv("SHARED_FS_ROOT", "/srv/dormauth"))
            secret_path = shared_fs / ".jwt_secret"
            fallback_path = self.fs_root / ".jwt_secret"
            for candidate in (secret_path, fallback_path):
                try:
                    if candidate.exists():
                        material = candidate.read_text().strip()
                        if material:
                            break
                except OSError:
                    continue
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    secret_path.parent.mkdir(parents=True, exist_ok=True)
                    secret_path.write_text(generated)
                    os.chmod(secret_path, 0o600)
                    material = generated
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = "student",
        is_active: bool = True,
        must_change_password: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(
                existing.email == email and not existing.is_deleted
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                phone=phone,
                role=role,
                is_active=is_active,
                must_change_password=must_change_password,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email and (include_deleted or not u.is_deleted)
                ),
                None,
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            live = [u for u in self.users.values() if not u.is_deleted]
            return sorted(live, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                if not hasattr(user, key):
                    raise ValueError(f"unknown user field: {key}")
                setattr(user, key, value)
            self._persist_state()
            return user

    def tombstone_user(self, user_id: str, *, now: datetime) -> Optional[User]:
        """Deactivate an identity while keeping its row for audit references."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.deleted_at = now
            user.is_active = False
            user.failed_login_count = 0
            user.locked_until = None
            self.credentials.pop(user_id, None)
            self.mfa_states.pop(user_id, None)
            self.reset_records.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return user

    # -- credentials -----------------------------------------------------------

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            if changed_at is not None:
                user.password_changed_at = changed_at
                user.password_expires_at = expires_at
                user.must_change_password = False
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[FailureState]:
        """Increment the failure counter and lock once the ceiling is reached.

        A still-active lock is reported with ``already_locked`` and leaves the
        counters untouched.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.locked_until is not None and user.locked_until > now:
                return FailureState(
                    count=user.failed_login_count,
                    locked_until=user.locked_until,
                    already_locked=True,
                )
            if user.locked_until is not None:
                user.failed_login_count = 1
                user.locked_until = None
            else:
                user.failed_login_count += 1
            if user.failed_login_count >= max_attempts:
                user.locked_until = now + lockout
            user.last_failed_login_at = now
            self._persist_state()
            return FailureState(count=user.failed_login_count, locked_until=user.locked_until)

    def clear_login_failures(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[User]:
        """Zero the lockout counters; stamp last-login when ``now`` is given."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_count = 0
            user.locked_until = None
            if now is not None:
                user.last_login_at = now
                user.last_login_ip = ip_addr
                user.last_login_user_agent = user_agent
            self._persist_state()
            return user

    # -- mfa -------------------------------------------------------------------

    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return secret

    def get_mfa_state(self, user_id: str) -> MFAState:
        with self._data_lock:
            state = self.mfa_states.get(user_id)
            if state is None or isinstance(state, MFADisabled):
                return MFADisabled()
            return replace(state, secret=self._decrypt_mfa_secret(state.secret))

    def set_mfa_pending(self, user_id: str, secret: str, *, now: datetime) -> MFAPendingSetup:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            if isinstance(self.mfa_states.get(user_id), MFAEnabled):
                raise ConstraintViolation("mfa already enabled", {"user_id": user_id})
            self.mfa_states[user_id] = MFAPendingSetup(
                secret=self._encrypt_mfa_secret(secret), created_at=now
            )
            self._persist_state()
            return MFAPendingSetup(secret=secret, created_at=now)

    def enable_mfa(
        self,
        user_id: str,
        *,
        expected_secret: str,
        code_hashes: Sequence[str],
        now: datetime,
    ) -> bool:
        """Promote a pending setup to enabled if the pending secret is unchanged."""
        with self._data_lock:
            state = self.mfa_states.get(user_id)
            if not isinstance(state, MFAPendingSetup):
                return False
            if not hmac.compare_digest(
                self._decrypt_mfa_secret(state.secret), expected_secret
            ):
                return False
            self.mfa_states[user_id] = MFAEnabled(
                secret=state.secret,
                backup_codes=tuple(BackupCode(code_hash=h) for h in code_hashes),
                enabled_at=now,
            )
            self._persist_state()
            return True

    def consume_backup_code(
        self, user_id: str, code_hash: str, *, now: datetime
    ) -> Optional[int]:
        """Mark the first unused matching code as used; return remaining count."""
        with self._data_lock:
            state = self.mfa_states.get(user_id)
            if not isinstance(state, MFAEnabled):
                return None
            codes = list(state.backup_codes)
            match_index = None
            for index, code in enumerate(codes):
                # Compare every entry so timing does not depend on position
                if hmac.compare_digest(code.code_hash, code_hash) and not code.used:
                    if match_index is None:
                        match_index = index
            if match_index is None:
                return None
            codes[match_index] = replace(codes[match_index], used=True, used_at=now)
            updated = replace(state, backup_codes=tuple(codes))
            self.mfa_states[user_id] = updated
            self._persist_state()
            return updated.remaining_backup_codes

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> bool:
        with self._data_lock:
            state = self.mfa_states.get(user_id)
            if not isinstance(state, MFAEnabled):
                return False
            self.mfa_states[user_id] = replace(
                state, backup_codes=tuple(BackupCode(code_hash=h) for h in code_hashes)
            )
            self._persist_state()
            return True

    def clear_mfa(self, user_id: str) -> bool:
        with self._data_lock:
            existed = self.mfa_states.pop(user_id, None) is not None
            if existed:
                self._persist_state()
            return existed

    # -- sessions --------------------------------------------------------------

    def admit_session(
        self,
        session: Session,
        *,
        cap: int,
        idle_timeout: timedelta,
        now: datetime,
    ) -> tuple[Session, Optional[Session]]:
        """Insert ``session`` keeping at most ``cap`` active sessions per user.

        Counting, eviction and insertion happen under one lock acquisition.
        Returns the inserted session and the evicted one, if any.
        """
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == session.user_id and s.is_active(now, idle_timeout)
            ]
            evicted = None
            if len(active) >= cap:
                evicted = min(active, key=lambda s: s.created_at)
                self.sessions.pop(evicted.id, None)
            self.sessions[session.id] = session
            self._persist_state()
            return session, evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if hmac.compare_digest(s.token_hash, token_hash)
                ),
                None,
            )

    def touch_session(self, session_id: str, *, now: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            previous = self._persisted_activity.get(session_id, sess.last_activity_at)
            sess.last_activity_at = now
            if now - previous >= TOUCH_PERSIST_INTERVAL:
                self._persisted_activity[session_id] = now
                self._persist_state()
            return sess

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )

    def revoke_session(self, session_id: str, *, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or (user_id is not None and sess.user_id != user_id):
                return False
            self.sessions.pop(session_id, None)
            self._persist_state()
            return True

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            for sid in list(self._persisted_activity):
                if sid not in self.sessions:
                    self._persisted_activity.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_sessions(self, *, now: datetime, idle_timeout: timedelta) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_active(now, idle_timeout)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- password reset --------------------------------------------------------

    def put_reset_record(self, record: PasswordResetRecord) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found for reset", {"user_id": record.user_id})
            self.reset_records[record.user_id] = record
            self._persist_state()

    def get_reset_record(self, user_id: str) -> Optional[PasswordResetRecord]:
        with self._data_lock:
            return self.reset_records.get(user_id)

    def delete_reset_record(
        self, user_id: str, *, expected: Optional[PasswordResetRecord] = None
    ) -> bool:
        """Remove the reset record; with ``expected`` only if it is still current."""
        with self._data_lock:
            current = self.reset_records.get(user_id)
            if current is None or (expected is not None and current is not expected):
                return False
            self.reset_records.pop(user_id, None)
            self._persist_state()
            return True

    def record_reset_attempt(self, user_id: str, *, max_attempts: int) -> int:
        """Count a wrong guess; discard the record once ``max_attempts`` is hit."""
        with self._data_lock:
            record = self.reset_records.get(user_id)
            if record is None:
                return 0
            record.attempts += 1
            if record.attempts >= max_attempts:
                self.reset_records.pop(user_id, None)
            self._persist_state()
            return record.attempts

    def purge_expired_resets(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [uid for uid, rec in self.reset_records.items() if rec.expires_at <= now]
            for uid in stale:
                self.reset_records.pop(uid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit -----------------------------------------------------------------

    def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._data_lock:
            self.audit_records.append(record)
            self._persist_state()
            return record

    def list_audit_records(
        self,
        *,
        action: Optional[str] = None,
        target_type: Optional[str] = None,
        performed_by: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[List[AuditRecord], int]:
        with self._data_lock:
            needle = search.lower() if search else None
            matches = [
                rec
                for rec in self.audit_records
                if (action is None or rec.action == action)
                and (target_type is None or rec.target_type == target_type)
                and (performed_by is None or rec.performed_by == performed_by)
                and (
                    needle is None
                    or needle in (rec.performed_by_name or "").lower()
                    or needle in (rec.target_name or "").lower()
                )
            ]
            matches.sort(key=lambda rec: rec.created_at, reverse=True)
            return matches[offset : offset + limit], len(matches)

    # -- persistence -----------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "mfa_states": [
                self._serialize_mfa_state(user_id, state)
                for user_id, state in self.mfa_states.items()
            ],
            "reset_records": [
                self._serialize_reset_record(rec) for rec in self.reset_records.values()
            ],
            "audit_records": [
                self._serialize_audit_record(rec) for rec in self.audit_records
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.mfa_states = {
            entry["user_id"]: self._deserialize_mfa_state(entry)
            for entry in data.get("mfa_states", [])
        }
        self.reset_records = {
            entry["user_id"]: self._deserialize_reset_record(entry)
            for entry in data.get("reset_records", [])
        }
        self.audit_records = [
            self._deserialize_audit_record(entry)
            for entry in data.get("audit_records", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "phone": user.phone,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "password_expires_at": self._serialize_datetime(user.password_expires_at),
            "must_change_password": user.must_change_password,
            "failed_login_count": user.failed_login_count,
            "last_failed_login_at": self._serialize_datetime(user.last_failed_login_at),
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "last_login_user_agent": user.last_login_user_agent,
            "deleted_at": self._serialize_datetime(user.deleted_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            phone=data.get("phone"),
            role=data.get("role", "student"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            is_active=data.get("is_active", True),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            password_expires_at=self._deserialize_datetime(data.get("password_expires_at")),
            must_change_password=data.get("must_change_password", False),
            failed_login_count=int(data.get("failed_login_count", 0)),
            last_failed_login_at=self._deserialize_datetime(data.get("last_failed_login_at")),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            last_login_user_agent=data.get("last_login_user_agent"),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_hash": session.token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )

    def _serialize_mfa_state(self, user_id: str, state: MFAState) -> dict:
        payload: Dict[str, Any] = {"user_id": user_id, "state": state.kind}
        if isinstance(state, MFAPendingSetup):
            payload["secret"] = state.secret
            payload["created_at"] = self._serialize_datetime(state.created_at)
        elif isinstance(state, MFAEnabled):
            payload["secret"] = state.secret
            payload["enabled_at"] = self._serialize_datetime(state.enabled_at)
            payload["backup_codes"] = [
                {
                    "code_hash": code.code_hash,
                    "used": code.used,
                    "used_at": self._serialize_datetime(code.used_at),
                }
                for code in state.backup_codes
            ]
        return payload

    def _deserialize_mfa_state(self, data: dict) -> MFAState:
        kind = data.get("state")
        if kind == MFAPendingSetup.kind:
            return MFAPendingSetup(
                secret=data["secret"],
                created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            )
        if kind == MFAEnabled.kind:
            return MFAEnabled(
                secret=data["secret"],
                backup_codes=tuple(
                    BackupCode(
                        code_hash=code["code_hash"],
                        used=bool(code.get("used", False)),
                        used_at=self._deserialize_datetime(code.get("used_at")),
                    )
                    for code in data.get("backup_codes", [])
                ),
                enabled_at=self._deserialize_datetime(data.get("enabled_at")) or utcnow(),
            )
        return MFADisabled()

    def _serialize_reset_record(self, record: PasswordResetRecord) -> dict:
        return {
            "user_id": record.user_id,
            "stage": record.stage.value,
            "secret_hash": record.secret_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "attempts": record.attempts,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_reset_record(self, data: dict) -> PasswordResetRecord:
        return PasswordResetRecord(
            user_id=data["user_id"],
            stage=ResetStage(data["stage"]),
            secret_hash=data["secret_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_audit_record(self, record: AuditRecord) -> dict:
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
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_audit_record(self, data: dict) -> AuditRecord:
        return AuditRecord(
            id=data["id"],
            action=data["action"],
            target_type=data["target_type"],
            target_id=data.get("target_id"),
            target_name=data.get("target_name"),
            changes=data.get("changes"),
            performed_by=data.get("performed_by"),
            performed_by_name=data.get("performed_by_name"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
