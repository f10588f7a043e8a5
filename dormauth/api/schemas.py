from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from dormauth.logging import get_correlation_id

# Upper bound on any password accepted at the HTTP layer; the policy enforces the real limits
MAX_PASSWORD_INPUT = 1024


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "locked",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[A-Za-z\s'-]+$")
_PHONE_PATTERN = re.compile(r"^(\+977)?[0-9]{10,11}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    cleaned = " ".join(_normalize_unicode(value).split())
    if len(cleaned) < 2 or len(cleaned) > 100:
        raise ValueError("name must be between 2 and 100 characters")
    if not _NAME_PATTERN.match(cleaned):
        raise ValueError("name can only contain letters, spaces, hyphens, and apostrophes")
    return cleaned


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = re.sub(r"[\s-]", "", value)
    if not cleaned:
        return None
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("please provide a valid phone number")
    return cleaned


class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=200)
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MFAVerifyRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=6, max_length=6)

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("code must be 6 digits")
        return value


class BackupCodeRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)
    backup_code: str = Field(..., min_length=1, max_length=32)


class MFASetupVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("code must be 6 digits")
        return value


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("passwords do not match")
        return self


class PasswordValidateRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyResetCodeRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=6, max_length=6)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    email: str
    reset_token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("passwords do not match")
        return self


class DeleteAccountRequest(BaseModel):
    password: str = Field(default="", max_length=MAX_PASSWORD_INPUT)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: str
    mfa_enabled: bool = False
    created_at: str
    last_login_at: Optional[str] = None


class LoginResponse(BaseModel):
    message: str
    mfa_required: bool = False
    temp_token: Optional[str] = None
    mfa_method: Optional[str] = None
    user: Optional[UserResponse] = None
    token: Optional[str] = None
    session_expires_at: Optional[str] = None
    password_expired: bool = False
    password_expiry_warning: Optional[dict] = None
    must_change_password: bool = False
    backup_codes_remaining: Optional[int] = None
    warning: Optional[str] = None


class MFASetupResponse(BaseModel):
    message: str
    secret: str
    qr_code: str
    provisioning_uri: str


class BackupCodesResponse(BaseModel):
    message: str
    backup_codes: List[str]
