from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from dormauth.api.schemas import (
    BackupCodeRequest,
    BackupCodesResponse,
    DeleteAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MFASetupResponse,
    MFASetupVerifyRequest,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordValidateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
    VerifyResetCodeRequest,
)
from dormauth.config import Settings
from dormauth.logging import get_logger
from dormauth.service.audit import AuditActor, client_ip
from dormauth.service.auth import AuthContext, LoginResult, public_user
from dormauth.service.errors import ForbiddenError, RateLimitedError
from dormauth.service.runtime import check_rate_limit, get_runtime
from dormauth.service.sessions import SessionGrant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise ``RateLimitedError`` once ``key`` exhausts its bucket."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            detail={"retry_after_seconds": reset_seconds},
        )


def _request_ip(request: Request) -> Optional[str]:
    return client_ip(
        request.headers.get("x-forwarded-for"),
        request.client.host if request.client else None,
        get_runtime().settings.trusted_proxy_count,
    )


def _actor(request: Request, ctx: Optional[AuthContext] = None) -> AuditActor:
    return AuditActor(
        user_id=ctx.user_id if ctx else None,
        name=ctx.user.name if ctx else None,
        ip_address=_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    settings = get_runtime().settings
    cookie = request.cookies.get(settings.session_cookie_name)
    if cookie:
        return cookie
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


def _apply_session_cookie(response: Response, grant: SessionGrant, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        grant.token,
        httponly=True,
        secure=settings.is_production,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_absolute_hours * 3600,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite=settings.session_cookie_samesite,
    )


def _login_payload(result: LoginResult, mfa_enabled: bool) -> LoginResponse:
    if result.mfa_required:
        return LoginResponse(
            message=result.message,
            mfa_required=True,
            temp_token=result.mfa_token,
            mfa_method=result.mfa_method,
        )
    return LoginResponse(
        message=result.message,
        user=UserResponse(**public_user(result.user, mfa_enabled=mfa_enabled)),
        token=result.grant.token if result.grant else None,
        session_expires_at=result.grant.session.expires_at.isoformat() if result.grant else None,
        password_expired=result.password_expired,
        password_expiry_warning=result.password_expiry_warning,
        must_change_password=result.must_change_password,
        backup_codes_remaining=result.backup_codes_remaining,
        warning=result.warning,
    )


async def get_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_extract_token(request, authorization))


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.user.is_admin:
        raise ForbiddenError("admin access required")
    return ctx


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a student account.

    Raises:
        400: If the password fails the policy
        403: If registration is disabled
        409: If the email is already registered
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"register:{_request_ip(request)}", 10, 3600)
    user = await runtime.auth.register(
        email=body.email,
        name=body.name,
        password=body.password,
        phone=body.phone,
        actor=_actor(request),
    )
    return Envelope(
        status="ok",
        data={"message": "User registered successfully", "user": public_user(user)},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns a session (cookie plus token) or, when MFA is enabled, a
    short-lived ``temp_token`` for ``/v1/mfa/verify``.

    Raises:
        401: If credentials are invalid
        423: If the account is locked
        429: If the client IP is blocked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        ip_addr=_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.grant:
        _apply_session_cookie(response, result.grant, runtime.settings)
    return Envelope(status="ok", data=_login_payload(result, mfa_enabled=False))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.logout(_extract_token(request, authorization), actor=_actor(request))
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Logout successful"})


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=get_runtime().auth.profile(ctx))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        ctx, body.current_password, body.new_password, actor=_actor(request, ctx)
    )
    return Envelope(
        status="ok",
        data={"message": "Password changed successfully", "sessions_revoked": revoked},
    )


@router.post("/auth/validate-password", response_model=Envelope, tags=["auth"])
async def validate_password(body: PasswordValidateRequest):
    result = get_runtime().auth.validate_password(body.password)
    return Envelope(status="ok", data=result.as_dict())


@router.get("/auth/password-requirements", response_model=Envelope, tags=["auth"])
async def password_requirements():
    return Envelope(status="ok", data=get_runtime().auth.password_requirements())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_hour, 3600
    )
    return Envelope(status="ok", data=await runtime.auth.forgot_password(body.email))


@router.post("/auth/verify-reset-code", response_model=Envelope, tags=["auth"])
async def verify_reset_code(body: VerifyResetCodeRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset_verify:{body.email}",
        runtime.settings.reset_verify_rate_limit_per_hour,
        3600,
    )
    token = await runtime.auth.verify_reset_code(body.email, body.code)
    return Envelope(
        status="ok",
        data={"message": "Code verified successfully", "reset_token": token},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email, body.reset_token, body.new_password)
    return Envelope(
        status="ok",
        data={
            "message": "Password reset successfully. You can now log in with your new password."
        },
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    sessions = get_runtime().auth.list_sessions(ctx)
    return Envelope(status="ok", data={"sessions": sessions, "count": len(sessions)})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str, response: Response, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    runtime.auth.revoke_session(ctx, session_id)
    if session_id == ctx.session_id:
        _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Session revoked successfully"})


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_all_sessions(ctx: AuthContext = Depends(get_auth_context)):
    revoked = get_runtime().auth.revoke_all_sessions(ctx, keep_current=True)
    return Envelope(
        status="ok",
        data={"message": "All sessions revoked successfully", "revoked_count": revoked},
    )


@router.delete("/auth/account", response_model=Envelope, tags=["auth"])
async def delete_account(
    body: DeleteAccountRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.delete_account(ctx, body.password)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Account deleted successfully"})


# -- mfa -----------------------------------------------------------------------


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa(body: MFAVerifyRequest, request: Request, response: Response):
    """Exchange a login challenge token and TOTP code for a session."""
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa(
        body.temp_token,
        body.code,
        ip_addr=_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookie(response, result.grant, runtime.settings)
    payload = _login_payload(result, mfa_enabled=True)
    payload.message = "MFA verification successful"
    return Envelope(status="ok", data=payload)


@router.post("/mfa/use-backup", response_model=Envelope, tags=["mfa"])
async def use_backup_code(body: BackupCodeRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.redeem_backup_code(
        body.temp_token,
        body.backup_code,
        ip_addr=_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookie(response, result.grant, runtime.settings)
    payload = _login_payload(result, mfa_enabled=True)
    payload.message = "Backup code verified"
    return Envelope(status="ok", data=payload)


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def setup_mfa(ctx: AuthContext = Depends(get_auth_context)):
    info = get_runtime().auth.setup_mfa(ctx)
    return Envelope(
        status="ok",
        data=MFASetupResponse(
            message="Scan the QR code with your authenticator app",
            secret=info.secret,
            qr_code=info.qr_code,
            provisioning_uri=info.provisioning_uri,
        ),
    )


@router.post("/mfa/verify-setup", response_model=Envelope, tags=["mfa"])
async def verify_mfa_setup(body: MFASetupVerifyRequest, ctx: AuthContext = Depends(get_auth_context)):
    codes = await get_runtime().auth.complete_mfa_setup(ctx, body.code)
    return Envelope(
        status="ok",
        data=BackupCodesResponse(message="MFA enabled successfully", backup_codes=codes),
    )


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_auth_context)):
    revoked = await get_runtime().auth.disable_mfa(ctx, body.password)
    return Envelope(
        status="ok",
        data={"message": "MFA disabled successfully", "sessions_revoked": revoked},
    )


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def regenerate_backup_codes(
    body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_auth_context)
):
    codes = await get_runtime().auth.regenerate_backup_codes(ctx, body.password)
    return Envelope(
        status="ok",
        data=BackupCodesResponse(message="New backup codes generated", backup_codes=codes),
    )


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=get_runtime().auth.mfa_status(ctx))


# -- admin ---------------------------------------------------------------------


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_user(user_id: str, admin: AuthContext = Depends(get_admin_context)):
    user = await get_runtime().auth.unlock_account(admin, user_id)
    return Envelope(
        status="ok",
        data={"message": "Account unlocked", "user": public_user(user)},
    )


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_list_audit(
    action: Optional[str] = Query(None, max_length=64),
    target_type: Optional[str] = Query(None, max_length=64),
    performed_by: Optional[str] = Query(None, max_length=128),
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    admin: AuthContext = Depends(get_admin_context),
):
    data = get_runtime().auth.list_audit(
        action=action,
        target_type=target_type,
        performed_by=performed_by,
        search=search,
        limit=limit,
        offset=offset,
    )
    return Envelope(status="ok", data=data)
