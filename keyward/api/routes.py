from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from keyward.api.schemas import (
    AdminSessionListResponse,
    AdminSessionResponse,
    BackupCodesResponse,
    CountResponse,
    CsrfTokenResponse,
    EmailVerificationConfirm,
    EmailVerificationSendRequest,
    EmailVerificationStatusResponse,
    Envelope,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    TwoFactorCodeRequest,
    TwoFactorEnrollResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyResponse,
)
from keyward.logging import get_logger
from keyward.service.errors import ForbiddenError
from keyward.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/security")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class AdminContext:
    admin_id: str
    session_token: str


async def get_user_id(
    x_user_id: Optional[str] = Header(None, convert_underscores=False, alias="X-User-ID"),
) -> str:
    """Caller identity as asserted by the upstream authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise _http_error("unauthorized", "missing user identity", status_code=401)
    return x_user_id.strip()


async def get_session_id(
    x_session_id: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Session-ID"
    ),
) -> str:
    if not x_session_id or not x_session_id.strip():
        raise _http_error("unauthorized", "missing session", status_code=401)
    return x_session_id.strip()


async def require_csrf(
    session_id: str = Depends(get_session_id),
    x_csrf_token: Optional[str] = Header(
        None, convert_underscores=False, alias="X-CSRF-Token"
    ),
) -> None:
    """Consume the one-time CSRF token bound to the caller's session."""
    runtime = get_runtime()
    if not await runtime.csrf.validate(x_csrf_token or "", session_id):
        raise _http_error("forbidden", "missing or invalid CSRF token", status_code=403)


async def get_admin(
    x_admin_session: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Admin-Session"
    ),
) -> AdminContext:
    runtime = get_runtime()
    token = (x_admin_session or "").strip()
    admin_id = await asyncio.to_thread(runtime.admin_sessions.validate, token)
    if not admin_id:
        raise _http_error("unauthorized", "invalid admin session", status_code=401)
    user = runtime.store.get_user(admin_id)
    if not user or not user.is_admin:
        logger.warning("admin_session_role_mismatch", admin_id=admin_id)
        raise ForbiddenError("admin access required")
    return AdminContext(admin_id=admin_id, session_token=token)


# ---------------------------------------------------------------------------
# Two-factor authentication
# ---------------------------------------------------------------------------


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    status = await asyncio.to_thread(runtime.two_factor.status, user_id)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


@router.post(
    "/2fa/enable",
    response_model=Envelope,
    tags=["2fa"],
    dependencies=[Depends(require_csrf)],
)
async def two_factor_enable(user_id: str = Depends(get_user_id)):
    """Start enrollment. The secret and backup codes are only shown here."""
    runtime = get_runtime()
    enrollment = await asyncio.to_thread(runtime.two_factor.enroll, user_id)
    return Envelope(
        status="ok",
        data=TwoFactorEnrollResponse(
            secret=enrollment.secret,
            enrollment_uri=enrollment.enrollment_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post(
    "/2fa/confirm",
    response_model=Envelope,
    tags=["2fa"],
    dependencies=[Depends(require_csrf)],
)
async def two_factor_confirm(
    body: TwoFactorCodeRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.two_factor.confirm_enrollment, user_id, body.code)
    status = await asyncio.to_thread(runtime.two_factor.status, user_id)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorCodeRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    valid = await asyncio.to_thread(runtime.two_factor.verify, user_id, body.code)
    if not valid:
        raise _http_error("unauthorized", "invalid verification code", status_code=401)
    return Envelope(status="ok", data=TwoFactorVerifyResponse(valid=True))


@router.post(
    "/2fa/disable",
    response_model=Envelope,
    tags=["2fa"],
    dependencies=[Depends(require_csrf)],
)
async def two_factor_disable(
    body: TwoFactorCodeRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.two_factor.disable, user_id, body.code)
    status = await asyncio.to_thread(runtime.two_factor.status, user_id)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


@router.post(
    "/2fa/backup-codes",
    response_model=Envelope,
    tags=["2fa"],
    dependencies=[Depends(require_csrf)],
)
async def two_factor_regenerate_backup_codes(
    body: TwoFactorCodeRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    codes = await asyncio.to_thread(
        runtime.two_factor.regenerate_backup_codes, user_id, body.code
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/password/request-reset", response_model=Envelope, tags=["password"])
async def request_password_reset(
    body: PasswordResetRequest, background_tasks: BackgroundTasks
):
    # The lookup and delivery run after the response so known and unknown
    # addresses are indistinguishable to the caller.
    runtime = get_runtime()
    background_tasks.add_task(runtime.account.request_password_reset, body.email)
    return Envelope(status="ok", data={"requested": True})


@router.post("/password/reset", response_model=Envelope, tags=["password"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.account.reset_password, body.token, body.new_password
    )
    return Envelope(status="ok", data={"password_reset": True})


@router.post(
    "/password/change",
    response_model=Envelope,
    tags=["password"],
    dependencies=[Depends(require_csrf)],
)
async def change_password(
    body: PasswordChangeRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.account.change_password,
        user_id,
        body.current_password,
        body.new_password,
    )
    return Envelope(status="ok", data={"password_changed": True})


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/email/status", response_model=Envelope, tags=["email"])
async def email_verification_status(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    status = await asyncio.to_thread(runtime.account.email_verification_status, user_id)
    return Envelope(status="ok", data=EmailVerificationStatusResponse(**status))


@router.post(
    "/email/send-verification",
    response_model=Envelope,
    tags=["email"],
    dependencies=[Depends(require_csrf)],
)
async def send_email_verification(
    body: EmailVerificationSendRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.account.send_email_verification, user_id, body.email
    )
    return Envelope(status="ok", data={"sent": True})


@router.post("/email/verify", response_model=Envelope, tags=["email"])
async def verify_email(body: EmailVerificationConfirm):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.account.verify_email, body.token)
    return Envelope(
        status="ok",
        data=EmailVerificationStatusResponse(
            is_verified=user.is_email_verified,
            email=user.email,
            pending_verification=False,
        ),
    )


# ---------------------------------------------------------------------------
# CSRF and refresh tokens
# ---------------------------------------------------------------------------


@router.post("/csrf-token", response_model=Envelope, tags=["csrf"])
async def issue_csrf_token(
    user_id: str = Depends(get_user_id), session_id: str = Depends(get_session_id)
):
    runtime = get_runtime()
    issued = await runtime.csrf.generate(session_id)
    logger.info("csrf_token_issued", user_id=user_id, session_id=session_id)
    return Envelope(
        status="ok",
        data=CsrfTokenResponse(token=issued.token, expires_at=issued.expires_at),
    )


@router.post(
    "/refresh-tokens/revoke-all",
    response_model=Envelope,
    tags=["refresh-tokens"],
    dependencies=[Depends(require_csrf)],
)
async def revoke_all_refresh_tokens(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    count = await asyncio.to_thread(runtime.refresh_tokens.revoke_all, user_id)
    return Envelope(status="ok", data=CountResponse(count=count))


# ---------------------------------------------------------------------------
# Admin sessions
# ---------------------------------------------------------------------------


@router.get("/admin/sessions", response_model=Envelope, tags=["admin"])
async def list_admin_sessions(admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    listing = await asyncio.to_thread(
        runtime.admin_sessions.list, admin.admin_id, admin.session_token
    )
    return Envelope(
        status="ok",
        data=AdminSessionListResponse(
            sessions=[
                AdminSessionResponse(
                    id=view.id,
                    origin_addr=view.origin_addr,
                    user_agent=view.user_agent,
                    created_at=view.created_at,
                    last_active_at=view.last_active_at,
                    expires_at=view.expires_at,
                    is_current=view.is_current,
                )
                for view in listing.sessions
            ],
            current_session_id=listing.current_session_id,
        ),
    )


@router.delete("/admin/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def terminate_admin_session(
    session_id: str, request: Request, admin: AdminContext = Depends(get_admin)
):
    runtime = get_runtime()
    deleted = await asyncio.to_thread(
        runtime.admin_sessions.terminate, session_id, admin.admin_id
    )
    if not deleted:
        raise _http_error("not_found", "session not found", status_code=404)
    logger.info(
        "admin_session_terminated_via_api",
        admin_id=admin.admin_id,
        session_id=session_id,
        client=request.client.host if request.client else None,
    )
    return Envelope(status="ok", data={"terminated": session_id})


@router.delete("/admin/sessions", response_model=Envelope, tags=["admin"])
async def terminate_all_admin_sessions(admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    count = await asyncio.to_thread(runtime.admin_sessions.terminate_all, admin.admin_id)
    return Envelope(status="ok", data=CountResponse(count=count))
