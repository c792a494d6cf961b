from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Literal, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Response

from accountcore.api.error_handling import unwrap
from accountcore.api.schemas import (
    AccountResponse,
    ActivityResponse,
    AuthResponse,
    BulkOperationRequest,
    ChangePasswordRequest,
    DeactivateRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    PasswordConfirmRequest,
    PreferencesUpdateRequest,
    ReactivateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UpdateAccountRequest,
    UpdateStatusRequest,
)
from accountcore.logging import get_logger
from accountcore.service.authenticator import extract_bearer
from accountcore.service.runtime import get_runtime
from accountcore.service.sessions import TokenPair
from accountcore.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/users")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


async def get_identity(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Identity:
    runtime = get_runtime()
    token = extract_bearer(authorization) or access_cookie
    return unwrap(await runtime.auth.authenticate(token))


def _apply_session_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=tokens.access_expires_in,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=tokens.refresh_expires_in,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
        )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_in=tokens.access_expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
    )


async def _send_mail(send: Callable[[str, str], bool], to_email: str, token: str) -> bool:
    # SMTP blocks; keep it off the event loop
    sent = await asyncio.to_thread(send, to_email, token)
    if not sent:
        logger.warning("account_email_not_sent", kind=send.__name__)
    return sent


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an account and start its first session.

    A verification link is mailed to the new address. Handles and emails are
    unique; a clash answers 409.
    """
    runtime = get_runtime()
    registration = unwrap(
        await runtime.auth.register(
            body.handle,
            body.email,
            body.full_name,
            body.password,
            avatar=body.avatar,
            cover_image=body.cover_image,
        )
    )
    await _send_mail(
        runtime.email.send_email_verification,
        registration.account["email"],
        registration.verification_token,
    )
    _apply_session_cookies(response, registration.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=AccountResponse.model_validate(registration.account),
            tokens=_token_response(registration.tokens),
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with handle or email plus password.

    Issues a fresh token pair; any previously issued refresh token stops
    working.
    """
    runtime = get_runtime()
    outcome = unwrap(
        await runtime.auth.login(body.password, handle=body.handle, email=body.email)
    )
    _apply_session_cookies(response, outcome.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=AccountResponse.model_validate(outcome.account),
            tokens=_token_response(outcome.tokens),
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    unwrap(await runtime.auth.logout(identity))
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    response: Response,
    body: Optional[RefreshTokenRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange the current refresh token for a new pair.

    The token is read from the body, falling back to the refresh cookie.
    Each refresh token can be exchanged once.
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    tokens = unwrap(await runtime.auth.refresh(presented))
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data=_token_response(tokens))


@router.get("/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., max_length=4096)):
    runtime = get_runtime()
    account = unwrap(await runtime.auth.verify_email(token))
    return Envelope(status="ok", data=AccountResponse.model_validate(account))


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    request = unwrap(await runtime.auth.resend_verification(body.email))
    if request.token is None:
        return Envelope(status="ok", data={"status": "already_verified"})
    await _send_mail(runtime.email.send_email_verification, request.email, request.token)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, identity: Identity = Depends(get_identity)
):
    """Replace the password after confirming the current one.

    The current session stays valid.
    """
    runtime = get_runtime()
    unwrap(
        await runtime.auth.change_password(identity, body.old_password, body.new_password)
    )
    return Envelope(status="ok", data={"status": "password_changed"})


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    token = unwrap(await runtime.auth.request_password_reset(body.email))
    await _send_mail(runtime.email.send_password_reset, body.email, token)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    unwrap(await runtime.auth.complete_password_reset(body.token, body.new_password))
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/me", response_model=Envelope, tags=["account"])
async def get_current_account(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    account = unwrap(await runtime.auth.get_account(identity))
    return Envelope(status="ok", data=AccountResponse.model_validate(account))


@router.patch("/update-account", response_model=Envelope, tags=["account"])
async def update_account(body: UpdateAccountRequest, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    account = unwrap(
        await runtime.auth.update_details(
            identity,
            full_name=body.full_name,
            email=body.email,
            avatar=body.avatar,
            cover_image=body.cover_image,
        )
    )
    return Envelope(status="ok", data=AccountResponse.model_validate(account))


@router.get("/preferences", response_model=Envelope, tags=["account"])
async def get_preferences(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    preferences = unwrap(await runtime.auth.get_preferences(identity))
    return Envelope(status="ok", data=preferences)


@router.patch("/preferences", response_model=Envelope, tags=["account"])
async def update_preferences(
    body: PreferencesUpdateRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    preferences = unwrap(await runtime.auth.update_preferences(identity, body.changes()))
    return Envelope(status="ok", data=preferences)


@router.delete("/delete-account", response_model=Envelope, tags=["account"])
async def delete_account(
    body: PasswordConfirmRequest,
    response: Response,
    identity: Identity = Depends(get_identity),
):
    """Permanently remove the account after confirming the password."""
    runtime = get_runtime()
    unwrap(await runtime.auth.delete(identity, body.password))
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"status": "deleted"})


@router.post("/deactivate-account", response_model=Envelope, tags=["account"])
async def deactivate_account(
    body: DeactivateRequest,
    response: Response,
    identity: Identity = Depends(get_identity),
):
    """Deactivate the account and end its session.

    Reactivation goes through ``/reactivate-account`` with email and password.
    """
    runtime = get_runtime()
    unwrap(await runtime.auth.deactivate(identity, body.password, body.reason))
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"status": "deactivated"})


@router.post("/reactivate-account", response_model=Envelope, tags=["account"])
async def reactivate_account(body: ReactivateRequest):
    runtime = get_runtime()
    changed = unwrap(await runtime.auth.reactivate(body.email, body.password))
    return Envelope(
        status="ok", data={"status": "reactivated" if changed else "already_active"}
    )


@router.get("/admin/all-users", response_model=Envelope, tags=["admin"])
async def list_accounts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    identity: Identity = Depends(get_identity),
):
    """Paginated account listing for moderators and admins."""
    runtime = get_runtime()
    listing: Dict[str, Any] = unwrap(
        await runtime.auth.list_accounts(
            identity, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
        )
    )
    listing["accounts"] = [AccountResponse.model_validate(a) for a in listing["accounts"]]
    return Envelope(status="ok", data=listing)


@router.patch("/admin/update-status/{account_id}", response_model=Envelope, tags=["admin"])
async def update_account_status(
    body: UpdateStatusRequest,
    account_id: str = Path(..., max_length=128),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    account = unwrap(
        await runtime.auth.update_status(
            identity,
            account_id,
            is_active=body.is_active,
            is_email_verified=body.is_email_verified,
            role=body.role,
        )
    )
    return Envelope(status="ok", data=AccountResponse.model_validate(account))


@router.post("/admin/bulk-operations", response_model=Envelope, tags=["admin"])
async def bulk_operations(
    body: BulkOperationRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    data = body.data.changes() if body.data is not None else None
    outcome = unwrap(
        await runtime.auth.bulk_operation(identity, body.operation, body.account_ids, data)
    )
    return Envelope(status="ok", data=outcome)


@router.get("/admin/activity/{account_id}", response_model=Envelope, tags=["admin"])
async def account_activity(
    account_id: str = Path(..., max_length=128),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    activity = unwrap(await runtime.auth.account_activity(identity, account_id))
    return Envelope(status="ok", data=ActivityResponse.model_validate(activity))
