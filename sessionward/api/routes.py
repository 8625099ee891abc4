from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response

from sessionward.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RateLimitClearResponse,
    RateWindowListResponse,
    RateWindowResponse,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResendOtpRequest,
    SuccessResponse,
    UpdateUserRoleRequest,
    UserResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
)
from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import ForbiddenError, NotAvailable, RateLimited
from sessionward.service.rate_limit import RateDecision
from sessionward.service.runtime import (
    Runtime,
    check_rate_limit,
    get_runtime,
    run_with_deadline,
)
from sessionward.service.tokens import AccessClaims
from sessionward.storage.models import Role, UserAccount

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def _apply_rate_headers(response: Response, decision: RateDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_at_ms // 1000)


async def _enforce_rate_limit(
    runtime: Runtime,
    route: str,
    identifier: str,
    limit: int,
    *,
    response: Optional[Response] = None,
) -> RateDecision:
    """Admit one request or raise ``RateLimited`` with the retry hint."""
    decision = await check_rate_limit(runtime, route, identifier, limit)
    if response is not None:
        _apply_rate_headers(response, decision)
    if not decision.allowed:
        raise RateLimited(decision.retry_after_ms)
    return decision


def _user_response(user: UserAccount) -> UserResponse:
    return UserResponse(**user.public())


def _apply_session_cookies(
    response: Response,
    settings: Settings,
    *,
    access_token: str,
    refresh_token: Optional[str],
) -> None:
    # No domain attribute: both cookies stay host-only
    response.set_cookie(
        settings.access_cookie_name,
        access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    if refresh_token:
        response.set_cookie(
            settings.refresh_cookie_name,
            refresh_token,
            max_age=settings.refresh_token_ttl_minutes * 60,
            path=settings.refresh_cookie_path,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.access_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_claims(
    request: Request, authorization: Optional[str] = Header(None)
) -> AccessClaims:
    runtime = get_runtime()
    token = _extract_bearer(authorization) or request.cookies.get(
        runtime.settings.access_cookie_name
    )
    return runtime.sessions.authenticate(token)


async def get_admin_claims(claims: AccessClaims = Depends(get_claims)) -> AccessClaims:
    if claims.role != Role.ADMIN.value:
        raise ForbiddenError("admin access required")
    # Token role may be stale after a demotion
    if get_runtime().sessions.current_user(claims).role != Role.ADMIN:
        raise ForbiddenError("admin access required")
    return claims


def _require_diagnostics_enabled() -> None:
    if not get_runtime().settings.diagnostics_enabled:
        raise NotAvailable()


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
):
    """Create an account and email a verification code.

    The first account ever created becomes an administrator.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "register",
        _client_ip(request),
        runtime.settings.register_rate_limit,
        response=response,
    )
    result = await run_with_deadline(
        runtime,
        runtime.sessions.register(body.name, body.email, body.password),
        operation="register",
    )
    background_tasks.add_task(runtime.sessions.flush_emails)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=_user_response(result.user),
            requires_verification=result.requires_verification,
            message="Account created. Check your email for a verification code.",
        ),
    )


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "verify-otp",
        body.email,
        runtime.settings.verify_otp_rate_limit,
        response=response,
    )
    result = await run_with_deadline(
        runtime, runtime.sessions.verify_otp(body.email, body.code), operation="verify_otp"
    )
    return Envelope(
        status="ok",
        data=VerifyOtpResponse(verified=result.verified),
    )


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(
    body: ResendOtpRequest, response: Response, background_tasks: BackgroundTasks
):
    """Send a fresh code; the answer is the same whether or not the account exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "resend-otp",
        body.email,
        runtime.settings.resend_otp_rate_limit,
        response=response,
    )
    result = await run_with_deadline(
        runtime, runtime.sessions.resend_otp(body.email), operation="resend_otp"
    )
    background_tasks.add_task(runtime.sessions.flush_emails)
    return Envelope(status="ok", data=SuccessResponse(success=result.success))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    The refresh token is only ever delivered as an HttpOnly cookie scoped
    to the refresh endpoint; it never appears in the JSON body.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "login",
        body.email,
        runtime.settings.login_rate_limit,
        response=response,
    )
    result = await run_with_deadline(
        runtime, runtime.sessions.login(body.email, body.password), operation="login"
    )
    _apply_session_cookies(
        response,
        runtime.settings,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            expires_at=result.access_expires_at,
            user=_user_response(result.user),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "refresh",
        _client_ip(request),
        runtime.settings.refresh_rate_limit,
        response=response,
    )
    token = request.cookies.get(runtime.settings.refresh_cookie_name)
    result = await run_with_deadline(
        runtime, runtime.sessions.refresh(token), operation="refresh"
    )
    _apply_session_cookies(
        response,
        runtime.settings,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token, expires_at=result.access_expires_at
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    runtime = get_runtime()
    result = await run_with_deadline(runtime, runtime.sessions.logout(), operation="logout")
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=SuccessResponse(success=result.success))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, claims: AccessClaims = Depends(get_claims)):
    """Revoke every refresh token issued to the caller."""
    runtime = get_runtime()
    result = await run_with_deadline(
        runtime, runtime.sessions.logout_everywhere(claims.sub), operation="logout_all"
    )
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=SuccessResponse(success=result.success))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest, background_tasks: BackgroundTasks
):
    # Rate-limit headers are left off so both outcomes produce identical responses
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "password-reset", body.email, runtime.settings.password_reset_rate_limit
    )
    result = await run_with_deadline(
        runtime,
        runtime.sessions.request_password_reset(body.email),
        operation="password_reset_request",
    )
    # Added for both outcomes so the responses stay identical
    background_tasks.add_task(runtime.sessions.flush_emails)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    result = await run_with_deadline(
        runtime,
        runtime.sessions.complete_password_reset(body.token, body.new_password),
        operation="password_reset_confirm",
    )
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=SuccessResponse(success=result.success))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_claims)):
    runtime = get_runtime()
    user = runtime.sessions.current_user(claims)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    claims: AccessClaims = Depends(get_admin_claims),
):
    runtime = get_runtime()
    user = await run_with_deadline(
        runtime,
        runtime.sessions.set_user_role(claims, user_id, Role(body.role)),
        operation="set_user_role",
    )
    return Envelope(status="ok", data=_user_response(user))


@router.get(
    "/admin/rate-limits",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(_require_diagnostics_enabled)],
)
async def list_rate_limits(claims: AccessClaims = Depends(get_admin_claims)):
    runtime = get_runtime()
    windows = await run_with_deadline(
        runtime, runtime.rate_limiter.snapshot(), operation="rate_limit_snapshot"
    )
    return Envelope(
        status="ok",
        data=RateWindowListResponse(
            items=[
                RateWindowResponse(
                    identifier=window.identifier,
                    count=window.count,
                    reset_at=window.reset_at,
                    expired=window.expired,
                )
                for window in windows
            ]
        ),
    )


@router.delete(
    "/admin/rate-limits",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(_require_diagnostics_enabled)],
)
async def clear_rate_limits(claims: AccessClaims = Depends(get_admin_claims)):
    runtime = get_runtime()
    cleared = await run_with_deadline(
        runtime, runtime.rate_limiter.clear(), operation="rate_limit_clear"
    )
    logger.info("rate_limits_cleared_by_admin", actor_id=claims.sub, cleared=cleared)
    return Envelope(status="ok", data=RateLimitClearResponse(cleared=cleared))
