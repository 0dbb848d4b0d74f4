from __future__ import annotations

from typing import Any, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Cookie,
    Depends,
    Header,
    Path,
    Request,
    Response,
)

from classifieds.api.cookies import (
    COOKIE_ACCESS,
    COOKIE_REAUTH,
    COOKIE_REFRESH,
    clear_auth_cookies,
    clear_reauth_cookie,
    set_auth_cookies,
    set_reauth_cookie,
)
from classifieds.api.error_handling import service_error_response
from classifieds.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    ModerationRequest,
    ModerationResponse,
    OkResponse,
    ReauthRequest,
    ReauthResponse,
    RegisterRequest,
    ResetPasswordRequest,
    RevokeSessionsResponse,
    SetAdminRequest,
)
from classifieds.config import Settings
from classifieds.logging import get_correlation_id, get_logger
from classifieds.service.auth import AuthContext
from classifieds.service.errors import (
    AuthenticationError,
    AuthorizationError,
    RateLimitedError,
)
from classifieds.service.runtime import check_rate_limit, get_runtime
from classifieds.storage.models import ModerationState, ModerationStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _ok(data: Any) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True)
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client_ip(request: Request, settings: Settings) -> Optional[str]:
    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for and forwarded_for.split(",")[0].strip():
            return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once the bucket for ``key`` is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None and limit > 0:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        logger.info("rate_limited", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many requests, try again later",
            detail={"retryAfter": reset_seconds},
        )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    access_cookie: Optional[str] = Cookie(None, alias=COOKIE_ACCESS),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate_access(access_cookie or _bearer_token(authorization))


async def get_admin_user(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
    if not principal.is_admin:
        raise AuthorizationError("Admin privileges required")
    return principal


async def get_superadmin_user(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
    if not principal.is_superadmin:
        raise AuthorizationError(
            "Superadmin privileges required", error_code="SUPERADMIN_REQUIRED"
        )
    return principal


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account. Does not log in; the client follows with /auth/login."""
    runtime = get_runtime()
    user = await runtime.auth.register(
        email=body.email,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
        password=body.password,
    )
    return _ok({"user": user.public_view()})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify credentials, open a session and set the access and refresh cookies.

    Raises:
        401: INVALID_CREDENTIALS for an unknown email or wrong password
        403: ACCOUNT_BANNED / ACCOUNT_SUSPENDED
        429: too many attempts for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip=_client_ip(request, runtime.settings),
        user_agent=request.headers.get("user-agent"),
    )
    set_auth_cookies(
        response,
        runtime.settings,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )
    return _ok({"user": result.user.public_view()})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=COOKIE_REFRESH),
):
    """Rotate the refresh token. Every failure also clears the auth cookies."""
    runtime = get_runtime()
    try:
        result = await runtime.auth.refresh(refresh_cookie)
    except AuthenticationError as exc:
        failure = service_error_response(exc)
        clear_auth_cookies(failure, runtime.settings)
        return failure
    set_auth_cookies(
        response,
        runtime.settings,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )
    return _ok({"user": result.user.public_view()})


@router.post("/auth/reauth", response_model=Envelope, tags=["auth"])
async def reauth(
    body: ReauthRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reauth:{principal.user_id}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    grant = await runtime.auth.reauth(principal, body.password)
    set_reauth_cookie(response, runtime.settings, grant.token, grant.expires_in_sec)
    return _ok(ReauthResponse(expires_in_sec=grant.expires_in_sec))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=COOKIE_REFRESH),
):
    runtime = get_runtime()
    await runtime.auth.logout(refresh_cookie)
    clear_auth_cookies(response, runtime.settings)
    return _ok(OkResponse())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, request: Request, background_tasks: BackgroundTasks
):
    """Always answers ``{ok: true}``; whether a link is sent is not observable."""
    runtime = get_runtime()
    issue = await runtime.auth.request_password_reset(
        body.email,
        ip=_client_ip(request, runtime.settings),
        user_agent=request.headers.get("user-agent"),
    )
    if issue is not None:
        background_tasks.add_task(runtime.email.send_password_reset, issue.email, issue.raw_token)
    return _ok(OkResponse())


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset_confirm:{_client_ip(request, runtime.settings) or 'unknown'}",
        runtime.settings.reset_confirm_rate_limit_per_minute,
        60,
    )
    await runtime.auth.confirm_password_reset(body.email, body.token, body.new_password)
    clear_auth_cookies(response, runtime.settings)
    return _ok(OkResponse())


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_user)):
    return _ok({"user": principal.user.public_view()})


# -- admin ------------------------------------------------------------------


def _moderation_view(status: ModerationStatus) -> ModerationResponse:
    return ModerationResponse(
        user_id=status.user_id,
        status=status.status.value,
        reason=status.reason,
        suspended_until=status.suspended_until,
    )


@router.get("/admin/users/{user_id}/moderation", response_model=Envelope, tags=["admin"])
async def admin_get_moderation(
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    return _ok(_moderation_view(runtime.auth.get_moderation(user_id)))


@router.post("/admin/users/{user_id}/moderation", response_model=Envelope, tags=["admin"])
async def admin_set_moderation(
    body: ModerationRequest,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    """Suspend, ban or reinstate a user. Suspending or banning ends their sessions."""
    runtime = get_runtime()
    record = await runtime.auth.set_moderation(
        principal,
        user_id,
        ModerationState(body.status),
        reason=body.reason,
        suspended_until=body.suspended_until,
    )
    return _ok(_moderation_view(record))


@router.post("/admin/users/{user_id}/revoke-sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_user_sessions(principal, user_id)
    return _ok(RevokeSessionsResponse(revoked=revoked))


@router.post("/admin/users/{user_id}/set-admin", response_model=Envelope, tags=["admin"])
async def admin_set_admin(
    body: SetAdminRequest,
    response: Response,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_superadmin_user),
    reauth_cookie: Optional[str] = Cookie(None, alias=COOKIE_REAUTH),
):
    """Grant or remove admin rights. Needs a fresh step-up token, consumed on success."""
    runtime = get_runtime()
    runtime.auth.verify_reauth(principal, reauth_cookie)
    updated = await runtime.auth.set_admin(principal, user_id, body.is_admin)
    clear_reauth_cookie(response, runtime.settings)
    return _ok({"user": updated.public_view()})
