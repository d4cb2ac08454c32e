from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response

from sessionguard.api.cookies import (
    clear_refresh_cookie,
    read_refresh_cookie,
    set_refresh_cookie,
)
from sessionguard.api.error_handling import service_error_response
from sessionguard.api.schemas import (
    LoginRequest,
    LogoutResponse,
    RegisterRequest,
    TokenResponse,
    UserEnvelope,
    UserResponse,
)
from sessionguard.config import Settings
from sessionguard.logging import get_logger, redact_email
from sessionguard.service.auth import AuthContext, LoginResult
from sessionguard.service.email import EmailService
from sessionguard.service.errors import (
    ForbiddenError,
    ServerError,
    ServiceError,
    Unauthenticated,
)
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.models import RequestContext, User

logger = get_logger(__name__)

router = APIRouter()


def client_context(request: Request, settings: Settings) -> RequestContext:
    """Resolve the caller's IP and user agent for this request.

    ``X-Forwarded-For`` is only honoured behind a trusted proxy; otherwise
    any client could pick the IP its rate limit window is counted under.
    """
    ip: Optional[str] = None
    if settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip() or None
    if not ip and request.client:
        ip = request.client.host
    return RequestContext.build(ip=ip, user_agent=request.headers.get("user-agent"))


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id, email=user.email, role=user.role, name=user.display_name
    )


def _token_response(result: LoginResult) -> TokenResponse:
    return TokenResponse(
        token_type=result.token_type,
        access_token=result.access_token,
        expires_in=result.expires_in,
        user=_user_response(result.user),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def _send_welcome_email(email_service: EmailService, to_email: str, name: Optional[str]) -> None:
    try:
        email_service.send_welcome(to_email, name)
    except Exception as exc:
        # Registration has already succeeded; delivery problems are only logged.
        logger.warning(
            "welcome_email_failed", to=redact_email(to_email), error=str(exc)
        )


@router.post(
    "/auth/login",
    response_model=TokenResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def login(request: Request, response: Response, body: Optional[LoginRequest] = None):
    """Exchange email and password for an access token and a refresh cookie.

    Raises:
        400: If email or password is missing
        401: If credentials are invalid
        423: If the account is locked
        429: If the per-IP or per-identity window is exhausted
    """
    runtime = get_runtime()
    body = body or LoginRequest()
    ctx = client_context(request, runtime.settings)
    result = await runtime.auth.login(body.email, body.password, ctx)
    set_refresh_cookie(response, runtime.settings, result.refresh_secret)
    if result.rate_limit is not None:
        result.rate_limit.apply_headers(response)
    return _token_response(result)


@router.post(
    "/auth/refresh",
    response_model=TokenResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    ctx = client_context(request, runtime.settings)
    presented = read_refresh_cookie(request, runtime.settings)
    try:
        result = await runtime.auth.refresh(presented, ctx)
    except ServiceError as exc:
        return service_error_response(exc, clear_cookie=True)
    except Exception as exc:
        # A failed rotation never leaves the old cookie behind.
        logger.exception("refresh_failed", error_type=type(exc).__name__)
        return service_error_response(ServerError("internal server error"), clear_cookie=True)
    set_refresh_cookie(response, runtime.settings, result.refresh_secret)
    return _token_response(result)


@router.post(
    "/auth/logout",
    response_model=LogoutResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    ctx = client_context(request, runtime.settings)
    await runtime.auth.logout(read_refresh_cookie(request, runtime.settings), ctx)
    clear_refresh_cookie(response, runtime.settings)
    return LogoutResponse(ok=True)


@router.post("/auth/logout-all", response_model=LogoutResponse, tags=["auth"])
async def logout_all(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Revoke every active refresh session belonging to the caller."""
    runtime = get_runtime()
    ctx = client_context(request, runtime.settings)
    revoked = await runtime.auth.logout_all(principal.user_id, ctx)
    clear_refresh_cookie(response, runtime.settings)
    return LogoutResponse(ok=True, revoked=revoked)


@router.post(
    "/auth/register",
    response_model=UserEnvelope,
    response_model_exclude_none=True,
    status_code=201,
    tags=["auth"],
)
async def register(body: RegisterRequest, background_tasks: BackgroundTasks):
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup is disabled")
    user = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    background_tasks.add_task(
        _send_welcome_email, runtime.email, user.email, user.display_name
    )
    return UserEnvelope(user=_user_response(user))


@router.get(
    "/auth/me",
    response_model=UserEnvelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise Unauthenticated("user no longer exists")
    return UserEnvelope(user=_user_response(user))
