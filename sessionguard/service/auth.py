from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from typing import List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    ConflictError,
    InvalidCredentials,
    Unauthenticated,
    ValidationError,
)
from sessionguard.service.lockout import LockoutGuard
from sessionguard.service.passwords import PasswordVerifier
from sessionguard.service.rate_limit import RateLimitInfo, RateLimiter
from sessionguard.service.sessions import RefreshSessionManager, RefreshSessionStore
from sessionguard.service.tokens import AccessTokenCodec
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import RequestContext, User

logger = get_logger(__name__)


class AuthStore(RefreshSessionStore, Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_lockout_state(self, user: User) -> None: ...


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    token_expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    expires_in: int
    user: User
    refresh_secret: str
    refresh_expires_at: datetime
    token_type: str = "Bearer"
    rate_limit: Optional[RateLimitInfo] = None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Login, refresh, logout and logout-all composed from the auth primitives."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.passwords = PasswordVerifier(settings)
        self.codec = AccessTokenCodec(settings)
        self.lockout = LockoutGuard(store, settings)
        self.sessions = RefreshSessionManager(store, self.codec, settings)
        self.limiter = limiter or RateLimiter(settings)
        self.logger = logger

    @cached_property
    def _decoy_hash(self) -> str:
        # Unknown emails still pay for one verification so timing matches.
        return self.passwords.hash("decoy-password-never-matches")

    def _verify_decoy(self, password: str) -> bool:
        # Runs in a worker thread, so the first lazy hash stays off the loop.
        return self.passwords.verify(password, self._decoy_hash)

    async def login(self, email: Optional[str], password: Optional[str], ctx: RequestContext) -> LoginResult:
        ip_window = await self.limiter.check_login_ip(ctx.ip, ctx.now)

        missing: List[str] = []
        if not email or not email.strip():
            missing.append("email")
        if not password:
            missing.append("password")
        if missing:
            raise ValidationError(
                "email and password are required", detail={"missing": missing}
            )

        await self.limiter.check_login_identity(email, ctx.now)

        user = self.store.get_user_by_email(email)
        if user is None:
            await asyncio.to_thread(self._verify_decoy, password)
            self.logger.info("login_failed", reason="unknown_user", ip=ctx.ip)
            raise InvalidCredentials()

        self.lockout.ensure_unlocked(user, ctx.now)

        if not await asyncio.to_thread(self.passwords.verify, password, user.password_hash):
            self.lockout.register_failure(user, ctx.now)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                failed_count=user.failed_login_count,
                ip=ctx.ip,
            )
            raise InvalidCredentials()

        issued = self.sessions.issue(user, ctx)
        # Counter is only cleared once the session row exists.
        self.lockout.reset(user)
        access = self.codec.issue(user.id, user.role, ctx.now)
        self.logger.info(
            "login_succeeded", user_id=user.id, session_id=issued.session.id, ip=ctx.ip
        )
        return LoginResult(
            access_token=access.token,
            expires_in=access.expires_in,
            user=user,
            refresh_secret=issued.secret,
            refresh_expires_at=issued.session.expires_at,
            rate_limit=ip_window,
        )

    async def refresh(self, presented_secret: Optional[str], ctx: RequestContext) -> LoginResult:
        result = self.sessions.rotate(presented_secret, ctx)
        return LoginResult(
            access_token=result.access.token,
            expires_in=result.access.expires_in,
            user=result.user,
            refresh_secret=result.secret,
            refresh_expires_at=result.session.expires_at,
        )

    async def logout(self, presented_secret: Optional[str], ctx: RequestContext) -> bool:
        """Revoke the presented session if it is active. Never fails."""
        revoked = self.sessions.revoke(presented_secret, ctx)
        self.logger.info("logout", revoked=revoked, ip=ctx.ip)
        return revoked

    async def logout_all(self, user_id: str, ctx: RequestContext) -> int:
        revoked = self.sessions.revoke_all(user_id, ctx)
        self.logger.info("logout_all", user_id=user_id, revoked=revoked, ip=ctx.ip)
        return revoked

    async def authenticate(
        self, authorization: Optional[str], *, now: Optional[datetime] = None
    ) -> AuthContext:
        token = _extract_bearer(authorization)
        if not token:
            raise Unauthenticated("missing bearer token")
        claims = self.codec.verify(token, now)
        return AuthContext(
            user_id=claims.subject_id,
            role=claims.role,
            token_expires_at=claims.expires_at,
        )

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            user = self.store.create_user(
                email,
                password_hash,
                role=self.settings.default_role,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        return self.sessions.purge_expired(now)
