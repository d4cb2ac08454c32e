from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ContextManager, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidOrExpiredSession
from sessionguard.service.tokens import AccessTokenCodec, IssuedToken
from sessionguard.storage.models import RefreshSession, RequestContext, User

logger = get_logger(__name__)

# 48 random bytes, hex encoded: 384 bits of entropy per refresh secret
_SECRET_BYTES = 48


def generate_refresh_secret() -> str:
    return secrets.token_hex(_SECRET_BYTES)


def hash_refresh_secret(secret: str) -> str:
    """Only this digest is ever persisted; the secret itself lives in the cookie."""
    return hashlib.sha256(secret.encode()).hexdigest()


class RefreshSessionStore(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_refresh_session(self, record: RefreshSession) -> RefreshSession: ...

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def find_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]: ...

    def find_usable_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]: ...

    def retire_refresh_session(
        self, session_id: str, replaced_by: str, ip: Optional[str], now: datetime
    ) -> Optional[RefreshSession]: ...

    def revoke_refresh_session(
        self, session_id: str, ip: Optional[str], now: datetime
    ) -> bool: ...

    def revoke_user_refresh_sessions(
        self, user_id: str, ip: Optional[str], now: datetime
    ) -> int: ...

    def purge_expired_refresh_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class IssuedRefresh:
    secret: str
    session: RefreshSession


@dataclass(frozen=True)
class RotationResult:
    secret: str
    session: RefreshSession
    user: User
    access: IssuedToken


class RefreshSessionManager:
    """Issues, rotates and revokes refresh sessions.

    Rotation retires the presented session with a conditional update and
    creates its successor inside one store transaction, so of two requests
    racing on the same secret exactly one gets a successor.
    """

    def __init__(
        self, store: RefreshSessionStore, codec: AccessTokenCodec, settings: Settings
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl_days = settings.refresh_token_ttl_days
        self.reuse_detection = settings.refresh_reuse_detection
        self.reuse_grace = timedelta(seconds=settings.refresh_reuse_grace_seconds)

    def _new_record(
        self, user_id: str, ctx: RequestContext, *, last_used_at: Optional[datetime] = None
    ) -> IssuedRefresh:
        secret = generate_refresh_secret()
        record = RefreshSession.new(
            user_id,
            hash_refresh_secret(secret),
            now=ctx.now,
            ttl_days=self.ttl_days,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            session_id=str(uuid.uuid4()),
            last_used_at=last_used_at,
        )
        return IssuedRefresh(secret=secret, session=record)

    def issue(self, user: User, ctx: RequestContext) -> IssuedRefresh:
        issued = self._new_record(user.id, ctx)
        session = self.store.create_refresh_session(issued.session)
        return IssuedRefresh(secret=issued.secret, session=session)

    def rotate(self, presented_secret: Optional[str], ctx: RequestContext) -> RotationResult:
        if not presented_secret:
            raise InvalidOrExpiredSession()
        token_hash = hash_refresh_secret(presented_secret)
        current = self.store.find_usable_refresh_session(token_hash, ctx.now)
        if current is None:
            if self.reuse_detection:
                self._revoke_descendants_on_reuse(token_hash, ctx)
            raise InvalidOrExpiredSession()

        user = self.store.get_user(current.user_id)
        if user is None:
            raise InvalidOrExpiredSession()

        successor = self._new_record(user.id, ctx, last_used_at=ctx.now)
        with self.store.transaction():
            retired = self.store.retire_refresh_session(
                current.id, successor.session.id, ctx.ip, ctx.now
            )
            if retired is None:
                logger.info("refresh_rotation_lost_race", session_id=current.id)
                raise InvalidOrExpiredSession()
            session = self.store.create_refresh_session(successor.session)

        access = self.codec.issue(user.id, user.role, ctx.now)
        logger.info(
            "refresh_rotated",
            user_id=user.id,
            previous_session_id=current.id,
            session_id=session.id,
        )
        return RotationResult(
            secret=successor.secret, session=session, user=user, access=access
        )

    def _revoke_descendants_on_reuse(self, token_hash: str, ctx: RequestContext) -> int:
        """A rotated-away secret came back: revoke everything issued from it.

        Submissions inside the grace period are treated as a client retry
        racing its own rotation rather than as theft.
        """
        record = self.store.find_refresh_session_by_hash(token_hash)
        if record is None or record.replaced_by is None or record.revoked_at is None:
            return 0
        if ctx.now - record.revoked_at <= self.reuse_grace:
            return 0

        revoked = 0
        seen = {record.id}
        next_id: Optional[str] = record.replaced_by
        while next_id and next_id not in seen:
            seen.add(next_id)
            descendant = self.store.get_refresh_session(next_id)
            if descendant is None:
                break
            if self.store.revoke_refresh_session(descendant.id, ctx.ip, ctx.now):
                revoked += 1
            next_id = descendant.replaced_by
        logger.warning(
            "refresh_reuse_detected",
            user_id=record.user_id,
            session_id=record.id,
            revoked_descendants=revoked,
            ip=ctx.ip,
        )
        return revoked

    def revoke(self, presented_secret: Optional[str], ctx: RequestContext) -> bool:
        if not presented_secret:
            return False
        record = self.store.find_usable_refresh_session(
            hash_refresh_secret(presented_secret), ctx.now
        )
        if record is None:
            return False
        return self.store.revoke_refresh_session(record.id, ctx.ip, ctx.now)

    def revoke_all(self, user_id: str, ctx: RequestContext) -> int:
        return self.store.revoke_user_refresh_sessions(user_id, ctx.ip, ctx.now)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.purge_expired_refresh_sessions(now)

