from __future__ import annotations

import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Collation key for email addresses: case and diacritics are ignored.

    ``Émile@Example.com`` and ``emile@example.com`` address the same account.
    """

    decomposed = unicodedata.normalize("NFKD", email.strip().casefold())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    # Lockout guard state
    failed_login_count: int = 0
    last_failed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    lock_count: int = 0

    @property
    def display_name(self) -> Optional[str]:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or None


@dataclass
class RefreshSession:
    id: str
    user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    replaced_by: Optional[str] = None
    created_by_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        now: datetime,
        ttl_days: int,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        last_used_at: Optional[datetime] = None,
    ) -> "RefreshSession":
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            issued_at=now,
            expires_at=now + timedelta(days=ttl_days),
            last_used_at=last_used_at,
            created_by_ip=ip,
            user_agent=user_agent,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass(frozen=True)
class RequestContext:
    """Per-request provenance handed to every session operation."""

    ip: str
    user_agent: str
    now: datetime

    @classmethod
    def build(
        cls,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RequestContext":
        return cls(
            ip=ip or "0.0.0.0",
            user_agent=user_agent or "unknown",
            now=now or utcnow(),
        )
