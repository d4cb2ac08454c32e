from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import AccountLocked
from sessionguard.storage.models import User

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def save_lockout_state(self, user: User) -> None: ...


class LockoutGuard:
    """Per-account failure counter with an escalating, time-boxed lock.

    Failures only count while they fall inside the configured window. Reaching
    the threshold locks the account for ``base * multiplier ** (locks - 1)``
    minutes, capped at the configured maximum, and starts the count over.
    Updates are last-write-wins; concurrent failures may under-count by one.
    """

    def __init__(self, store: LockoutStore, settings: Settings) -> None:
        self.store = store
        self.max_attempts = settings.lockout_max_attempts
        self.window = timedelta(minutes=settings.lockout_window_minutes)
        self.base_duration_minutes = settings.lockout_duration_minutes
        self.multiplier = settings.lockout_backoff_multiplier
        self.max_duration_minutes = settings.lockout_max_duration_minutes

    def lock_duration(self, lock_count: int) -> timedelta:
        minutes = self.base_duration_minutes * self.multiplier ** max(0, lock_count - 1)
        return timedelta(minutes=min(minutes, self.max_duration_minutes))

    def ensure_unlocked(self, user: User, now: datetime) -> None:
        if user.locked_until is not None and user.locked_until > now:
            raise AccountLocked((user.locked_until - now).total_seconds())

    def register_failure(self, user: User, now: datetime) -> None:
        """Record a failed password check; raises ``AccountLocked`` on the last allowed one."""
        within_window = (
            user.last_failed_at is not None and now - user.last_failed_at <= self.window
        )
        user.failed_login_count = user.failed_login_count + 1 if within_window else 1
        user.last_failed_at = now

        if user.failed_login_count < self.max_attempts:
            self.store.save_lockout_state(user)
            return

        user.lock_count += 1
        duration = self.lock_duration(user.lock_count)
        user.locked_until = now + duration
        user.failed_login_count = 0
        self.store.save_lockout_state(user)
        logger.warning(
            "account_locked",
            user_id=user.id,
            lock_count=user.lock_count,
            duration_minutes=int(duration.total_seconds() // 60),
        )
        raise AccountLocked(duration.total_seconds())

    def reset(self, user: User) -> None:
        # lock_count survives so repeat offenders keep escalating
        if not (user.failed_login_count or user.locked_until or user.last_failed_at):
            return
        user.failed_login_count = 0
        user.last_failed_at = None
        user.locked_until = None
        self.store.save_lockout_state(user)
