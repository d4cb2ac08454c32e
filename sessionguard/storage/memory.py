from __future__ import annotations

import contextlib
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, DuplicateTokenHash
from sessionguard.storage.models import RefreshSession, User, normalize_email, utcnow


class MemoryStore:
    """Dict-backed user directory and refresh session store.

    Used for tests and local development. Every read hands out a copy so
    callers cannot mutate stored records behind the store's back, which keeps
    the semantics close to the Postgres store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self._hash_index: Dict[str, str] = {}
        # RLock so store methods can be called inside ``transaction()``
        self._data_lock = threading.RLock()

    # -- transactions -----------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes; on error every record goes back to its prior state."""
        with self._data_lock:
            users = {uid: replace(u) for uid, u in self.users.items()}
            sessions = {sid: replace(s) for sid, s in self.refresh_sessions.items()}
            hash_index = dict(self._hash_index)
            try:
                yield
            except BaseException:
                self.users = users
                self.refresh_sessions = sessions
                self._hash_index = hash_index
                raise

    def verify_connection(self) -> None:
        return None

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        email = email.strip()
        key = normalize_email(email)
        with self._data_lock:
            if any(normalize_email(u.email) == key for u in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                role=role,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        key = normalize_email(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if normalize_email(u.email) == key),
                None,
            )
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return replace(user)

    def save_lockout_state(self, user: User) -> None:
        with self._data_lock:
            stored = self.users.get(user.id)
            if not stored:
                return
            stored.failed_login_count = user.failed_login_count
            stored.last_failed_at = user.last_failed_at
            stored.locked_until = user.locked_until
            stored.lock_count = user.lock_count

    # -- refresh sessions -------------------------------------------------

    def create_refresh_session(self, record: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": record.user_id}
                )
            if record.token_hash in self._hash_index:
                raise DuplicateTokenHash()
            stored = replace(record)
            self.refresh_sessions[stored.id] = stored
            self._hash_index[stored.token_hash] = stored.id
            return replace(stored)

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            record = self.refresh_sessions.get(session_id)
            return replace(record) if record else None

    def find_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session_id = self._hash_index.get(token_hash)
            if session_id is None:
                return None
            return self.get_refresh_session(session_id)

    def find_usable_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]:
        with self._data_lock:
            session_id = self._hash_index.get(token_hash)
            record = self.refresh_sessions.get(session_id) if session_id else None
            if record is None or not record.is_usable(now):
                return None
            return replace(record)

    def retire_refresh_session(
        self, session_id: str, replaced_by: str, ip: Optional[str], now: datetime
    ) -> Optional[RefreshSession]:
        """Revoke ``session_id`` only if it is still usable; return the old row."""
        with self._data_lock:
            record = self.refresh_sessions.get(session_id)
            if record is None or not record.is_usable(now):
                return None
            previous = replace(record)
            record.revoked_at = now
            record.revoked_by_ip = ip
            record.replaced_by = replaced_by
            return previous

    def revoke_refresh_session(
        self, session_id: str, ip: Optional[str], now: datetime
    ) -> bool:
        with self._data_lock:
            record = self.refresh_sessions.get(session_id)
            if record is None or not record.is_usable(now):
                return False
            record.revoked_at = now
            record.revoked_by_ip = ip
            return True

    def revoke_user_refresh_sessions(
        self, user_id: str, ip: Optional[str], now: datetime
    ) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_sessions.values():
                if record.user_id == user_id and record.is_usable(now):
                    record.revoked_at = now
                    record.revoked_by_ip = ip
                    revoked += 1
            return revoked

    def list_user_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._data_lock:
            return sorted(
                (replace(s) for s in self.refresh_sessions.values() if s.user_id == user_id),
                key=lambda s: s.issued_at,
            )

    def purge_expired_refresh_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                sid for sid, rec in self.refresh_sessions.items() if rec.expires_at <= now
            ]
            for sid in stale:
                record = self.refresh_sessions.pop(sid)
                self._hash_index.pop(record.token_hash, None)
            return len(stale)
