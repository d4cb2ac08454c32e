from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, DuplicateTokenHash
from sessionguard.storage.models import RefreshSession, User, normalize_email, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        email_normalized TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        first_name TEXT,
        last_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        last_failed_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        lock_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        revoked_by_ip TEXT,
        replaced_by UUID,
        created_by_ip TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_user_idx ON refresh_session (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_session_expires_idx ON refresh_session (expires_at)",
)

_SESSION_COLUMNS = (
    "id, user_id, token_hash, issued_at, expires_at, last_used_at, revoked_at, "
    "revoked_by_ip, replaced_by, created_by_ip, user_agent"
)


def _user_from_row(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        role=row.get("role") or "user",
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        created_at=row.get("created_at") or utcnow(),
        failed_login_count=row.get("failed_login_count") or 0,
        last_failed_at=row.get("last_failed_at"),
        locked_until=row.get("locked_until"),
        lock_count=row.get("lock_count") or 0,
    )


def _session_from_row(row: dict[str, Any]) -> RefreshSession:
    return RefreshSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        last_used_at=row.get("last_used_at"),
        revoked_at=row.get("revoked_at"),
        revoked_by_ip=row.get("revoked_by_ip"),
        replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
        created_by_ip=row.get("created_by_ip"),
        user_agent=row.get("user_agent"),
    )


class PostgresStore:
    """Postgres-backed user directory and refresh session store.

    Usability filtering (``revoked_at IS NULL AND expires_at > now``) happens in
    SQL so a stale row is never handed to the service layer.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        # Connection owned by the transaction running in this context, if any
        self._tx_conn: ContextVar[Optional[Any]] = ContextVar(
            f"sessionguard_pg_tx_{id(self)}", default=None
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed store calls on one connection inside one transaction."""
        active = self._tx_conn.get()
        if active is not None:
            with active.transaction():
                yield
            return
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield
            finally:
                self._tx_conn.reset(token)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip(),
            password_hash=password_hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, email_normalized, password_hash, role, first_name, last_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        normalize_email(user.email),
                        password_hash,
                        role,
                        first_name,
                        last_name,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email_normalized = %s",
                (normalize_email(email),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def save_lockout_state(self, user: User) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = %s, last_failed_at = %s, locked_until = %s, lock_count = %s
                WHERE id = %s
                """,
                (
                    user.failed_login_count,
                    user.last_failed_at,
                    user.locked_until,
                    user.lock_count,
                    user.id,
                ),
            )

    # -- refresh sessions -------------------------------------------------

    def create_refresh_session(self, record: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO refresh_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_hash,
                        record.issued_at,
                        record.expires_at,
                        record.last_used_at,
                        record.revoked_at,
                        record.revoked_by_ip,
                        record.replaced_by,
                        record.created_by_ip,
                        record.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateTokenHash()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": record.user_id})
        return record

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_usable_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM refresh_session
                WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def retire_refresh_session(
        self, session_id: str, replaced_by: str, ip: Optional[str], now: datetime
    ) -> Optional[RefreshSession]:
        """Conditionally revoke a usable session; ``None`` means another caller won."""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE refresh_session
                SET revoked_at = %s, revoked_by_ip = %s, replaced_by = %s
                WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (now, ip, replaced_by, session_id, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def revoke_refresh_session(
        self, session_id: str, ip: Optional[str], now: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET revoked_at = %s, revoked_by_ip = %s
                WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, ip, session_id, now),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_sessions(
        self, user_id: str, ip: Optional[str], now: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET revoked_at = %s, revoked_by_ip = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, ip, user_id, now),
            )
            return cur.rowcount

    def list_user_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM refresh_session
                WHERE user_id = %s ORDER BY issued_at
                """,
                (user_id,),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def purge_expired_refresh_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_session WHERE expires_at <= %s",
                (now or utcnow(),),
            )
            return cur.rowcount
