import asyncio
import contextlib
from contextvars import ContextVar
from datetime import datetime, timezone
from unittest import mock

import pytest
from psycopg import errors

from sessionguard.storage.errors import ConstraintViolation, DuplicateTokenHash
from sessionguard.storage.models import RefreshSession
from sessionguard.storage.postgres import PostgresStore, _session_from_row, _user_from_row
from sessionguard.storage.redis_cache import SyncRedisCache

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Cursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class _Connection:
    def __init__(self, results=None, raises=None):
        self.results = list(results or [])
        self.raises = raises
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else _Cursor()

    @contextlib.contextmanager
    def transaction(self):
        yield


class _Pool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    # Skip __init__ so no pool or schema setup touches a real database.
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = _Pool(conn)
    store.logger = mock.Mock()
    store._tx_conn = ContextVar("test_tx_conn", default=None)
    return store


def _session_row(**overrides):
    row = {
        "id": "00000000-0000-0000-0000-000000000001",
        "user_id": "00000000-0000-0000-0000-0000000000aa",
        "token_hash": "abc",
        "issued_at": NOW,
        "expires_at": NOW,
        "last_used_at": None,
        "revoked_at": None,
        "revoked_by_ip": None,
        "replaced_by": None,
        "created_by_ip": "10.0.0.1",
        "user_agent": "ua",
    }
    row.update(overrides)
    return row


def test_row_mappers_normalize_identifiers():
    session = _session_row(replaced_by="00000000-0000-0000-0000-000000000002")
    mapped = _session_from_row(session)
    assert mapped.replaced_by == "00000000-0000-0000-0000-000000000002"

    user = _user_from_row(
        {"id": "u1", "email": "a@example.com", "password_hash": "h", "role": None}
    )
    assert user.role == "user"
    assert user.failed_login_count == 0


def test_find_usable_filters_in_sql():
    conn = _Connection([_Cursor(_session_row())])
    record = _store(conn).find_usable_refresh_session("abc", NOW)

    assert record.token_hash == "abc"
    sql, params = conn.statements[0]
    assert "revoked_at IS NULL AND expires_at > %s" in sql
    assert params == ("abc", NOW)


def test_retire_uses_conditional_update():
    conn = _Connection([_Cursor(None)])
    assert _store(conn).retire_refresh_session("s1", "s2", "10.0.0.1", NOW) is None
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE refresh_session")
    assert "WHERE id = %s AND revoked_at IS NULL" in sql
    assert params == (NOW, "10.0.0.1", "s2", "s1", NOW)


def test_revoke_all_returns_rowcount():
    conn = _Connection([_Cursor(rowcount=4)])
    assert _store(conn).revoke_user_refresh_sessions("u1", None, NOW) == 4


def test_unique_violation_maps_to_duplicate_token_hash():
    conn = _Connection(raises=errors.UniqueViolation("dup"))
    record = RefreshSession.new("u1", "abc", now=NOW, ttl_days=30)
    with pytest.raises(DuplicateTokenHash):
        _store(conn).create_refresh_session(record)


def test_duplicate_email_maps_to_constraint_violation():
    conn = _Connection(raises=errors.UniqueViolation("dup"))
    with pytest.raises(ConstraintViolation) as exc:
        _store(conn).create_user("a@example.com", "hash")
    assert exc.value.field == "email"


def test_transaction_shares_one_connection():
    conn = _Connection([_Cursor(_session_row()), _Cursor(rowcount=1)])
    store = _store(conn)
    with store.transaction():
        assert store._tx_conn.get() is conn
        store.get_refresh_session("s1")
        store.revoke_refresh_session("s1", None, NOW)
    assert store._tx_conn.get() is None
    assert len(conn.statements) == 2


def test_sync_redis_cache_counts_through_script():
    with mock.patch("sessionguard.storage.redis_cache.Redis") as redis_cls:
        script = mock.Mock(side_effect=[[1, 900_000], [4, 30_500]])
        redis_cls.from_url.return_value.register_script.return_value = script
        cache = SyncRedisCache("redis://localhost:6379/9")

        first = asyncio.run(cache.check_rate_limit("login:ip:1.2.3.4", 3, 900))
        fourth = asyncio.run(cache.check_rate_limit("login:ip:1.2.3.4", 3, 900))

    assert first == (True, 2, 900)
    assert fourth == (False, 0, 31)
    keys = script.call_args.kwargs["keys"]
    assert keys[0].startswith("rate:") and "1.2.3.4" not in keys[0]
    assert script.call_args.kwargs["args"] == [900_000]
