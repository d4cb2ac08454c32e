from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.storage.errors import ConstraintViolation, DuplicateTokenHash
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import RefreshSession, normalize_email

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("Alice@Example.com", "hash", first_name="Alice")


def _session(user_id, token_hash="h1", now=NOW, ttl_days=30):
    return RefreshSession.new(user_id, token_hash, now=now, ttl_days=ttl_days, ip="10.0.0.1")


def test_normalize_email_folds_case_and_diacritics():
    assert normalize_email("  Émile@Example.COM ") == "emile@example.com"
    assert normalize_email("STRASSE@example.com") == normalize_email("strasse@example.com")


def test_email_lookup_is_case_and_accent_insensitive(store):
    created = store.create_user("Émile@Example.com", "hash")
    found = store.get_user_by_email("emile@example.com")
    assert found is not None
    assert found.id == created.id
    assert found.email == "Émile@Example.com"


def test_duplicate_email_rejected(store, user):
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("alice@example.com", "other")
    assert exc.value.detail == {"field": "email"}


def test_reads_return_copies(store, user):
    fetched = store.get_user(user.id)
    fetched.failed_login_count = 99
    assert store.get_user(user.id).failed_login_count == 0


def test_save_lockout_state_persists_counters(store, user):
    user.failed_login_count = 3
    user.last_failed_at = NOW
    user.locked_until = NOW + timedelta(minutes=15)
    user.lock_count = 1
    store.save_lockout_state(user)

    stored = store.get_user(user.id)
    assert stored.failed_login_count == 3
    assert stored.locked_until == NOW + timedelta(minutes=15)
    assert stored.lock_count == 1


def test_refresh_session_requires_existing_user(store):
    with pytest.raises(ConstraintViolation):
        store.create_refresh_session(_session("missing-user"))


def test_duplicate_token_hash_rejected(store, user):
    store.create_refresh_session(_session(user.id, "dup"))
    with pytest.raises(DuplicateTokenHash):
        store.create_refresh_session(_session(user.id, "dup"))


def test_find_usable_excludes_revoked_and_expired(store, user):
    record = store.create_refresh_session(_session(user.id, "h1", ttl_days=1))

    assert store.find_usable_refresh_session("h1", NOW).id == record.id
    assert store.find_usable_refresh_session("h1", NOW + timedelta(days=1)) is None

    assert store.revoke_refresh_session(record.id, "10.0.0.2", NOW)
    assert store.find_usable_refresh_session("h1", NOW) is None
    assert store.find_refresh_session_by_hash("h1").revoked_by_ip == "10.0.0.2"


def test_retire_is_conditional(store, user):
    record = store.create_refresh_session(_session(user.id))

    first = store.retire_refresh_session(record.id, "successor", "10.0.0.3", NOW)
    second = store.retire_refresh_session(record.id, "other", "10.0.0.4", NOW)

    assert first is not None and first.revoked_at is None
    assert second is None
    retired = store.get_refresh_session(record.id)
    assert retired.replaced_by == "successor"
    assert retired.revoked_at == NOW


def test_transaction_rolls_back_on_error(store, user):
    record = store.create_refresh_session(_session(user.id, "h1"))
    with pytest.raises(DuplicateTokenHash):
        with store.transaction():
            store.retire_refresh_session(record.id, "next", None, NOW)
            store.create_refresh_session(_session(user.id, "h1"))

    assert store.get_refresh_session(record.id).revoked_at is None


def test_revoke_user_sessions_counts_only_active(store, user):
    other = store.create_user("bob@example.com", "hash")
    a = store.create_refresh_session(_session(user.id, "a"))
    store.create_refresh_session(_session(user.id, "b"))
    store.create_refresh_session(_session(other.id, "c"))
    store.revoke_refresh_session(a.id, None, NOW)

    assert store.revoke_user_refresh_sessions(user.id, "10.0.0.9", NOW) == 1
    assert store.revoke_user_refresh_sessions(user.id, "10.0.0.9", NOW) == 0
    assert store.find_usable_refresh_session("c", NOW) is not None


def test_purge_expired_removes_rows_and_index(store, user):
    store.create_refresh_session(_session(user.id, "old", now=NOW - timedelta(days=40)))
    store.create_refresh_session(_session(user.id, "fresh"))

    assert store.purge_expired_refresh_sessions(NOW) == 1
    assert store.find_refresh_session_by_hash("old") is None
    assert [s.token_hash for s in store.list_user_refresh_sessions(user.id)] == ["fresh"]
