from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg import errors

from rollt.storage.common import SecretBox
from rollt.storage.errors import ConstraintViolation
from rollt.storage.models import TwoFactorDisabled, TwoFactorEnabled, TwoFactorPending
from rollt.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, query, params=None):
        self.pool.executed.append((" ".join(query.split()), params))
        result = self.pool.results.pop(0) if self.pool.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.executed = []

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


def _store(tmp_path: Path, *results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(results)
    store.fs_root = tmp_path
    store._secret_box = SecretBox("unit-test-key")
    return store


def _now():
    return datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_create_user_normalizes_email(tmp_path):
    row = {
        "id": "u1",
        "username": "alice",
        "email": "alice@example.com",
        "avatar": None,
        "created_at": _now(),
        "updated_at": _now(),
    }
    store = _store(tmp_path, FakeCursor([row]))

    user = store.create_user("alice", " Alice@Example.com ")

    assert user.email == "alice@example.com"
    _, params = store.pool.executed[0]
    assert params[2] == "alice@example.com"


def test_create_user_maps_unique_violation(tmp_path):
    store = _store(tmp_path, errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation):
        store.create_user("alice", "alice@example.com")


def test_save_password_missing_user_raises(tmp_path):
    store = _store(tmp_path, FakeCursor(rowcount=0))
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_get_password_record(tmp_path):
    store = _store(
        tmp_path,
        FakeCursor([{"password_hash": "h", "password_algo": "argon2id"}]),
        FakeCursor([{"password_hash": None, "password_algo": None}]),
    )
    assert store.get_password_record("u1") == ("h", "argon2id")
    assert store.get_password_record("u2") is None


def test_two_factor_state_decrypts_secret(tmp_path):
    box = SecretBox("unit-test-key")
    encrypted = box.encrypt("JBSWY3DPEHPK3PXP")
    store = _store(
        tmp_path,
        FakeCursor(
            [
                {
                    "two_factor_status": "enabled",
                    "two_factor_secret": encrypted,
                    "two_factor_created_at": _now(),
                    "two_factor_enabled_at": _now(),
                    "two_factor_last_step": 42,
                }
            ]
        ),
        FakeCursor(
            [
                {
                    "two_factor_status": "pending",
                    "two_factor_secret": encrypted,
                    "two_factor_created_at": _now().replace(tzinfo=None),
                    "two_factor_enabled_at": None,
                    "two_factor_last_step": None,
                }
            ]
        ),
        FakeCursor([]),
    )

    enabled = store.get_two_factor_state("u1")
    assert isinstance(enabled, TwoFactorEnabled)
    assert enabled.secret == "JBSWY3DPEHPK3PXP"
    assert enabled.last_used_step == 42

    pending = store.get_two_factor_state("u1")
    assert isinstance(pending, TwoFactorPending)
    assert pending.created_at.tzinfo is not None

    assert isinstance(store.get_two_factor_state("missing"), TwoFactorDisabled)


def test_set_pending_encrypts_secret(tmp_path):
    store = _store(tmp_path, FakeCursor(rowcount=1))
    store.set_two_factor_pending("u1", "JBSWY3DPEHPK3PXP")

    _, params = store.pool.executed[0]
    assert params[0] == "pending"
    assert params[1] != "JBSWY3DPEHPK3PXP"
    assert store._secret_box.decrypt(params[1]) == "JBSWY3DPEHPK3PXP"


def test_enable_without_secret_raises(tmp_path):
    store = _store(tmp_path, FakeCursor([]))
    with pytest.raises(ConstraintViolation):
        store.enable_two_factor("u1")


def test_record_totp_step_only_advances(tmp_path):
    store = _store(tmp_path)
    store.record_totp_step("u1", 7)
    query, params = store.pool.executed[0]
    assert "two_factor_last_step < %s" in query
    assert params == (7, "u1", 7)


def test_consume_backup_code_uses_rowcount(tmp_path):
    store = _store(tmp_path, FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    assert store.consume_backup_code("c1") is True
    assert store.consume_backup_code("c1") is False
    query, _ = store.pool.executed[0]
    assert "used_at IS NULL" in query


def test_add_backup_code_maps_foreign_key_violation(tmp_path):
    store = _store(tmp_path, errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        store.add_backup_code("missing", "hash")


def test_list_active_sessions_filters_expired_and_orders(tmp_path):
    created = _now()
    row = {
        "id": "s1",
        "user_id": "u1",
        "token": "t",
        "device_name": "Mac",
        "browser_info": "Safari",
        "ip_address": None,
        "is_active": True,
        "created_at": created,
        "expires_at": created + timedelta(days=7),
        "last_activity_at": created,
        "revoked_at": None,
    }
    store = _store(tmp_path, FakeCursor([row]))

    sessions = store.list_active_sessions("u1", now=created)

    assert [s.id for s in sessions] == ["s1"]
    query, params = store.pool.executed[0]
    assert "is_active = TRUE" in query
    assert "expires_at > %s" in query
    assert "ORDER BY last_activity_at DESC" in query
    assert params == ("u1", created)


def test_get_user_session_does_not_filter_active(tmp_path):
    store = _store(tmp_path, FakeCursor([]))
    assert store.get_user_session("s1", "u1") is None
    query, params = store.pool.executed[0]
    assert "is_active" not in query
    assert params == ("s1", "u1")


def test_deactivate_user_sessions_excludes_current(tmp_path):
    store = _store(tmp_path, FakeCursor(rowcount=3), FakeCursor(rowcount=4))

    assert store.deactivate_user_sessions("u1", except_session_id="keep") == 3
    query, params = store.pool.executed[0]
    assert "id <> %s" in query
    assert params == ("u1", "keep")

    assert store.deactivate_user_sessions("u1") == 4
    query, params = store.pool.executed[1]
    assert "id <> %s" not in query
    assert params == ("u1",)


def test_deactivate_session_scoped_to_owner(tmp_path):
    store = _store(tmp_path, FakeCursor(rowcount=0))
    assert store.deactivate_session("s1", "intruder") is False
    query, params = store.pool.executed[0]
    assert "user_id = %s" in query
    assert params == ("s1", "intruder")


def test_append_audit_log_inserts_row(tmp_path):
    store = _store(tmp_path)
    entry = store.append_audit_log(
        "u1", "2FA_ENABLED", "SUCCESS", ip_address="10.0.0.1", browser_info="ua"
    )
    query, params = store.pool.executed[0]
    assert query.startswith("INSERT INTO security_audit_logs")
    assert params[:6] == (entry.id, "u1", "2FA_ENABLED", "10.0.0.1", "ua", "SUCCESS")
