from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from fruitables.logging import get_logger
from fruitables.storage.errors import ConstraintViolation, StoreError, StoreErrorCode
from fruitables.storage.models import UserIdentity
from fruitables.storage.postgres import REQUIRED_TABLES, PostgresStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    async def fetchone(self):
        return self.row


class FakeConn:
    def __init__(self, responses=()):
        self.responses = list(responses)
        self.calls = []
        self.commits = 0

    async def commit(self):
        self.commits += 1

    async def execute(self, sql, params=None):
        self.calls.append((sql, params))
        return self.responses.pop(0) if self.responses else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def connection(self):
        yield self.conn


class _UniqueWithConstraint(errors.UniqueViolation):
    def __init__(self, constraint):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint = constraint

    @property
    def diag(self):
        return SimpleNamespace(
            constraint_name=self._constraint,
            message_primary="duplicate key value violates unique constraint",
        )


class _NotNullOn(errors.NotNullViolation):
    def __init__(self, column):
        super().__init__("null value in column violates not-null constraint")
        self._column = column

    @property
    def diag(self):
        return SimpleNamespace(column_name=self._column)


def _store(pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("tests.postgres")
    return store


def _user_row(**overrides):
    row = {
        "id": 7,
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "hash",
        "role": "user",
        "created_at": datetime(2024, 1, 1, 9, 0),
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_user_row_gets_utc_timestamp(self):
        user = PostgresStore._row_to_user(_user_row())
        assert user.id == 7
        assert user.created_at.tzinfo is timezone.utc

    def test_token_rows(self):
        row = {
            "id": 3,
            "user_id": 7,
            "email": "alice@example.com",
            "token": "abc",
            "expires_at": NOW,
            "username": "alice",
            "role": "admin",
        }
        access = PostgresStore._row_to_access(row)
        refresh = PostgresStore._row_to_refresh(row)
        assert access.expires_at == NOW
        assert access.role == "admin"
        assert refresh.token == "abc"
        assert refresh.is_valid(NOW - timedelta(seconds=1))
        assert not refresh.is_valid(NOW)

    def test_code_rows(self):
        base = {"id": 1, "user_id": 7, "username": "alice", "email": "alice@example.com"}
        reset = PostgresStore._row_to_reset_code({**base, "code": "a%21b"})
        otp = PostgresStore._row_to_otp({**base, "otp": "4321"})
        assert reset.code == "a%21b"
        assert otp.otp == 4321


class TestErrorTranslation:
    """Driver errors come out as tagged StoreError values."""

    @pytest.mark.parametrize(
        "constraint,code",
        [
            ("app_user_username_key", StoreErrorCode.DUPLICATE_USERNAME),
            ("app_user_email_key", StoreErrorCode.DUPLICATE_EMAIL),
        ],
    )
    def test_unique_violations(self, constraint, code):
        store = _store()
        with pytest.raises(ConstraintViolation) as excinfo:
            with store._translate_errors("create_user"):
                raise _UniqueWithConstraint(constraint)
        assert excinfo.value.code is code
        assert excinfo.value.detail == {"constraint": constraint}

    def test_unknown_constraint_is_not_translated(self):
        store = _store()
        with pytest.raises(errors.UniqueViolation):
            with store._translate_errors("create_user"):
                raise _UniqueWithConstraint("some_other_key")

    def test_not_null_is_missing_field(self):
        store = _store()
        with pytest.raises(StoreError) as excinfo:
            with store._translate_errors("insert_reset_code"):
                raise _NotNullOn("code")
        assert excinfo.value.code is StoreErrorCode.MISSING_FIELD
        assert excinfo.value.detail == {"field": "code"}

    @pytest.mark.parametrize(
        "exc", [psycopg.OperationalError("connection refused"), PoolTimeout("pool exhausted")]
    )
    def test_connection_problems_are_unavailable(self, exc):
        store = _store()
        with pytest.raises(StoreError) as excinfo:
            with store._translate_errors("ping"):
                raise exc
        assert excinfo.value.code is StoreErrorCode.UNAVAILABLE


class TestQueries:
    """Queries run against a scripted connection."""

    @pytest.mark.asyncio
    async def test_create_user_returns_mapped_row(self):
        conn = FakeConn([FakeCursor(_user_row(role="admin"))])
        store = _store(FakePool(conn))

        user = await store.create_user("alice", "alice@example.com", "hash", "admin")

        assert user.role == "admin"
        sql, params = conn.calls[0]
        assert "INSERT INTO app_user" in sql
        assert params == ("alice", "alice@example.com", "hash", "admin")

    @pytest.mark.asyncio
    async def test_missing_user_is_none(self):
        store = _store(FakePool(FakeConn([FakeCursor(None)])))
        assert await store.find_user_by_email("ghost@example.com") is None

    @pytest.mark.asyncio
    async def test_access_upsert_conflicts_on_email(self):
        conn = FakeConn([FakeCursor({"email": "alice@example.com"})])
        store = _store(FakePool(conn))
        identity = UserIdentity(user_id=7, username="alice", email="alice@example.com", role="user")

        email = await store.upsert_access_token(identity, "tok", NOW)

        assert email == "alice@example.com"
        sql, params = conn.calls[0]
        assert "ON CONFLICT (email) DO UPDATE" in sql
        assert params == (7, "alice@example.com", "tok", NOW, "alice", "user")

    @pytest.mark.asyncio
    async def test_update_password_returns_rowcount(self):
        store = _store(FakePool(FakeConn([FakeCursor(rowcount=1)])))
        assert await store.update_password(7, "new-hash") == 1

    @pytest.mark.asyncio
    async def test_delete_tokens_sums_both_tables(self):
        conn = FakeConn([FakeCursor(rowcount=1), FakeCursor(rowcount=1)])
        store = _store(FakePool(conn))

        assert await store.delete_tokens_by_email("alice@example.com") == 2
        assert "access_token" in conn.calls[0][0]
        assert "refresh_token" in conn.calls[1][0]

    @pytest.mark.asyncio
    async def test_empty_reset_code_is_sent_as_null(self):
        conn = FakeConn([FakeCursor({
            "id": 1,
            "user_id": 7,
            "username": "alice",
            "code": "abc",
            "email": "alice@example.com",
        })])
        store = _store(FakePool(conn))
        user = PostgresStore._row_to_user(_user_row())

        await store.insert_reset_code(user, "")

        assert conn.calls[0][1] == (7, "alice", None, "alice@example.com")

    @pytest.mark.asyncio
    async def test_sweep_uses_retention_cutoff(self):
        conn = FakeConn([FakeCursor(rowcount=n) for n in (2, 1, 0, 3)])
        store = _store(FakePool(conn))

        removed = await store.sweep_expired_tokens(NOW)

        assert removed == 6
        assert conn.calls[0][1] == (NOW,)
        assert conn.calls[2][1] == (NOW - timedelta(hours=24),)

    @pytest.mark.asyncio
    async def test_new_connections_carry_admin_cap(self):
        store = _store()
        store.max_admins = 5
        conn = FakeConn()

        await store._configure_connection(conn)

        sql, params = conn.calls[0]
        assert "set_config('fruitables.max_admins'" in sql
        assert params == ("5",)
        assert conn.commits == 1

    @pytest.mark.asyncio
    async def test_schema_check_lists_missing_tables(self):
        present = [FakeCursor({"oid": "public.x"}) for _ in REQUIRED_TABLES]
        present[-1] = FakeCursor({"oid": None})
        store = _store(FakePool(FakeConn(present)))

        with pytest.raises(RuntimeError, match=REQUIRED_TABLES[-1]):
            await store._verify_required_schema()
