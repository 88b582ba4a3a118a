from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from fruitables.logging import get_logger
from fruitables.storage.errors import ConstraintViolation, StoreError, StoreErrorCode
from fruitables.storage.models import (
    CART_RETENTION,
    MAX_ADMINS,
    ONE_TIME_CODE_RETENTION,
    AccessTokenRecord,
    OtpCode,
    RefreshTokenRecord,
    ResetCode,
    User,
    UserIdentity,
)

REQUIRED_TABLES = (
    "app_user",
    "access_token",
    "refresh_token",
    "reset_code",
    "otp_code",
    "cart_item",
)

# Constraint names declared in scripts/schema.sql
_CONSTRAINT_CODES: Dict[str, StoreErrorCode] = {
    "app_user_username_key": StoreErrorCode.DUPLICATE_USERNAME,
    "app_user_email_key": StoreErrorCode.DUPLICATE_EMAIL,
    "app_user_admin_limit": StoreErrorCode.ADMIN_LIMIT,
}


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Credential store backed by Postgres through an async connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        max_admins: int = MAX_ADMINS,
    ) -> None:
        self.dsn = dsn
        self.max_admins = max_admins
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            configure=self._configure_connection,
            open=False,
        )

    async def _configure_connection(self, conn) -> None:
        """Publish the admin cap to the enforce_admin_limit trigger."""
        await conn.execute(
            "SELECT set_config('fruitables.max_admins', %s, false)",
            (str(self.max_admins),),
        )
        await conn.commit()

    async def open(self) -> None:
        await self.pool.open()
        await self._verify_required_schema()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def ping(self) -> bool:
        with self._translate_errors("ping"):
            async with self._connect() as conn:
                await conn.execute("SELECT 1")
        return True

    async def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables are missing."""

        async with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Re-raise driver errors as tagged :class:`StoreError` values."""
        try:
            yield
        except (errors.UniqueViolation, errors.CheckViolation) as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            code = _CONSTRAINT_CODES.get(constraint)
            if code is None:
                raise
            raise ConstraintViolation(
                code, str(exc.diag.message_primary or exc), {"constraint": constraint}
            ) from exc
        except errors.NotNullViolation as exc:
            column = getattr(exc.diag, "column_name", None)
            raise StoreError(
                StoreErrorCode.MISSING_FIELD,
                f"{column or 'field'} cannot be null",
                {"field": column},
            ) from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", operation=operation, error=str(exc)
            )
            raise StoreError(
                StoreErrorCode.UNAVAILABLE, "credential store unavailable"
            ) from exc

    # row mapping
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            created_at=_as_utc(row.get("created_at")),
        )

    @staticmethod
    def _row_to_access(row: Dict[str, Any]) -> AccessTokenRecord:
        return AccessTokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            email=row["email"],
            token=row["token"],
            expires_at=_as_utc(row["expires_at"]),
            username=row["username"],
            role=row["role"],
        )

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            email=row["email"],
            token=row["token"],
            expires_at=_as_utc(row["expires_at"]),
            username=row["username"],
            role=row["role"],
        )

    @staticmethod
    def _row_to_reset_code(row: Dict[str, Any]) -> ResetCode:
        return ResetCode(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            username=row["username"],
            code=row["code"],
            email=row["email"],
            created_at=_as_utc(row.get("created_at")),
        )

    @staticmethod
    def _row_to_otp(row: Dict[str, Any]) -> OtpCode:
        return OtpCode(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            username=row["username"],
            otp=int(row["otp"]),
            email=row["email"],
            created_at=_as_utc(row.get("created_at")),
        )

    async def _fetch_one(self, operation: str, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self._translate_errors(operation):
            async with self._connect() as conn:
                cur = await conn.execute(sql, params)
                return await cur.fetchone()

    async def _execute(self, operation: str, sql: str, params: tuple) -> int:
        with self._translate_errors(operation):
            async with self._connect() as conn:
                cur = await conn.execute(sql, params)
                return cur.rowcount

    # users
    async def create_user(
        self, username: str, email: str, password_hash: str, role: str = "user"
    ) -> User:
        row = await self._fetch_one(
            "create_user",
            """
            INSERT INTO app_user (username, email, password_hash, role)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (username, email, password_hash, role),
        )
        return self._row_to_user(row)

    async def find_user_by_email(self, email: str) -> Optional[User]:
        row = await self._fetch_one(
            "find_user_by_email", "SELECT * FROM app_user WHERE email = %s", (email,)
        )
        return self._row_to_user(row) if row else None

    async def find_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetch_one(
            "find_user_by_username",
            "SELECT * FROM app_user WHERE username = %s",
            (username,),
        )
        return self._row_to_user(row) if row else None

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        row = await self._fetch_one(
            "find_user_by_id", "SELECT * FROM app_user WHERE id = %s", (user_id,)
        )
        return self._row_to_user(row) if row else None

    async def update_password(self, user_id: int, password_hash: str) -> int:
        return await self._execute(
            "update_password",
            "UPDATE app_user SET password_hash = %s WHERE id = %s",
            (password_hash, user_id),
        )

    # tokens
    async def find_access_token_by_email(self, email: str) -> Optional[AccessTokenRecord]:
        row = await self._fetch_one(
            "find_access_token_by_email",
            "SELECT * FROM access_token WHERE email = %s",
            (email,),
        )
        return self._row_to_access(row) if row else None

    async def upsert_access_token(
        self, identity: UserIdentity, token: str, expires_at: datetime
    ) -> str:
        row = await self._fetch_one(
            "upsert_access_token",
            """
            INSERT INTO access_token (user_id, email, token, expires_at, username, role)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (email) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                token = EXCLUDED.token,
                expires_at = EXCLUDED.expires_at,
                username = EXCLUDED.username,
                role = EXCLUDED.role
            RETURNING email
            """,
            (
                identity.user_id,
                identity.email,
                token,
                expires_at,
                identity.username,
                identity.role,
            ),
        )
        return row["email"]

    async def find_refresh_token_by_email(
        self, email: str
    ) -> Optional[RefreshTokenRecord]:
        row = await self._fetch_one(
            "find_refresh_token_by_email",
            "SELECT * FROM refresh_token WHERE email = %s",
            (email,),
        )
        return self._row_to_refresh(row) if row else None

    async def upsert_refresh_token(
        self, identity: UserIdentity, token: str, expires_at: datetime
    ) -> str:
        row = await self._fetch_one(
            "upsert_refresh_token",
            """
            INSERT INTO refresh_token (user_id, email, token, expires_at, username, role)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (email) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                token = EXCLUDED.token,
                expires_at = EXCLUDED.expires_at,
                username = EXCLUDED.username,
                role = EXCLUDED.role
            RETURNING email
            """,
            (
                identity.user_id,
                identity.email,
                token,
                expires_at,
                identity.username,
                identity.role,
            ),
        )
        return row["email"]

    async def delete_tokens_by_email(self, email: str) -> int:
        with self._translate_errors("delete_tokens_by_email"):
            async with self._connect() as conn:
                access = await conn.execute(
                    "DELETE FROM access_token WHERE email = %s", (email,)
                )
                refresh = await conn.execute(
                    "DELETE FROM refresh_token WHERE email = %s", (email,)
                )
                return access.rowcount + refresh.rowcount

    # one-time codes
    async def insert_reset_code(self, user: User, code: str) -> ResetCode:
        row = await self._fetch_one(
            "insert_reset_code",
            """
            INSERT INTO reset_code (user_id, username, code, email)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                username = EXCLUDED.username,
                code = EXCLUDED.code,
                email = EXCLUDED.email,
                created_at = now()
            RETURNING *
            """,
            (user.id, user.username, code or None, user.email),
        )
        return self._row_to_reset_code(row)

    async def find_reset_code_by_user_id(self, user_id: int) -> Optional[ResetCode]:
        row = await self._fetch_one(
            "find_reset_code_by_user_id",
            "SELECT * FROM reset_code WHERE user_id = %s",
            (user_id,),
        )
        return self._row_to_reset_code(row) if row else None

    async def insert_otp(self, user: User, otp: int) -> OtpCode:
        row = await self._fetch_one(
            "insert_otp",
            """
            INSERT INTO otp_code (user_id, username, otp, email)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                username = EXCLUDED.username,
                otp = EXCLUDED.otp,
                email = EXCLUDED.email,
                created_at = now()
            RETURNING *
            """,
            (user.id, user.username, otp or None, user.email),
        )
        return self._row_to_otp(row)

    async def find_otp_by_user_id(self, user_id: int) -> Optional[OtpCode]:
        row = await self._fetch_one(
            "find_otp_by_user_id",
            "SELECT * FROM otp_code WHERE user_id = %s",
            (user_id,),
        )
        return self._row_to_otp(row) if row else None

    # sweeps
    async def sweep_expired_tokens(self, now: datetime) -> int:
        code_cutoff = now - ONE_TIME_CODE_RETENTION
        with self._translate_errors("sweep_expired_tokens"):
            async with self._connect() as conn:
                removed = 0
                for sql, params in (
                    ("DELETE FROM access_token WHERE expires_at <= %s", (now,)),
                    ("DELETE FROM refresh_token WHERE expires_at <= %s", (now,)),
                    ("DELETE FROM reset_code WHERE created_at <= %s", (code_cutoff,)),
                    ("DELETE FROM otp_code WHERE created_at <= %s", (code_cutoff,)),
                ):
                    cur = await conn.execute(sql, params)
                    removed += cur.rowcount
        return removed

    async def sweep_stale_carts(self, now: datetime) -> int:
        return await self._execute(
            "sweep_stale_carts",
            "DELETE FROM cart_item WHERE created_at <= %s",
            (now - CART_RETENTION,),
        )
