from __future__ import annotations

import itertools
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fruitables.logging import get_logger, redact_email
from fruitables.storage.errors import ConstraintViolation, StoreError, StoreErrorCode
from fruitables.storage.models import (
    CART_RETENTION,
    MAX_ADMINS,
    ONE_TIME_CODE_RETENTION,
    AccessTokenRecord,
    CartRow,
    OtpCode,
    RefreshTokenRecord,
    ResetCode,
    User,
    UserIdentity,
)


class MemoryStore:
    """In-process credential store used for tests and local development.

    Each method body runs without awaiting, so holding the data lock for the
    whole body gives the same per-key upsert semantics as the Postgres store.
    """

    def __init__(self, *, max_admins: int = MAX_ADMINS) -> None:
        self.logger = get_logger(__name__)
        self.max_admins = max_admins
        self.users: Dict[int, User] = {}
        self.access_tokens: Dict[str, AccessTokenRecord] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.reset_codes: Dict[int, ResetCode] = {}
        self.otps: Dict[int, OtpCode] = {}
        self.carts: Dict[int, CartRow] = {}
        self._user_seq = itertools.count(1)
        self._token_seq = itertools.count(1)
        self._refresh_seq = itertools.count(1)
        self._code_seq = itertools.count(1)
        self._cart_seq = itertools.count(1)
        self._data_lock = threading.RLock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    # users
    async def create_user(
        self, username: str, email: str, password_hash: str, role: str = "user"
    ) -> User:
        if not username or not email or not password_hash or not role:
            raise StoreError(StoreErrorCode.MISSING_FIELD, "user fields are required")
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        StoreErrorCode.DUPLICATE_USERNAME,
                        "username already exists",
                        {"field": "username"},
                    )
                if existing.email == email:
                    raise ConstraintViolation(
                        StoreErrorCode.DUPLICATE_EMAIL,
                        "email already exists",
                        {"field": "email"},
                    )
            if role == "admin":
                admins = sum(1 for u in self.users.values() if u.role == "admin")
                if admins >= self.max_admins:
                    raise ConstraintViolation(
                        StoreErrorCode.ADMIN_LIMIT,
                        "admin limit reached",
                        {"max_admins": self.max_admins},
                    )
            user = User(
                id=next(self._user_seq),
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
            )
            self.users[user.id] = user
            return user

    async def find_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    async def find_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def update_password(self, user_id: int, password_hash: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.password_hash = password_hash
            return 1

    # tokens
    async def find_access_token_by_email(self, email: str) -> Optional[AccessTokenRecord]:
        with self._data_lock:
            return self.access_tokens.get(email)

    async def upsert_access_token(
        self, identity: UserIdentity, token: str, expires_at: datetime
    ) -> str:
        with self._data_lock:
            current = self.access_tokens.get(identity.email)
            self.access_tokens[identity.email] = AccessTokenRecord(
                id=current.id if current else next(self._token_seq),
                user_id=identity.user_id,
                email=identity.email,
                token=token,
                expires_at=expires_at,
                username=identity.username,
                role=identity.role,
            )
            return identity.email

    async def find_refresh_token_by_email(
        self, email: str
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(email)

    async def upsert_refresh_token(
        self, identity: UserIdentity, token: str, expires_at: datetime
    ) -> str:
        with self._data_lock:
            current = self.refresh_tokens.get(identity.email)
            self.refresh_tokens[identity.email] = RefreshTokenRecord(
                id=current.id if current else next(self._refresh_seq),
                user_id=identity.user_id,
                email=identity.email,
                token=token,
                expires_at=expires_at,
                username=identity.username,
                role=identity.role,
            )
            return identity.email

    async def delete_tokens_by_email(self, email: str) -> int:
        with self._data_lock:
            deleted = 0
            if self.access_tokens.pop(email, None) is not None:
                deleted += 1
            if self.refresh_tokens.pop(email, None) is not None:
                deleted += 1
            return deleted

    # one-time codes
    async def insert_reset_code(self, user: User, code: str) -> ResetCode:
        if not code:
            raise StoreError(StoreErrorCode.MISSING_FIELD, "code is required")
        with self._data_lock:
            record = ResetCode(
                id=next(self._code_seq),
                user_id=user.id,
                username=user.username,
                code=code,
                email=user.email,
            )
            self.reset_codes[user.id] = record
            return record

    async def find_reset_code_by_user_id(self, user_id: int) -> Optional[ResetCode]:
        with self._data_lock:
            return self.reset_codes.get(user_id)

    async def insert_otp(self, user: User, otp: int) -> OtpCode:
        if not otp:
            raise StoreError(StoreErrorCode.MISSING_FIELD, "otp is required")
        with self._data_lock:
            record = OtpCode(
                id=next(self._code_seq),
                user_id=user.id,
                username=user.username,
                otp=otp,
                email=user.email,
            )
            self.otps[user.id] = record
            return record

    async def find_otp_by_user_id(self, user_id: int) -> Optional[OtpCode]:
        with self._data_lock:
            return self.otps.get(user_id)

    # carts
    def add_cart_row(
        self,
        user_id: int,
        product_id: int,
        quantity: int = 1,
        *,
        created_at: Optional[datetime] = None,
    ) -> CartRow:
        with self._data_lock:
            row = CartRow(
                id=next(self._cart_seq),
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.carts[row.id] = row
            return row

    def list_cart_rows(self) -> List[CartRow]:
        with self._data_lock:
            return list(self.carts.values())

    # sweeps
    async def sweep_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired_access = [
                email for email, rec in self.access_tokens.items() if not rec.is_valid(now)
            ]
            expired_refresh = [
                email for email, rec in self.refresh_tokens.items() if not rec.is_valid(now)
            ]
            for email in expired_access:
                del self.access_tokens[email]
            for email in expired_refresh:
                del self.refresh_tokens[email]
            cutoff = now - ONE_TIME_CODE_RETENTION
            stale_codes = [uid for uid, rec in self.reset_codes.items() if rec.created_at <= cutoff]
            stale_otps = [uid for uid, rec in self.otps.items() if rec.created_at <= cutoff]
            for uid in stale_codes:
                del self.reset_codes[uid]
            for uid in stale_otps:
                del self.otps[uid]
            removed = (
                len(expired_access)
                + len(expired_refresh)
                + len(stale_codes)
                + len(stale_otps)
            )
        if removed:
            self.logger.debug(
                "memory_tokens_swept",
                removed=removed,
                emails=[redact_email(e) for e in expired_access],
            )
        return removed

    async def sweep_stale_carts(self, now: datetime) -> int:
        cutoff = now - CART_RETENTION
        with self._data_lock:
            stale = [cid for cid, row in self.carts.items() if row.created_at <= cutoff]
            for cid in stale:
                del self.carts[cid]
        return len(stale)
