from __future__ import annotations

import hmac
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import quote_plus, unquote_plus

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from fruitables.config import Settings
from fruitables.logging import get_logger, redact_email
from fruitables.service.email import EmailService
from fruitables.service.errors import EmailDeliveryError
from fruitables.service.tokens import Clock, TokenIssuer, TokenPolicy, utcnow
from fruitables.storage.errors import ConstraintViolation, StoreError, StoreErrorCode
from fruitables.storage.models import (
    AccessTokenRecord,
    OtpCode,
    RefreshTokenRecord,
    ResetCode,
    TokenPair,
    User,
    UserIdentity,
)

logger = get_logger(__name__)

RESET_CODE_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz!@#$%^&*+_0123456789"
)
RESET_CODE_LENGTH = 10
OTP_MIN = 1000
OTP_MAX = 9999


class CredentialStore(Protocol):
    async def create_user(
        self, username: str, email: str, password_hash: str, role: str = "user"
    ) -> User: ...

    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    async def find_user_by_username(self, username: str) -> Optional[User]: ...

    async def find_user_by_id(self, user_id: int) -> Optional[User]: ...

    async def update_password(self, user_id: int, password_hash: str) -> int: ...

    async def find_access_token_by_email(
        self, email: str
    ) -> Optional[AccessTokenRecord]: ...

    async def upsert_access_token(
        self, identity: UserIdentity, token: str, expires_at: datetime
    ) -> str: ...

    async def find_refresh_token_by_email(
        self, email: str
    ) -> Optional[RefreshTokenRecord]: ...

    async def upsert_refresh_token(
        self, identity: UserIdentity, token: str, expires_at: datetime
    ) -> str: ...

    async def delete_tokens_by_email(self, email: str) -> int: ...

    async def insert_reset_code(self, user: User, code: str) -> ResetCode: ...

    async def find_reset_code_by_user_id(self, user_id: int) -> Optional[ResetCode]: ...

    async def insert_otp(self, user: User, otp: int) -> OtpCode: ...

    async def find_otp_by_user_id(self, user_id: int) -> Optional[OtpCode]: ...

    async def sweep_expired_tokens(self, now: datetime) -> int: ...

    async def sweep_stale_carts(self, now: datetime) -> int: ...


class ResultCode(str, Enum):
    """Stable tags for business outcomes; the boundary maps these to statuses."""

    REGISTERED = "registered"
    DUPLICATE_USERNAME = "duplicate_username"
    DUPLICATE_EMAIL = "duplicate_email"
    ADMIN_LIMIT = "admin_limit"
    LOGGED_IN = "logged_in"
    USER_NOT_FOUND = "user_not_found"
    ROLE_MISMATCH = "role_mismatch"
    WRONG_PASSWORD = "wrong_password"
    LOGGED_OUT = "logged_out"
    EMAIL_NOT_FOUND = "email_not_found"
    SERVICE_UNAVAILABLE = "service_unavailable"
    PERSIST_FAILED = "persist_failed"
    EMAIL_SENT = "email_sent"
    INVALID_USER = "invalid_user"
    INVALID_CODE = "invalid_code"
    CODE_MISMATCH = "code_mismatch"
    PASSWORD_NOT_UPDATED = "password_not_updated"
    PASSWORD_UPDATED = "password_updated"
    OTP_SENT = "otp_sent"
    OTP_NOT_FOUND = "otp_not_found"
    OTP_MISMATCH = "otp_mismatch"
    OTP_VERIFIED = "otp_verified"


EMAIL_NOT_FOUND_MESSAGE = "We are not able to find your email in the system, Please try again."
SERVICE_UNAVAILABLE_MESSAGE = "Service is temporarily unavailable..try after sometime"
CODE_MISMATCH_MESSAGE = (
    "Your password reset link has been expired, Please generate a different link and try again."
)


@dataclass
class OperationResult:
    success: bool
    code: ResultCode
    message: str
    data: Any = None

    @classmethod
    def ok(cls, code: ResultCode, message: str, data: Any = None) -> "OperationResult":
        return cls(True, code, message, data)

    @classmethod
    def fail(cls, code: ResultCode, message: str) -> "OperationResult":
        return cls(False, code, message)


class TokenLifecycleManager:
    """Token reuse-or-issue, one-time codes and login flows over a credential store.

    Business outcomes come back as :class:`OperationResult`; store outages,
    signing misconfiguration and other infrastructure errors propagate.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        email: EmailService,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.email = email
        self.settings = settings
        self._clock = clock or utcnow
        # Not a CSPRNG; matches the existing reset-code contract
        self._rng = rng or random.Random()
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    # tokens
    async def get_or_issue_access_token(self, identity: UserIdentity) -> AccessTokenRecord:
        current = await self.store.find_access_token_by_email(identity.email)
        if current is not None and current.is_valid(self._clock()):
            self.logger.info("access_token_reused", email=redact_email(identity.email))
            return current
        signed = self.issuer.issue(identity.claims(), TokenPolicy.ACCESS)
        await self.store.upsert_access_token(identity, signed.token, signed.expires_at)
        record = await self.store.find_access_token_by_email(identity.email)
        if record is None:
            raise StoreError(
                StoreErrorCode.NOT_FOUND,
                "access token missing after upsert",
                {"email": identity.email},
            )
        self.logger.info(
            "access_token_issued",
            email=redact_email(identity.email),
            replaced=current is not None,
        )
        return record

    async def get_or_issue_refresh_token(
        self, identity: UserIdentity
    ) -> RefreshTokenRecord:
        current = await self.store.find_refresh_token_by_email(identity.email)
        if current is not None and current.is_valid(self._clock()):
            self.logger.info("refresh_token_reused", email=redact_email(identity.email))
            return current
        signed = self.issuer.issue(identity.claims(), TokenPolicy.REFRESH)
        await self.store.upsert_refresh_token(identity, signed.token, signed.expires_at)
        record = await self.store.find_refresh_token_by_email(identity.email)
        if record is None:
            raise StoreError(
                StoreErrorCode.NOT_FOUND,
                "refresh token missing after upsert",
                {"email": identity.email},
            )
        self.logger.info(
            "refresh_token_issued",
            email=redact_email(identity.email),
            replaced=current is not None,
        )
        return record

    async def issue_token_pair(self, user: User) -> TokenPair:
        identity = UserIdentity.from_user(user)
        access = await self.get_or_issue_access_token(identity)
        refresh = await self.get_or_issue_refresh_token(identity)
        return TokenPair(access=access, refresh=refresh)

    # registration and login
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def register(
        self, username: str, email: str, password: str, role: str
    ) -> OperationResult:
        password_hash = self.hash_password(password)
        try:
            user = await self.store.create_user(username, email, password_hash, role)
        except ConstraintViolation as exc:
            self.logger.warning(
                "registration_rejected", username=username, reason=exc.code.value
            )
            if exc.code is StoreErrorCode.DUPLICATE_USERNAME:
                return OperationResult.fail(
                    ResultCode.DUPLICATE_USERNAME, "Name is already taken"
                )
            if exc.code is StoreErrorCode.DUPLICATE_EMAIL:
                return OperationResult.fail(
                    ResultCode.DUPLICATE_EMAIL, "Email is already taken"
                )
            if exc.code is StoreErrorCode.ADMIN_LIMIT:
                return OperationResult.fail(
                    ResultCode.ADMIN_LIMIT,
                    f"More than {self.settings.max_admins} administrators are not allowed. "
                    "Please contact the product owner for assistance.",
                )
            raise
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return OperationResult.ok(
            ResultCode.REGISTERED,
            f"Welcome, {user.username}! Your registration was successful.",
            {"user_id": user.id, "username": user.username, "role": user.role},
        )

    async def login(self, username: str, password: str, role: str) -> OperationResult:
        user = await self.store.find_user_by_username(username)
        if user is None:
            self.logger.warning("login_user_missing", username=username)
            return OperationResult.fail(ResultCode.USER_NOT_FOUND, "User not exists")
        if user.role != role:
            self.logger.warning("login_role_mismatch", username=username, role=role)
            return OperationResult.fail(
                ResultCode.ROLE_MISMATCH,
                "Admin not exists" if role == "admin" else "User not exists",
            )
        if not self.verify_password(user, password):
            self.logger.warning("login_wrong_password", username=username)
            return OperationResult.fail(
                ResultCode.WRONG_PASSWORD, "Wrong password... Kindly try again"
            )
        tokens = await self.issue_token_pair(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return OperationResult.ok(
            ResultCode.LOGGED_IN,
            f"Welcome back, {user.username}! Your login was successful.",
            tokens,
        )

    async def logout(self, email: str) -> OperationResult:
        deleted = await self.store.delete_tokens_by_email(email)
        self.logger.info("logout", email=redact_email(email), rows_deleted=deleted)
        return OperationResult.ok(ResultCode.LOGGED_OUT, "Logout Successfully..", deleted)

    # password reset
    def generate_reset_code(self) -> str:
        return "".join(
            self._rng.choice(RESET_CODE_ALPHABET) for _ in range(RESET_CODE_LENGTH)
        )

    def build_callback_url(self, user_id: int, encoded_code: str) -> str:
        return f"{self.settings.password_reset_url}?userId={user_id}&code={encoded_code}"

    async def start_password_reset(self, email: str, role: str) -> OperationResult:
        user = await self.store.find_user_by_email(email)
        if user is None or user.role != role:
            self.logger.warning("password_reset_email_not_found", email=redact_email(email))
            return OperationResult.fail(ResultCode.EMAIL_NOT_FOUND, EMAIL_NOT_FOUND_MESSAGE)

        encoded = quote_plus(self.generate_reset_code(), safe="")
        callback_url = self.build_callback_url(user.id, encoded)
        try:
            await self.email.send_password_reset_email(user.email, user.username, callback_url)
        except EmailDeliveryError as exc:
            # Nothing is persisted for a link that never reached the user
            self.logger.error(
                "password_reset_email_failed", user_id=user.id, error=exc.message
            )
            return OperationResult.fail(
                ResultCode.SERVICE_UNAVAILABLE, SERVICE_UNAVAILABLE_MESSAGE
            )

        try:
            await self.store.insert_reset_code(user, encoded)
        except StoreError as exc:
            if exc.code is not StoreErrorCode.MISSING_FIELD:
                raise
            self.logger.error("password_reset_persist_failed", user_id=user.id)
            return OperationResult.fail(
                ResultCode.PERSIST_FAILED, "Problem while forgot password..please try again."
            )
        self.logger.info("password_reset_requested", user_id=user.id)
        return OperationResult.ok(
            ResultCode.EMAIL_SENT, "Password reset email sent successfully..Check your email"
        )

    async def complete_password_reset(
        self, user_id: int, supplied_code: str, new_password: str
    ) -> OperationResult:
        user = await self.store.find_user_by_id(user_id)
        if user is None:
            return OperationResult.fail(ResultCode.INVALID_USER, "Invalid user details")
        stored = await self.store.find_reset_code_by_user_id(user_id)
        if stored is None:
            self.logger.warning("password_reset_code_missing", user_id=user_id)
            return OperationResult.fail(
                ResultCode.INVALID_CODE, "Invalid reset request..please generate a new link"
            )
        expected = unquote_plus(stored.code)
        if not hmac.compare_digest(expected.encode(), supplied_code.encode()):
            self.logger.warning("password_reset_code_mismatch", user_id=user_id)
            return OperationResult.fail(ResultCode.CODE_MISMATCH, CODE_MISMATCH_MESSAGE)

        # Separate round trip from the code check above; see DESIGN.md
        updated = await self.store.update_password(user_id, self.hash_password(new_password))
        if updated == 0:
            self.logger.error("password_reset_update_missed", user_id=user_id)
            return OperationResult.fail(
                ResultCode.PASSWORD_NOT_UPDATED,
                "There is some problem. We are not able to reset your password, "
                "Please contact to administrator.",
            )
        self.logger.info("password_reset_completed", user_id=user_id)
        return OperationResult.ok(
            ResultCode.PASSWORD_UPDATED, "Your password has been updated successfully."
        )

    # OTP login
    def generate_otp(self) -> int:
        return self._rng.randint(OTP_MIN, OTP_MAX)

    async def start_otp_login(self, email: str, role: str) -> OperationResult:
        user = await self.store.find_user_by_email(email)
        if user is None or user.role != role:
            self.logger.warning("otp_email_not_found", email=redact_email(email))
            return OperationResult.fail(ResultCode.EMAIL_NOT_FOUND, EMAIL_NOT_FOUND_MESSAGE)

        otp = self.generate_otp()
        try:
            await self.email.send_otp_email(user.email, user.username, otp)
        except EmailDeliveryError as exc:
            self.logger.error("otp_email_failed", user_id=user.id, error=exc.message)
            return OperationResult.fail(
                ResultCode.SERVICE_UNAVAILABLE, SERVICE_UNAVAILABLE_MESSAGE
            )

        try:
            await self.store.insert_otp(user, otp)
        except StoreError as exc:
            if exc.code is not StoreErrorCode.MISSING_FIELD:
                raise
            self.logger.error("otp_persist_failed", user_id=user.id)
            return OperationResult.fail(
                ResultCode.PERSIST_FAILED, "Problem while OTP sending..please try again."
            )
        self.logger.info("otp_sent", user_id=user.id)
        return OperationResult.ok(ResultCode.OTP_SENT, "OTP sent successfully..Check your email")

    async def confirm_otp(self, email: str, supplied_otp: int) -> OperationResult:
        user = await self.store.find_user_by_email(email)
        if user is None:
            return OperationResult.fail(ResultCode.EMAIL_NOT_FOUND, EMAIL_NOT_FOUND_MESSAGE)
        stored = await self.store.find_otp_by_user_id(user.id)
        if stored is None:
            return OperationResult.fail(ResultCode.OTP_NOT_FOUND, "OTP not found..")
        if stored.otp != supplied_otp:
            self.logger.warning("otp_mismatch", user_id=user.id)
            return OperationResult.fail(ResultCode.OTP_MISMATCH, "Invalid OTP try again.")

        # The OTP row stays in place; repeat confirmations also succeed
        await self.store.delete_tokens_by_email(user.email)
        tokens = await self.issue_token_pair(user)
        self.logger.info("otp_verified", user_id=user.id)
        return OperationResult.ok(ResultCode.OTP_VERIFIED, "OTP validation sucessfull.", tokens)
