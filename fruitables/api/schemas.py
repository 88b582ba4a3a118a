from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from fruitables.service.auth import ResultCode
from fruitables.storage.models import ROLES

MAX_EMAIL_LENGTH = 100
MAX_USERNAME_LENGTH = 50
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 255

_GENERIC_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "service_unavailable",
}
_VALID_ERROR_CODES = _GENERIC_ERROR_CODES | {code.value for code in ResultCode}


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a stable machine-readable tag."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Email is required.")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("Email must be at most 100 characters long.")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Invalid email format")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email format")
    return normalized


def _validate_role(value: str) -> str:
    if not value:
        raise ValueError("Kindly specify your role..can't be null")
    if value not in ROLES:
        raise ValueError("Your role is invalid..try again")
    return value


def _validate_username(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("Name is required")
    if len(value) > MAX_USERNAME_LENGTH:
        raise ValueError("Name must be at most 50 characters long.")
    return value


def _validate_new_password(value: str) -> str:
    if not value:
        raise ValueError("Password is required.")
    if len(value) < MIN_PASSWORD_LENGTH or len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(
            "Password must be at least 6 characters long and at most 255 characters long."
        )
    return value


class RegisterUserRequest(BaseModel):
    username: str
    email: str
    password: str
    role: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_new_password(value)

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        return _validate_role(value)


class LoginUserRequest(BaseModel):
    username: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    role: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required.")
        return value

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        return _validate_role(value)


class LogoutRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordRequest(BaseModel):
    email: str
    role: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        return _validate_role(value)


class SendOtpRequest(ForgotPasswordRequest):
    pass


class ResetPasswordRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    code: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_new_password(value)


class ConfirmOtpRequest(BaseModel):
    email: str
    otp: int

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _check_otp(cls, value: int) -> int:
        if value == 0:
            raise ValueError("OTP can not be null")
        if len(str(abs(value))) < 4:
            raise ValueError("OTP must be atleast 4 digits")
        return value


class MessageResponse(BaseModel):
    message: str
    code: str


class TokenDetails(BaseModel):
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"
    user_id: int
    username: str
    email: str
    role: str


class AuthResponse(MessageResponse):
    tokens: TokenDetails


class PrincipalResponse(BaseModel):
    username: str
    email: str
    role: str
    expires_at: datetime
