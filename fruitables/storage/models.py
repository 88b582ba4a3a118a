from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

ROLES = ("user", "admin")
MAX_ADMINS = 3

# Retention applied by the sweeps
ONE_TIME_CODE_RETENTION = timedelta(hours=24)
CART_RETENTION = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    email: str
    password_hash: str
    role: str = "user"
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class UserIdentity:
    """Claim view of a user used when minting and persisting tokens."""

    user_id: int
    username: str
    email: str
    role: str

    @classmethod
    def from_user(cls, user: User) -> "UserIdentity":
        return cls(
            user_id=user.id, username=user.username, email=user.email, role=user.role
        )

    def claims(self) -> dict[str, str]:
        return {"name": self.username, "email": self.email, "role": self.role}


@dataclass
class AccessTokenRecord:
    id: int
    user_id: int
    email: str
    token: str
    expires_at: datetime
    username: str
    role: str

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class RefreshTokenRecord:
    id: int
    user_id: int
    email: str
    token: str
    expires_at: datetime
    username: str
    role: str

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class TokenPair:
    access: AccessTokenRecord
    refresh: RefreshTokenRecord

    def as_dict(self) -> dict:
        return {
            "access_token": self.access.token,
            "access_token_expires_at": self.access.expires_at,
            "refresh_token": self.refresh.token,
            "refresh_token_expires_at": self.refresh.expires_at,
            "token_type": "bearer",
            "user_id": self.access.user_id,
            "username": self.access.username,
            "email": self.access.email,
            "role": self.access.role,
        }


@dataclass
class ResetCode:
    id: int
    user_id: int
    username: str
    code: str  # URL-encoded form, as embedded in the callback link
    email: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OtpCode:
    id: int
    user_id: int
    username: str
    otp: int
    email: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class CartRow:
    id: int
    user_id: int
    product_id: int
    quantity: int = 1
    created_at: datetime = field(default_factory=_utcnow)
