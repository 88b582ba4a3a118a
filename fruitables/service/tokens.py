"""HS256 token minting and verification.

Tokens are compact JWS strings signed with the process-wide secret from
:class:`~fruitables.config.Settings`. Minting performs no I/O; callers
persist the result through the credential store.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from fruitables.config import Settings
from fruitables.logging import get_logger
from fruitables.service.errors import SigningFailure

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ClaimSet = Mapping[str, str]
REQUIRED_CLAIMS = ("name", "email", "role")


class TokenPolicy(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class SignedToken:
    token: str
    expires_at: datetime
    policy: TokenPolicy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mint and verify access/refresh tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._leeway = timedelta(seconds=leeway_seconds)

    def _ttl(self, policy: TokenPolicy) -> timedelta:
        if policy is TokenPolicy.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _key(self) -> bytes:
        secret = self.settings.jwt_secret
        if not secret:
            raise SigningFailure("signing key is not configured")
        return secret.encode()

    def issue(self, claims: ClaimSet, policy: TokenPolicy) -> SignedToken:
        missing = [name for name in REQUIRED_CLAIMS if not claims.get(name)]
        if missing:
            raise ValueError(f"claim set is missing {', '.join(missing)}")
        key = self._key()
        policy = TokenPolicy(policy)
        now = self._clock()
        expires_at = now + self._ttl(policy)
        payload: dict[str, Any] = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "typ": policy.value,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return SignedToken(
            token=f"{signing_input}.{_encode_segment(signature)}",
            expires_at=expires_at,
            policy=policy,
        )

    def decode(
        self, token: str, *, expected_type: Optional[TokenPolicy] = None
    ) -> Optional[dict[str, Any]]:
        """Return the verified payload, or ``None`` for any invalid token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject anything but HS256 to avoid algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._key(), signing_input.encode(), hashlib.sha256).digest()
        )
        # Header values arrive latin-1 decoded; compare as bytes so non-ASCII fails closed
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if expected_type is not None and payload.get("typ") != TokenPolicy(expected_type).value:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (self._clock() - self._leeway).timestamp():
            return None
        return payload
