"""Unit tests for HS256 token minting and verification."""

import base64
import json
from datetime import timedelta

import pytest

from fruitables.config import Settings
from fruitables.service.errors import SigningFailure
from fruitables.service.tokens import TokenIssuer, TokenPolicy

CLAIMS = {"name": "alice", "email": "alice@example.com", "role": "user"}


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    segment += "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment))


class TestIssue:
    """Tests for TokenIssuer.issue."""

    def test_access_token_expiry_uses_access_ttl(self, issuer, clock):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        assert signed.expires_at == clock.now + timedelta(minutes=120)
        assert signed.policy is TokenPolicy.ACCESS

    def test_refresh_token_expiry_uses_refresh_ttl(self, issuer, clock):
        signed = issuer.issue(CLAIMS, TokenPolicy.REFRESH)
        assert signed.expires_at == clock.now + timedelta(minutes=125)

    def test_payload_carries_claims_and_metadata(self, issuer, clock):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        payload = _payload(signed.token)
        assert payload["name"] == "alice"
        assert payload["email"] == "alice@example.com"
        assert payload["role"] == "user"
        assert payload["typ"] == "access"
        assert payload["iat"] == int(clock.now.timestamp())
        assert payload["exp"] == int(signed.expires_at.timestamp())

    def test_each_token_is_unique(self, issuer):
        first = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        second = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        assert first.token != second.token

    def test_missing_claim_is_rejected(self, issuer):
        with pytest.raises(ValueError, match="role"):
            issuer.issue({"name": "alice", "email": "alice@example.com"}, TokenPolicy.ACCESS)

    def test_missing_key_raises_signing_failure(self, clock):
        issuer = TokenIssuer(Settings(jwt_secret=None), clock=clock)
        with pytest.raises(SigningFailure):
            issuer.issue(CLAIMS, TokenPolicy.ACCESS)

    def test_signing_failure_maps_to_server_error(self):
        exc = SigningFailure("signing key is not configured")
        assert exc.status_code == 500
        assert exc.error_code == "server_error"


class TestDecode:
    """Tests for TokenIssuer.decode."""

    def test_round_trip_returns_claims(self, issuer):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        payload = issuer.decode(signed.token, expected_type=TokenPolicy.ACCESS)
        assert payload is not None
        assert payload["email"] == "alice@example.com"

    def test_wrong_type_is_rejected(self, issuer):
        signed = issuer.issue(CLAIMS, TokenPolicy.REFRESH)
        assert issuer.decode(signed.token, expected_type=TokenPolicy.ACCESS) is None

    def test_expired_token_is_rejected(self, issuer, clock):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        clock.advance(minutes=121)
        assert issuer.decode(signed.token) is None

    def test_tampered_payload_is_rejected(self, issuer):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        header, _, signature = signed.token.split(".")
        forged = dict(_payload(signed.token), role="admin")
        forged_segment = (
            base64.urlsafe_b64encode(json.dumps(forged).encode()).decode().rstrip("=")
        )
        assert issuer.decode(f"{header}.{forged_segment}.{signature}") is None

    def test_other_secret_is_rejected(self, issuer, clock):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        other = TokenIssuer(Settings(jwt_secret="another-secret"), clock=clock)
        assert other.decode(signed.token) is None

    def test_other_audience_is_rejected(self, issuer, clock):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        other = TokenIssuer(
            Settings(jwt_secret="unit-test-secret", jwt_audience="someone-else"),
            clock=clock,
        )
        assert other.decode(signed.token) is None

    def test_non_hs256_header_is_rejected(self, issuer):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        _, payload, signature = signed.token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert issuer.decode(f"{header}.{payload}.{signature}") is None

    def test_non_ascii_signature_is_rejected(self, issuer):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        header, payload, _ = signed.token.split(".")
        assert issuer.decode(f"{header}.{payload}.sigé") is None

    def test_non_ascii_header_is_rejected(self, issuer):
        signed = issuer.issue(CLAIMS, TokenPolicy.ACCESS)
        _, payload, signature = signed.token.split(".")
        assert issuer.decode(f"éé.{payload}.{signature}") is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_token_is_rejected(self, issuer, token):
        assert issuer.decode(token) is None
