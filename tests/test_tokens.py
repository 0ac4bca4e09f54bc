"""Unit tests for HS256 access token issuing and verification."""

import base64
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from churchregistry.service.tokens import Principal, TokenIssuer

SECRET = "unit-test-signing-key-with-enough-entropy-0123456789"


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode_payload(token: str) -> dict:
    payload = token.split(".")[1]
    payload += "=" * ((4 - len(payload) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(payload))


@pytest.fixture
def issuer():
    return TokenIssuer(
        SECRET, issuer="churchregistry", audience="churchregistry-clients", ttl_minutes=15
    )


@pytest.fixture
def principal():
    return Principal(username="clerk", role="user", user_id="u-1")


class TestKeyRequirements:
    def test_short_key_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("short", issuer="i", audience="a", ttl_minutes=15)

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("", issuer="i", audience="a", ttl_minutes=15)

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer(SECRET, issuer="i", audience="a", ttl_minutes=0)


class TestIssue:
    def test_claims_carry_subject_role_and_times(self, issuer, principal):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        token = issuer.issue_access_token(principal, now=now)
        payload = _decode_payload(token)

        assert payload["sub"] == "clerk"
        assert payload["role"] == "user"
        assert payload["iat"] == int(now.timestamp())
        assert payload["exp"] == int((now + timedelta(minutes=15)).timestamp())
        assert payload["exp"] > payload["iat"]

    def test_header_is_hs256(self, issuer, principal):
        token = issuer.issue_access_token(principal)
        header = token.split(".")[0]
        header += "=" * ((4 - len(header) % 4) % 4)
        assert json.loads(base64.urlsafe_b64decode(header))["alg"] == "HS256"


class TestVerify:
    def test_round_trip(self, issuer, principal):
        claims = issuer.verify(issuer.issue_access_token(principal))
        assert claims is not None
        assert claims.subject == "clerk"
        assert claims.role == "user"
        assert claims.expires_at > claims.issued_at

    def test_expired_token_rejected(self, issuer, principal):
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        token = issuer.issue_access_token(principal, now=issued)
        assert issuer.verify(token) is None

    def test_leeway_accepts_recently_expired_token(self, principal):
        lenient = TokenIssuer(
            SECRET, issuer="i", audience="a", ttl_minutes=1, leeway_seconds=30
        )
        issued = datetime.now(timezone.utc) - timedelta(seconds=70)
        token = lenient.issue_access_token(principal, now=issued)
        assert lenient.verify(token) is not None
        assert lenient.verify(token, now=time.time() + 60) is None

    def test_tampered_payload_rejected(self, issuer, principal):
        header, _, signature = issuer.issue_access_token(principal).split(".")
        forged = _segment(
            {
                "iss": "churchregistry",
                "aud": "churchregistry-clients",
                "sub": "clerk",
                "role": "admin",
                "token_type": "access",
                "iat": int(time.time()),
                "exp": int(time.time()) + 600,
            }
        )
        assert issuer.verify(f"{header}.{forged}.{signature}") is None

    def test_other_key_rejected(self, issuer, principal):
        other = TokenIssuer(
            SECRET[::-1], issuer="churchregistry", audience="churchregistry-clients", ttl_minutes=15
        )
        assert issuer.verify(other.issue_access_token(principal)) is None

    def test_alg_none_rejected(self, issuer, principal):
        _, payload, _ = issuer.issue_access_token(principal).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        assert issuer.verify(f"{header}.{payload}.") is None

    def test_wrong_audience_rejected(self, principal):
        mobile = TokenIssuer(SECRET, issuer="churchregistry", audience="mobile", ttl_minutes=15)
        web = TokenIssuer(SECRET, issuer="churchregistry", audience="web", ttl_minutes=15)
        assert web.verify(mobile.issue_access_token(principal)) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", None])
    def test_malformed_tokens_rejected(self, issuer, garbage):
        assert issuer.verify(garbage) is None

    @pytest.mark.parametrize("signature", ["éé", "☃", "\udce9"])
    def test_non_ascii_signature_rejected(self, issuer, principal, signature):
        header, payload, _ = issuer.issue_access_token(principal).split(".")
        assert issuer.verify(f"{header}.{payload}.{signature}") is None

    def test_non_ascii_header_rejected(self, issuer, principal):
        _, payload, signature = issuer.issue_access_token(principal).split(".")
        assert issuer.verify(f"éé.{payload}.{signature}") is None
