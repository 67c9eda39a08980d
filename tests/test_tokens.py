"""Unit tests for the signed token codec."""

import base64
import hashlib
import hmac
import json

import pytest

from schoolauth.config import Settings
from schoolauth.service.tokens import TokenCodec, TokenKind

NOW = 1_700_000_000


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _unb64(segment: str) -> dict:
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


class TestIssueAndVerify:
    def test_access_token_round_trip(self, codec):
        token = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)
        claims = codec.verify(TokenKind.ACCESS, token, now=NOW + 1)

        assert claims is not None
        assert claims.subject_id == "user-1"
        assert claims.kind is TokenKind.ACCESS
        assert claims.issued_at == NOW
        assert claims.expires_at == NOW + 900

    def test_refresh_token_uses_refresh_lifetime(self, codec):
        token = codec.issue(TokenKind.REFRESH, "user-1", now=NOW)
        claims = codec.verify(TokenKind.REFRESH, token, now=NOW)

        assert claims.expires_at == NOW + 604800

    def test_tokens_minted_in_same_second_differ(self, codec):
        first = codec.issue(TokenKind.REFRESH, "user-1", now=NOW)
        second = codec.issue(TokenKind.REFRESH, "user-1", now=NOW)

        assert first != second

    def test_expired_token_rejected(self, codec):
        token = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)

        assert codec.verify(TokenKind.ACCESS, token, now=NOW + 899) is not None
        assert codec.verify(TokenKind.ACCESS, token, now=NOW + 900) is None
        assert codec.verify(TokenKind.ACCESS, token, now=NOW + 10_000) is None

    def test_kinds_are_not_interchangeable(self, codec):
        access = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)
        refresh = codec.issue(TokenKind.REFRESH, "user-1", now=NOW)

        assert codec.verify(TokenKind.REFRESH, access, now=NOW) is None
        assert codec.verify(TokenKind.ACCESS, refresh, now=NOW) is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_malformed_tokens_rejected(self, codec, token):
        assert codec.verify(TokenKind.ACCESS, token, now=NOW) is None


class TestTampering:
    def test_tampered_payload_byte_rejected(self, codec):
        token = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)
        header, payload, signature = token.split(".")
        flipped = payload[:5] + ("A" if payload[5] != "A" else "B") + payload[6:]

        assert codec.verify(TokenKind.ACCESS, f"{header}.{flipped}.{signature}", now=NOW) is None

    def test_swapped_subject_rejected(self, codec):
        token = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)
        header, payload, signature = token.split(".")
        claims = _unb64(payload)
        claims["sub"] = "user-2"

        assert codec.verify(TokenKind.ACCESS, f"{header}.{_b64(claims)}.{signature}", now=NOW) is None

    def test_alg_none_rejected(self, codec):
        token = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)
        _, payload, _ = token.split(".")
        forged_header = _b64({"alg": "none", "typ": "JWT"})

        assert codec.verify(TokenKind.ACCESS, f"{forged_header}.{payload}.", now=NOW) is None

    def test_token_signed_with_other_secret_rejected(self, codec, settings):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64(
            {"sub": "user-1", "iat": NOW, "exp": NOW + 900, "jti": "x", "token_type": "access"}
        )
        signing_input = f"{header}.{payload}"
        # Signed with the refresh secret but presented as an access token
        digest = hmac.new(
            settings.jwt_refresh_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        signature = base64.urlsafe_b64encode(digest).decode().rstrip("=")

        assert codec.verify(TokenKind.ACCESS, f"{signing_input}.{signature}", now=NOW) is None

    @pytest.mark.parametrize("segment", ["signature", "payload", "header"])
    def test_non_ascii_token_rejected(self, codec, segment):
        token = codec.issue(TokenKind.ACCESS, "user-1", now=NOW)
        parts = dict(zip(["header", "payload", "signature"], token.split(".")))
        parts[segment] = parts[segment][:-2] + "éé"

        forged = f"{parts['header']}.{parts['payload']}.{parts['signature']}"

        assert codec.verify(TokenKind.ACCESS, forged, now=NOW) is None
        assert codec.verify(TokenKind.REFRESH, forged, now=NOW) is None


class TestLifetimes:
    def test_cookie_max_age_is_seconds(self, codec):
        assert codec.cookie_max_age(TokenKind.ACCESS) == 900
        assert codec.cookie_max_age(TokenKind.REFRESH) == 604800

    def test_cookie_max_age_ms_is_milliseconds(self, codec):
        assert codec.cookie_max_age_ms(TokenKind.ACCESS) == 900_000

    def test_custom_lifetimes(self):
        settings = Settings(
            jwt_secret="a" * 32,
            jwt_refresh_secret="b" * 32,
            jwt_expires_in=60,
            jwt_refresh_expires_in=120,
        )
        codec = TokenCodec(settings)

        assert codec.lifetime(TokenKind.ACCESS) == 60
        assert codec.lifetime(TokenKind.REFRESH) == 120
