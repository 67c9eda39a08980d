from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from schoolauth.config import Settings
from schoolauth.logging import fingerprint, get_logger

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    kind: TokenKind
    issued_at: int
    expires_at: int
    token_id: str


class TokenCodec:
    """Creates and verifies HS256-signed, time-limited access and refresh tokens.

    Each kind is signed with its own secret so that leaking one secret does
    not allow forging the other kind. Verification collapses every failure
    (bad signature, malformed payload, wrong kind, expiry) into ``None``.
    """

    def __init__(self, settings: Settings) -> None:
        if settings.jwt_secret == settings.jwt_refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self._secrets = {
            TokenKind.ACCESS: settings.jwt_secret.encode(),
            TokenKind.REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._lifetimes = {
            TokenKind.ACCESS: settings.jwt_expires_in,
            TokenKind.REFRESH: settings.jwt_refresh_expires_in,
        }

    def lifetime(self, kind: TokenKind) -> int:
        """Lifetime of ``kind`` in seconds."""
        return self._lifetimes[kind]

    def cookie_max_age(self, kind: TokenKind) -> int:
        """Cookie ``max_age`` for Starlette, which counts in seconds."""
        return self._lifetimes[kind]

    def cookie_max_age_ms(self, kind: TokenKind) -> int:
        """Cookie max-age for transports that count in milliseconds."""
        return self._lifetimes[kind] * 1000

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: TokenKind, signing_input: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, kind: TokenKind, subject_id: str, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "sub": str(subject_id),
            "iat": issued_at,
            "exp": issued_at + self._lifetimes[kind],
            "jti": uuid.uuid4().hex,
            "token_type": kind.value,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def verify(
        self, kind: TokenKind, token: Optional[str], now: Optional[float] = None
    ) -> Optional[TokenClaims]:
        payload = self._decode(kind, token)
        if payload is None:
            return None
        current = now if now is not None else time.time()
        try:
            claims = TokenClaims(
                subject_id=str(payload["sub"]),
                kind=TokenKind(payload["token_type"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                token_id=str(payload.get("jti") or ""),
            )
        except (KeyError, TypeError, ValueError):
            logger.info("token_rejected", kind=kind.value, reason="claims", fingerprint=fingerprint(token))
            return None
        if claims.kind != kind or not claims.subject_id:
            logger.info("token_rejected", kind=kind.value, reason="kind", fingerprint=fingerprint(token))
            return None
        if not current < claims.expires_at:
            logger.info("token_rejected", kind=kind.value, reason="expired", fingerprint=fingerprint(token))
            return None
        return claims

    def _decode(self, kind: TokenKind, token: Optional[str]) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        # Well-formed tokens are base64url text; anything else cannot be compared safely
        if not token.isascii():
            logger.info("token_rejected", kind=kind.value, reason="encoding", fingerprint=fingerprint(token))
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("token_rejected", kind=kind.value, reason="malformed", fingerprint=fingerprint(token))
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.info("token_rejected", kind=kind.value, reason="algorithm", fingerprint=fingerprint(token))
                return None
        except Exception:
            logger.info("token_rejected", kind=kind.value, reason="header", fingerprint=fingerprint(token))
            return None

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.info("token_rejected", kind=kind.value, reason="signature", fingerprint=fingerprint(token))
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception:
            logger.info("token_rejected", kind=kind.value, reason="payload", fingerprint=fingerprint(token))
            return None
        if not isinstance(payload, dict):
            return None
        return payload
