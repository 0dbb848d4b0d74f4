from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from classifieds.config import Settings
from classifieds.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(raw: str) -> str:
    """sha256 hex of an opaque token; only this form is ever stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    REAUTH = "reauth"


_REQUIRED_CLAIMS = {
    TokenKind.ACCESS: ("sub", "email", "sid"),
    TokenKind.REFRESH: ("sub", "sid"),
    TokenKind.REAUTH: ("sub", "sid"),
}


class TokenError(Exception):
    """A presented token cannot be trusted."""


class InvalidToken(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class TokenCodec:
    """HS256 JWTs for the three credential kinds.

    Access and reauth tokens share the access secret, refresh tokens use their
    own. The ``token_type`` claim keeps one kind from being replayed as
    another even where secrets are shared.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock or system_clock
        self._leeway = leeway_seconds

    def default_ttl(self, kind: TokenKind) -> int:
        if kind == TokenKind.ACCESS:
            return self.settings.jwt_access_ttl_seconds
        if kind == TokenKind.REFRESH:
            return self.settings.jwt_refresh_ttl_days * 24 * 60 * 60
        return self.settings.reauth_ttl_seconds

    def _secret(self, kind: TokenKind) -> bytes:
        if kind == TokenKind.REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_access_secret.encode()

    def sign(self, kind: TokenKind, claims: dict[str, Any], ttl: Optional[int] = None) -> str:
        missing = [c for c in _REQUIRED_CLAIMS[kind] if not claims.get(c)]
        if missing:
            raise ValueError(f"{kind.value} token missing claims: {', '.join(missing)}")
        issued_at = int(self._clock().timestamp())
        lifetime = ttl if ttl is not None else self.default_ttl(kind)
        payload = {
            **claims,
            "token_type": kind.value,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": issued_at,
            "exp": issued_at + int(lifetime),
            "jti": secrets.token_hex(16),
        }
        return self._encode_jwt(payload, self._secret(kind))

    def verify(self, kind: TokenKind, token: Optional[str]) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidToken("token missing")
        payload = self._decode_jwt(token, self._secret(kind))
        if payload.get("token_type") != kind.value:
            raise InvalidToken("token kind mismatch")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidToken("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidToken("audience mismatch")
        for claim in _REQUIRED_CLAIMS[kind]:
            if not payload.get(claim):
                raise InvalidToken(f"missing claim {claim}")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("missing exp")
        if exp_ts <= self._clock().timestamp() - self._leeway:
            raise ExpiredToken("token expired")
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("malformed token")

        # Pin the algorithm before looking at the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        # compare_digest rejects non-ASCII str, so compare bytes
        presented_sig = sig_b64.encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected_sig.encode("ascii"), presented_sig):
            raise InvalidToken("bad signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("malformed payload")
        if not isinstance(payload, dict):
            raise InvalidToken("malformed payload")
        return payload
