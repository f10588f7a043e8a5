from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional

from dormauth.logging import get_logger
from dormauth.service.errors import AuthenticationError, ExpiredTokenError

logger = get_logger(__name__)


def new_opaque_token(nbytes: int = 32) -> str:
    """Unguessable bearer token for sessions."""
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """Digest stored in place of a high-entropy bearer token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def keyed_digest(key: str, value: str) -> str:
    """HMAC-SHA256 of a low-entropy secret (reset codes, backup codes).

    Keyed with the server secret so a leaked state file cannot be brute
    forced offline.
    """
    return hmac.new(key.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class SignedTokenCodec:
    """Compact HS256 JWT encoder/decoder bound to one issuer and audience."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(0),
    ) -> None:
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        body = {"iss": self.issuer, "aud": self.audience, **payload}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(body, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self, token: str, *, now: datetime, purpose: Optional[str] = None
    ) -> dict[str, Any]:
        """Verify signature, issuer, audience, purpose and expiry.

        Raises ``ExpiredTokenError`` for a well-formed but stale token and
        ``AuthenticationError`` for anything else.
        """
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise AuthenticationError("invalid token") from None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise AuthenticationError("invalid token") from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise AuthenticationError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise AuthenticationError("invalid token")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise AuthenticationError("invalid token") from None
        if not isinstance(payload, dict):
            raise AuthenticationError("invalid token")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise AuthenticationError("invalid token")
        if purpose is not None and payload.get("purpose") != purpose:
            logger.warning("jwt_purpose_mismatch", expected=purpose, actual=payload.get("purpose"))
            raise AuthenticationError("invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("invalid token") from None
        if exp_ts <= now.timestamp() - self.leeway.total_seconds():
            raise ExpiredTokenError("token expired")
        return payload
