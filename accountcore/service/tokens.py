from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict

from accountcore.config import Settings, TokenPurpose
from accountcore.logging import get_logger
from accountcore.service.result import Err, ErrorKind, Ok, Result, err

logger = get_logger(__name__)

# Claims the codec owns; callers cannot override them through issue()
_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "jti", "purpose"})


class SignerMisconfigured(RuntimeError):
    """The codec cannot sign tokens with the configuration it was given."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Signs and verifies compact HS256 tokens for a single purpose.

    A codec never accepts a token minted for another purpose: the purpose is
    part of the signed claims, and each purpose has its own secret. Tokens
    are valid while ``now < exp`` where ``exp = iat + lifetime``.
    The codec holds no mutable state and is safe to share across requests.
    """

    def __init__(
        self,
        *,
        purpose: TokenPurpose,
        secret: str,
        lifetime: timedelta,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise SignerMisconfigured(f"{purpose.value} token secret is empty")
        if lifetime.total_seconds() <= 0:
            raise SignerMisconfigured(f"{purpose.value} token lifetime must be positive")
        self.purpose = purpose
        self.lifetime = lifetime
        self._secret = secret.encode()
        self._issuer = issuer
        self._audience = audience
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        purpose: TokenPurpose,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "TokenCodec":
        return cls(
            purpose=purpose,
            secret=settings.token_secret(purpose),
            lifetime=timedelta(minutes=settings.token_ttl_minutes(purpose)),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, claims: Dict[str, Any]) -> str:
        clashing = _RESERVED_CLAIMS.intersection(claims)
        if clashing:
            raise ValueError(f"reserved claims: {', '.join(sorted(clashing))}")
        issued_at = int(self._clock())
        payload = {
            **claims,
            "iss": self._issuer,
            "aud": self._audience,
            "purpose": self.purpose.value,
            "iat": issued_at,
            "exp": issued_at + int(self.lifetime.total_seconds()),
            "jti": str(uuid.uuid4()),
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> Result[Dict[str, Any]]:
        """Return the claims, or ``Err(EXPIRED)`` / ``Err(MALFORMED)``."""
        outcome = self._verify(token)
        if isinstance(outcome, Err):
            event = "token_expired" if outcome.kind == ErrorKind.EXPIRED else "token_malformed"
            logger.info(event, purpose=self.purpose.value, reason=outcome.message)
        return outcome

    def _verify(self, token: str) -> Result[Dict[str, Any]]:
        if not token or not isinstance(token, str):
            return err(ErrorKind.MALFORMED, "missing token")
        if not token.isascii():
            return err(ErrorKind.MALFORMED, "non-ascii token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return err(ErrorKind.MALFORMED, "wrong segment count")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            return err(ErrorKind.MALFORMED, "unreadable header")
        # pin the algorithm so a forged header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return err(ErrorKind.MALFORMED, "unsupported algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return err(ErrorKind.MALFORMED, "bad signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            return err(ErrorKind.MALFORMED, "unreadable payload")
        if not isinstance(payload, dict):
            return err(ErrorKind.MALFORMED, "payload is not an object")
        if payload.get("purpose") != self.purpose.value:
            return err(ErrorKind.MALFORMED, "wrong token purpose")
        if payload.get("iss") != self._issuer or payload.get("aud") != self._audience:
            return err(ErrorKind.MALFORMED, "wrong issuer or audience")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return err(ErrorKind.MALFORMED, "missing expiry")
        if self._clock() >= exp:
            return err(ErrorKind.EXPIRED, "token expired")
        return Ok(payload)
