"""Short-lived signed assertions for edge -> internal API calls.

Tokens are compact HS256 JWTs. The minter never looks at the user's session:
``second_factor_verified`` is whatever the caller established and is copied
into the ``mfa`` claim verbatim. Verification checks the signature before any
claim is read, then issuer, audience, token type and expiry, with no
fallback path.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from trustcore.logging import get_logger
from trustcore.service import generator
from trustcore.service.errors import InvalidSignatureError, TokenExpiredError
from trustcore.storage.models import utcnow

logger = get_logger(__name__)

TOKEN_TYPE = "service"
_ALGORITHM = "HS256"
_JTI_BYTES = 16


@dataclass
class ServiceClaims:
    subject: str
    email: str
    role: str
    organization_id: Optional[str]
    second_factor_verified: bool
    name: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    token_id: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class ServiceTokenMinter:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("service token secret is required")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._clock = clock or utcnow

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        )

    def mint(self, claims: ServiceClaims) -> str:
        issued = int(self._clock().timestamp())
        payload: Dict[str, Any] = {
            "sub": claims.subject,
            "email": claims.email,
            "name": claims.name,
            "role": claims.role,
            "org": claims.organization_id,
            "mfa": bool(claims.second_factor_verified),
            "iat": issued,
            "exp": issued + self.ttl_seconds,
            "iss": self.issuer,
            "aud": self.audience,
            "typ": TOKEN_TYPE,
            "jti": generator.random_token(_JTI_BYTES),
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        logger.info(
            "service_token_minted",
            account_id=claims.subject,
            organization_id=claims.organization_id,
            mfa=payload["mfa"],
        )
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> ServiceClaims:
        if not isinstance(token, str) or not token.isascii():
            raise InvalidSignatureError()
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise InvalidSignatureError()

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("service_token_header_invalid")
            raise InvalidSignatureError()
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "service_token_algorithm_rejected",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.warning("service_token_signature_mismatch")
            raise InvalidSignatureError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise InvalidSignatureError()
        if not isinstance(payload, dict):
            raise InvalidSignatureError()
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            logger.warning("service_token_audience_rejected")
            raise InvalidSignatureError()
        if payload.get("typ") != TOKEN_TYPE:
            raise InvalidSignatureError()

        exp = payload.get("exp")
        iat = payload.get("iat")
        sub = payload.get("sub")
        if (
            not isinstance(exp, int)
            or not isinstance(iat, int)
            or not isinstance(sub, str)
            or not isinstance(payload.get("mfa"), bool)
        ):
            raise InvalidSignatureError()
        if self._clock().timestamp() >= exp:
            raise TokenExpiredError()

        return ServiceClaims(
            subject=sub,
            email=payload.get("email") or "",
            name=payload.get("name"),
            role=payload.get("role") or "",
            organization_id=payload.get("org"),
            second_factor_verified=payload["mfa"],
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=payload.get("jti"),
        )
