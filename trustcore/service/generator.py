"""Cryptographically secure generation of secrets, tokens and codes.

Everything here draws from :mod:`secrets` (the OS CSPRNG). If the OS source
fails the error is raised as :class:`EntropyUnavailableError` and the calling
operation aborts; there is no fallback generator.
"""

from __future__ import annotations

import base64
import secrets
import string

from trustcore.service.errors import EntropyUnavailableError

TOTP_SECRET_BYTES = 20
INVITATION_TOKEN_BYTES = 32
WEBHOOK_SECRET_BYTES = 32

# Uppercase alphanumerics minus the easily confused 0/O, 1/I/L.
BACKUP_CODE_CHARSET = "".join(
    c for c in string.ascii_uppercase + string.digits if c not in "0O1IL"
)


def _token_bytes(byte_length: int) -> bytes:
    try:
        return secrets.token_bytes(byte_length)
    except (OSError, NotImplementedError) as exc:
        raise EntropyUnavailableError("secure random source unavailable") from exc


def random_secret(byte_length: int, encoding: str = "base32") -> str:
    """Return ``byte_length`` random bytes as unpadded base32 or urlsafe base64."""
    raw = _token_bytes(byte_length)
    if encoding == "base32":
        return base64.b32encode(raw).decode("ascii").rstrip("=")
    if encoding == "base64":
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    raise ValueError(f"unsupported encoding: {encoding}")


def random_token(byte_length: int) -> str:
    return _token_bytes(byte_length).hex()


def random_code(charset: str, length: int) -> str:
    if not charset:
        raise ValueError("charset must not be empty")
    try:
        return "".join(secrets.choice(charset) for _ in range(length))
    except (OSError, NotImplementedError) as exc:
        raise EntropyUnavailableError("secure random source unavailable") from exc


__all__ = [
    "TOTP_SECRET_BYTES",
    "INVITATION_TOKEN_BYTES",
    "WEBHOOK_SECRET_BYTES",
    "BACKUP_CODE_CHARSET",
    "random_secret",
    "random_token",
    "random_code",
]
