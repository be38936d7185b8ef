from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Tuple

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustcore.logging import get_logger
from trustcore.service.errors import InvalidPasswordError, PasswordRequiredError

if TYPE_CHECKING:
    from trustcore.service.store import CredentialStore

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """One-way adaptive hashing used for passwords and backup codes."""

    algo = PASSWORD_ALGO

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def hash_with_algo(self, plaintext: str) -> Tuple[str, str]:
        return self.hash(plaintext), self.algo

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("hash_verification_error")
            return False


def check_account_password(
    store: "CredentialStore",
    hasher: PasswordHasher,
    account_id: str,
    password: Optional[str],
) -> None:
    """Re-authenticate an account by password before a sensitive change.

    Raises :class:`PasswordRequiredError` for OAuth-only accounts and
    :class:`InvalidPasswordError` on mismatch.
    """
    record = store.get_password_record(account_id)
    if not record:
        raise PasswordRequiredError(
            "cannot change two-factor settings for an account without a password"
        )
    password_hash, _algo = record
    if not password or not hasher.verify(password, password_hash):
        logger.info("password_recheck_failed", account_id=account_id)
        raise InvalidPasswordError()
