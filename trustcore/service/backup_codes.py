from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

from trustcore.logging import get_logger
from trustcore.service import generator
from trustcore.service.errors import ConflictError, NotEnabledError
from trustcore.service.passwords import PasswordHasher, check_account_password
from trustcore.service.store import CredentialStore
from trustcore.storage.models import utcnow

logger = get_logger(__name__)

CODE_LENGTH = 8
MIN_BATCH = 8
MAX_BATCH = 10
# Upper bound on compare-and-swap retries when concurrent consumers collide.
_MAX_CONSUME_ATTEMPTS = 5


@dataclass
class ConsumeResult:
    valid: bool
    remaining_count: int


class BackupCodeManager:
    """One-time recovery codes, stored only as adaptive hashes."""

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        *,
        count: int = MIN_BATCH,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not MIN_BATCH <= count <= MAX_BATCH:
            raise ValueError(f"backup code count must be between {MIN_BATCH} and {MAX_BATCH}")
        self.store = store
        self.hasher = hasher
        self.count = count
        self._clock = clock or utcnow

    def generate(self, count: Optional[int] = None) -> List[str]:
        total = self.count if count is None else count
        if not MIN_BATCH <= total <= MAX_BATCH:
            raise ValueError(f"backup code count must be between {MIN_BATCH} and {MAX_BATCH}")
        codes = []
        for _ in range(total):
            raw = generator.random_code(generator.BACKUP_CODE_CHARSET, CODE_LENGTH)
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    @staticmethod
    def normalize(code: str) -> str:
        return "".join(ch for ch in code if not ch.isspace() and ch != "-").upper()

    def hash_all(self, codes: List[str]) -> List[str]:
        return [self.hasher.hash(self.normalize(code)) for code in codes]

    def verify_and_consume(self, account_id: str, submitted_code: str) -> ConsumeResult:
        """Verify ``submitted_code`` and remove its hash on match.

        The removal is a compare-and-swap on the credential version. A lost
        race re-reads the stored set and re-verifies, so a code consumed by a
        concurrent request stops matching and a different code consumed
        concurrently is never written back.
        """
        normalized = self.normalize(submitted_code or "")
        for _ in range(_MAX_CONSUME_ATTEMPTS):
            credential = self.store.get_totp_credential(account_id)
            if not credential or not credential.enabled or not credential.backup_code_hashes:
                return ConsumeResult(valid=False, remaining_count=0)
            hashes = credential.backup_code_hashes
            if len(normalized) != CODE_LENGTH:
                return ConsumeResult(valid=False, remaining_count=len(hashes))

            matched_index: Optional[int] = None
            # Every hash is checked; there is no index to look a code up by.
            for index, digest in enumerate(hashes):
                if self.hasher.verify(normalized, digest) and matched_index is None:
                    matched_index = index
            if matched_index is None:
                logger.info("backup_code_rejected", account_id=account_id)
                return ConsumeResult(valid=False, remaining_count=len(hashes))

            remaining = hashes[:matched_index] + hashes[matched_index + 1 :]
            updated = replace(
                credential, backup_code_hashes=remaining, updated_at=self._clock()
            )
            if self.store.save_totp_credential(
                updated, expected_version=credential.version
            ):
                logger.info(
                    "backup_code_consumed",
                    account_id=account_id,
                    backup_codes_remaining=len(remaining),
                )
                return ConsumeResult(valid=True, remaining_count=len(remaining))
            logger.debug("backup_code_consume_retry", account_id=account_id)
        raise ConflictError("backup code state changed concurrently; retry")

    def regenerate(self, account_id: str, password: Optional[str]) -> List[str]:
        credential = self.store.get_totp_credential(account_id)
        if not credential or not credential.enabled:
            raise NotEnabledError("two-factor authentication is not enabled")
        check_account_password(self.store, self.hasher, account_id, password)

        codes = self.generate()
        hashes = self.hash_all(codes)
        for _ in range(_MAX_CONSUME_ATTEMPTS):
            updated = replace(credential, backup_code_hashes=hashes, updated_at=self._clock())
            if self.store.save_totp_credential(
                updated, expected_version=credential.version
            ):
                logger.info(
                    "backup_codes_regenerated",
                    account_id=account_id,
                    backup_code_count=len(codes),
                )
                return codes
            credential = self.store.get_totp_credential(account_id)
            if not credential or not credential.enabled:
                raise NotEnabledError("two-factor authentication is not enabled")
        raise ConflictError("backup code state changed concurrently; retry")
