from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional
from urllib.parse import quote, urlencode

from trustcore.logging import get_logger
from trustcore.service import generator
from trustcore.service.errors import (
    AlreadyEnabledError,
    ConflictError,
    InvalidCodeError,
    NotEnabledError,
    NotFoundError,
    NotInitializedError,
)
from trustcore.service.passwords import PasswordHasher, check_account_password
from trustcore.service.store import CredentialStore
from trustcore.storage.models import Account, TotpCredential, utcnow

if TYPE_CHECKING:
    from trustcore.service.backup_codes import BackupCodeManager
    from trustcore.service.email import EmailService

logger = get_logger(__name__)

_SUPPORTED_ALGORITHMS = {"SHA1": hashlib.sha1, "SHA256": hashlib.sha256, "SHA512": hashlib.sha512}


class TotpEngine:
    """RFC 6238 time-step codes with bounded clock-skew tolerance."""

    def __init__(
        self,
        *,
        interval: int = 30,
        digits: int = 6,
        algorithm: str = "SHA1",
        issuer: str = "trustcore",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        algo = algorithm.upper()
        if algo not in _SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported TOTP algorithm: {algorithm}")
        if interval <= 0 or digits not in (6, 7, 8):
            raise ValueError("invalid TOTP interval or digit count")
        self.interval = interval
        self.digits = digits
        self.algorithm = algo
        self.issuer = issuer
        self._digest = _SUPPORTED_ALGORITHMS[algo]
        self._clock = clock or utcnow

    def generate_secret(self) -> str:
        return generator.random_secret(generator.TOTP_SECRET_BYTES, "base32")

    def time_step(self, at: Optional[datetime] = None) -> int:
        moment = at or self._clock()
        return int(moment.timestamp() // self.interval)

    def generate_code(self, secret: str, at: Optional[datetime] = None) -> str:
        key = _decode_secret(secret)
        if key is None:
            raise ValueError("TOTP secret is not valid base32")
        return self._code_for_step(key, self.time_step(at))

    def matching_step(
        self,
        code: str,
        secret: str,
        window_steps: int = 1,
        at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Return the time step ``code`` is valid for, or ``None``.

        Every step in the window is computed and compared so the running time
        does not depend on which step (if any) matched.
        """
        if not isinstance(code, str) or not isinstance(secret, str):
            return None
        candidate = "".join(code.split())
        if (
            len(candidate) != self.digits
            or not candidate.isascii()
            or not candidate.isdigit()
        ):
            return None
        key = _decode_secret(secret)
        if key is None:
            return None
        current = self.time_step(at)
        matched: Optional[int] = None
        for offset in range(-window_steps, window_steps + 1):
            step = current + offset
            expected = self._code_for_step(key, step)
            # Constant-time comparison; no early exit on match.
            if hmac.compare_digest(expected, candidate) and matched is None:
                matched = step
        return matched

    def verify(
        self,
        code: str,
        secret: str,
        window_steps: int = 1,
        at: Optional[datetime] = None,
    ) -> bool:
        return self.matching_step(code, secret, window_steps, at) is not None

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}", safe="@:")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": self.algorithm,
                "digits": self.digits,
                "period": self.interval,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    def _code_for_step(self, key: bytes, step: int) -> str:
        counter = step.to_bytes(8, "big")
        digest = hmac.new(key, counter, self._digest).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = "".join(secret.split()).upper()
    if not cleaned:
        return None
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None


@dataclass
class TwoFactorStatus:
    enabled: bool
    pending: bool
    backup_codes_remaining: int


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str


@dataclass
class EnableResult:
    success: bool
    backup_codes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class DisableResult:
    success: bool
    warnings: List[str] = field(default_factory=list)


@dataclass
class SecondFactorResult:
    valid: bool
    method: Optional[str] = None
    remaining_backup_codes: int = 0


class TwoFactorService:
    """Setup, enablement, removal and sign-in checks for the TOTP second factor."""

    def __init__(
        self,
        store: CredentialStore,
        engine: TotpEngine,
        backup_codes: "BackupCodeManager",
        hasher: PasswordHasher,
        email: Optional["EmailService"] = None,
        *,
        window_steps: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.backup_codes = backup_codes
        self.hasher = hasher
        self.email = email
        self.window_steps = window_steps
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account or not account.is_active:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    def status(self, account_id: str) -> TwoFactorStatus:
        self._require_account(account_id)
        credential = self.store.get_totp_credential(account_id)
        if not credential:
            return TwoFactorStatus(enabled=False, pending=False, backup_codes_remaining=0)
        return TwoFactorStatus(
            enabled=credential.enabled,
            pending=credential.pending,
            backup_codes_remaining=len(credential.backup_code_hashes)
            if credential.enabled
            else 0,
        )

    def setup(self, account_id: str) -> TwoFactorSetup:
        account = self._require_account(account_id)
        credential = self.store.get_totp_credential(account_id)
        if credential and credential.enabled:
            raise AlreadyEnabledError("two-factor authentication is already enabled")
        if credential and credential.pending:
            logger.info("two_factor_setup_resumed", account_id=account_id)
            return self._setup_payload(account, credential.secret)

        secret = self.engine.generate_secret()
        pending = TotpCredential(account_id=account_id, secret=secret, enabled=False)
        saved = self.store.save_totp_credential(pending, expected_version=None)
        if saved is None:
            # Lost an insert race with a concurrent setup; hand back the winner's secret.
            current = self.store.get_totp_credential(account_id)
            if current and current.enabled:
                raise AlreadyEnabledError("two-factor authentication is already enabled")
            if not current or not current.secret:
                raise ConflictError("two-factor state changed concurrently; retry")
            return self._setup_payload(account, current.secret)
        logger.info("two_factor_setup_started", account_id=account_id)
        return self._setup_payload(account, secret)

    def _setup_payload(self, account: Account, secret: str) -> TwoFactorSetup:
        return TwoFactorSetup(
            secret=secret,
            otpauth_uri=self.engine.provisioning_uri(secret, account.email),
        )

    def enable(self, account_id: str, submitted_code: str) -> EnableResult:
        account = self._require_account(account_id)
        credential = self.store.get_totp_credential(account_id)
        if credential and credential.enabled:
            raise AlreadyEnabledError("two-factor authentication is already enabled")
        if not credential or not credential.secret:
            raise NotInitializedError("two-factor setup not initiated")

        step = self.engine.matching_step(
            submitted_code, credential.secret, self.window_steps, self._now()
        )
        if step is None:
            logger.info("two_factor_enable_rejected", account_id=account_id)
            raise InvalidCodeError()

        codes = self.backup_codes.generate()
        enabled = replace(
            credential,
            enabled=True,
            backup_code_hashes=self.backup_codes.hash_all(codes),
            last_used_step=step,
            updated_at=self._now(),
        )
        saved = self.store.save_totp_credential(
            enabled, expected_version=credential.version
        )
        if saved is None:
            current = self.store.get_totp_credential(account_id)
            if current and current.enabled:
                raise AlreadyEnabledError("two-factor authentication is already enabled")
            raise ConflictError("two-factor state changed concurrently; retry")

        logger.info(
            "two_factor_enabled", account_id=account_id, backup_code_count=len(codes)
        )
        warnings = self._notify("two_factor_enabled", account)
        return EnableResult(success=True, backup_codes=codes, warnings=warnings)

    def disable(self, account_id: str, password: Optional[str]) -> DisableResult:
        account = self._require_account(account_id)
        credential = self.store.get_totp_credential(account_id)
        if not credential or not credential.enabled:
            raise NotEnabledError("two-factor authentication is not enabled")
        check_account_password(self.store, self.hasher, account_id, password)

        if not self.store.delete_totp_credential(
            account_id, expected_version=credential.version
        ):
            current = self.store.get_totp_credential(account_id)
            if not current or not current.enabled:
                raise NotEnabledError("two-factor authentication is not enabled")
            raise ConflictError("two-factor state changed concurrently; retry")

        logger.info("two_factor_disabled", account_id=account_id)
        warnings = self._notify("two_factor_disabled", account)
        return DisableResult(success=True, warnings=warnings)

    def verify_login(self, account_id: str, code: str) -> SecondFactorResult:
        """Check a sign-in second factor: a fresh TOTP code or one backup code.

        A TOTP step at or before the last accepted one is rejected so an
        observed code cannot be replayed inside its validity window.
        """
        self._require_account(account_id)
        credential = self.store.get_totp_credential(account_id)
        if not credential or not credential.enabled:
            raise NotEnabledError("two-factor authentication is not enabled")

        step = self.engine.matching_step(
            code, credential.secret or "", self.window_steps, self._now()
        )
        if step is not None:
            if self._record_step(credential, step):
                logger.info("second_factor_verified", account_id=account_id, method="totp")
                return SecondFactorResult(
                    valid=True,
                    method="totp",
                    remaining_backup_codes=len(credential.backup_code_hashes),
                )
            logger.warning("totp_replay_rejected", account_id=account_id)
            return SecondFactorResult(
                valid=False, remaining_backup_codes=len(credential.backup_code_hashes)
            )

        consumed = self.backup_codes.verify_and_consume(account_id, code)
        if consumed.valid:
            logger.info(
                "second_factor_verified",
                account_id=account_id,
                method="backup_code",
                backup_codes_remaining=consumed.remaining_count,
            )
            return SecondFactorResult(
                valid=True,
                method="backup_code",
                remaining_backup_codes=consumed.remaining_count,
            )
        logger.info("second_factor_rejected", account_id=account_id)
        return SecondFactorResult(
            valid=False, remaining_backup_codes=consumed.remaining_count
        )

    def _record_step(self, credential: TotpCredential, step: int) -> bool:
        current = credential
        for _ in range(3):
            if current.last_used_step is not None and step <= current.last_used_step:
                return False
            updated = replace(current, last_used_step=step, updated_at=self._now())
            if self.store.save_totp_credential(
                updated, expected_version=current.version
            ):
                return True
            fresh = self.store.get_totp_credential(current.account_id)
            if not fresh or not fresh.enabled:
                return False
            current = fresh
        return False

    def _notify(self, template: str, account: Account) -> List[str]:
        if not self.email:
            return []
        sent = self.email.send(
            template,
            account.email,
            {"name": account.display_name, "occurred_at": self._now().isoformat()},
        )
        if sent:
            return []
        logger.warning("notification_email_failed", template=template, account_id=account.id)
        return [f"{template} notification email could not be sent"]
