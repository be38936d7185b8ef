from __future__ import annotations

import secrets
import threading
from datetime import datetime
from typing import Callable, Optional, Union

from trustcore.config import Settings, get_settings
from trustcore.logging import get_logger
from trustcore.service.backup_codes import BackupCodeManager
from trustcore.service.email import EmailService
from trustcore.service.invitations import InvitationService
from trustcore.service.passwords import PasswordHasher
from trustcore.service.service_tokens import ServiceTokenMinter
from trustcore.service.totp import TotpEngine, TwoFactorService
from trustcore.service.webhooks import WebhookService
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import utcnow
from trustcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Composition root: builds every component from settings and wires them explicitly."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        encryption_key = self._key_material("secret_encryption_key")
        token_secret = self._key_material("service_token_secret")

        self.store: Union[MemoryStore, PostgresStore]
        try:
            self.store = (
                MemoryStore(encryption_key=encryption_key)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    encryption_key=encryption_key,
                    timeout_seconds=self.settings.storage_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout=self.settings.email_timeout_seconds,
        )
        self.totp_engine = TotpEngine(issuer=self.settings.totp_issuer, clock=self.clock)
        self.backup_codes = BackupCodeManager(
            self.store, self.hasher, count=self.settings.backup_code_count, clock=self.clock
        )
        self.two_factor = TwoFactorService(
            self.store,
            self.totp_engine,
            self.backup_codes,
            self.hasher,
            self.email,
            window_steps=self.settings.totp_window_steps,
            clock=self.clock,
        )
        self.invitations = InvitationService(
            self.store,
            self.hasher,
            self.email,
            ttl_days=self.settings.invitation_ttl_days,
            app_base_url=self.settings.app_base_url,
            password_min_length=self.settings.password_min_length,
            clock=self.clock,
        )
        self.service_tokens = ServiceTokenMinter(
            token_secret,
            issuer=self.settings.service_token_issuer,
            audience=self.settings.service_token_audience,
            ttl_seconds=self.settings.service_token_ttl_seconds,
            clock=self.clock,
        )
        self.webhooks = WebhookService(
            self.store,
            failure_threshold=self.settings.webhook_failure_threshold,
            signature_tolerance_seconds=self.settings.webhook_signature_tolerance_seconds,
            delivery_timeout_seconds=self.settings.webhook_delivery_timeout_seconds,
            clock=self.clock,
        )
        logger.info("runtime_init_completed")

    def _key_material(self, name: str) -> str:
        value = getattr(self.settings, name)
        if value:
            return value
        if not self.settings.test_mode:
            raise RuntimeError(f"{name.upper()} must be configured")
        # Ephemeral per-process key; nothing encrypted or signed with it survives a restart.
        logger.warning("ephemeral_key_generated", key_name=name)
        return secrets.token_urlsafe(48)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        runtime = Runtime(settings, clock=clock)
        return runtime
