from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from trustcore.logging import get_logger
from trustcore.storage.crypto import SecretCipher
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import (
    Account,
    AccountReassignment,
    Invitation,
    InvitationStatus,
    NewAccount,
    Organization,
    Role,
    TotpCredential,
    WebhookEndpoint,
    new_id,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    All reads hand out copies, so a caller holding a record never sees it
    change underneath it; conditional writes compare against the stored copy
    under ``_data_lock``.
    """

    def __init__(self, *, encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.organizations: Dict[str, Organization] = {}
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.totp_credentials: Dict[str, TotpCredential] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.webhooks: Dict[str, WebhookEndpoint] = {}
        # RLock so multi-record operations can reuse single-record helpers
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(encryption_key)

    # organizations / accounts
    def create_organization(self, name: str) -> Organization:
        with self._data_lock:
            org = Organization(id=new_id(), name=name)
            self.organizations[org.id] = org
            return replace(org)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            return replace(org) if org else None

    def _find_account_by_email(self, email: str) -> Optional[Account]:
        needle = email.strip().lower()
        return next(
            (a for a in self.accounts.values() if a.email.lower() == needle), None
        )

    def create_account(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        role: Role = Role.MEMBER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Account:
        with self._data_lock:
            if self._find_account_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            name = " ".join(p for p in (first_name, last_name) if p) or None
            account = Account(
                id=new_id(),
                email=email.strip().lower(),
                organization_id=organization_id,
                role=role,
                first_name=first_name,
                last_name=last_name,
                name=name,
                email_verified_at=email_verified_at,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account_by_email(email)
            return replace(account) if account else None

    def soft_delete_account(self, account_id: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.deleted_at = now
            return True

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self.credentials.pop(account_id, None)
            self.totp_credentials.pop(account_id, None)
            return True

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # second factor
    def get_totp_credential(self, account_id: str) -> Optional[TotpCredential]:
        with self._data_lock:
            stored = self.totp_credentials.get(account_id)
            if not stored:
                return None
            return replace(
                stored,
                secret=self._cipher.decrypt(stored.secret),
                backup_code_hashes=list(stored.backup_code_hashes),
            )

    def save_totp_credential(
        self, credential: TotpCredential, *, expected_version: Optional[int]
    ) -> Optional[TotpCredential]:
        with self._data_lock:
            if credential.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for totp", {"account_id": credential.account_id}
                )
            current = self.totp_credentials.get(credential.account_id)
            if expected_version is None:
                if current is not None:
                    return None
                next_version = 1
            else:
                if current is None or current.version != expected_version:
                    return None
                next_version = expected_version + 1
            stored = replace(
                credential,
                secret=self._cipher.encrypt(credential.secret),
                backup_code_hashes=list(credential.backup_code_hashes),
                version=next_version,
            )
            self.totp_credentials[credential.account_id] = stored
            return replace(
                credential,
                backup_code_hashes=list(credential.backup_code_hashes),
                version=next_version,
            )

    def delete_totp_credential(
        self, account_id: str, *, expected_version: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            current = self.totp_credentials.get(account_id)
            if current is None:
                return False
            if expected_version is not None and current.version != expected_version:
                return False
            self.totp_credentials.pop(account_id, None)
            return True

    # invitations
    def _pending_for(
        self, organization_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        needle = email.strip().lower()
        return next(
            (
                inv
                for inv in self.invitations.values()
                if inv.organization_id == organization_id
                and inv.email == needle
                and inv.status == InvitationStatus.PENDING
                and not inv.is_expired(now)
            ),
            None,
        )

    def create_invitation(self, invitation: Invitation) -> Invitation:
        with self._data_lock:
            if any(inv.token == invitation.token for inv in self.invitations.values()):
                raise ConstraintViolation("invitation token collision", {"field": "token"})
            if self._pending_for(
                invitation.organization_id, invitation.email, invitation.created_at
            ):
                raise ConstraintViolation(
                    "pending invitation exists", {"field": "email"}
                )
            self.invitations[invitation.id] = replace(invitation)
            return replace(invitation)

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            return replace(inv) if inv else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            inv = next((i for i in self.invitations.values() if i.token == token), None)
            return replace(inv) if inv else None

    def find_pending_invitation(
        self, organization_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        with self._data_lock:
            inv = self._pending_for(organization_id, email, now)
            return replace(inv) if inv else None

    def list_pending_invitations(self, organization_id: str) -> List[Invitation]:
        with self._data_lock:
            return [
                replace(inv)
                for inv in self.invitations.values()
                if inv.organization_id == organization_id
                and inv.status == InvitationStatus.PENDING
            ]

    def rotate_invitation_token(
        self, invitation_id: str, token: str, expires_at: datetime, now: datetime
    ) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            if not inv or inv.status != InvitationStatus.PENDING:
                return None
            inv.token = token
            inv.expires_at = expires_at
            inv.updated_at = now
            return replace(inv)

    def cancel_invitation(
        self, invitation_id: str, now: datetime
    ) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            if not inv or inv.status != InvitationStatus.PENDING:
                return None
            inv.status = InvitationStatus.CANCELLED
            inv.updated_at = now
            return replace(inv)

    def accept_invitation(
        self,
        token: str,
        now: datetime,
        mutation: Union[NewAccount, AccountReassignment],
    ) -> Optional[Tuple[Invitation, Account]]:
        with self._data_lock:
            inv = next((i for i in self.invitations.values() if i.token == token), None)
            if (
                not inv
                or inv.status != InvitationStatus.PENDING
                or inv.is_expired(now)
            ):
                self.logger.debug("invitation_accept_guard_failed")
                return None

            # Account change first: if it raises, the invitation is untouched.
            if isinstance(mutation, NewAccount):
                account = self.create_account(
                    mutation.email,
                    organization_id=mutation.organization_id,
                    role=mutation.role,
                    first_name=mutation.first_name,
                    last_name=mutation.last_name,
                    email_verified_at=mutation.email_verified_at,
                )
                self.credentials[account.id] = (
                    mutation.password_hash,
                    mutation.password_algo,
                )
            elif isinstance(mutation, AccountReassignment):
                stored = self.accounts.get(mutation.account_id)
                if not stored:
                    raise ConstraintViolation(
                        "account not found", {"account_id": mutation.account_id}
                    )
                stored.organization_id = mutation.organization_id
                stored.role = mutation.role
                stored.deleted_at = None
                account = replace(stored)
            else:
                raise TypeError(f"unsupported account mutation: {type(mutation).__name__}")

            inv.status = InvitationStatus.ACCEPTED
            inv.accepted_at = now
            inv.updated_at = now
            return replace(inv), account

    # webhooks
    def _decrypted_webhook(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        return replace(
            endpoint,
            signing_secret=self._cipher.decrypt(endpoint.signing_secret),
            events=list(endpoint.events),
        )

    def create_webhook(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        with self._data_lock:
            self.webhooks[endpoint.id] = replace(
                endpoint,
                signing_secret=self._cipher.encrypt(endpoint.signing_secret),
                events=list(endpoint.events),
            )
            return self._decrypted_webhook(self.webhooks[endpoint.id])

    def get_webhook(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        with self._data_lock:
            endpoint = self.webhooks.get(webhook_id)
            return self._decrypted_webhook(endpoint) if endpoint else None

    def list_webhooks(self, organization_id: str) -> List[WebhookEndpoint]:
        with self._data_lock:
            results = [
                self._decrypted_webhook(e)
                for e in self.webhooks.values()
                if e.organization_id == organization_id
            ]
            return sorted(results, key=lambda e: e.created_at, reverse=True)

    def update_webhook_secret(self, webhook_id: str, signing_secret: str) -> bool:
        with self._data_lock:
            endpoint = self.webhooks.get(webhook_id)
            if not endpoint:
                return False
            endpoint.signing_secret = self._cipher.encrypt(signing_secret)
            return True

    def update_webhook(self, endpoint: WebhookEndpoint) -> Optional[WebhookEndpoint]:
        with self._data_lock:
            stored = self.webhooks.get(endpoint.id)
            if not stored:
                return None
            stored.name = endpoint.name
            stored.url = endpoint.url
            stored.events = list(endpoint.events)
            stored.enabled = endpoint.enabled
            stored.failure_count = endpoint.failure_count
            return self._decrypted_webhook(stored)

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._data_lock:
            return self.webhooks.pop(webhook_id, None) is not None

    def record_webhook_failure(self, webhook_id: str) -> Optional[int]:
        with self._data_lock:
            endpoint = self.webhooks.get(webhook_id)
            if not endpoint:
                return None
            endpoint.failure_count += 1
            return endpoint.failure_count

    def record_webhook_success(self, webhook_id: str, now: datetime) -> bool:
        with self._data_lock:
            endpoint = self.webhooks.get(webhook_id)
            if not endpoint:
                return False
            endpoint.failure_count = 0
            endpoint.last_triggered_at = now
            return True


__all__ = ["MemoryStore"]
