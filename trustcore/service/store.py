from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple, Union

from trustcore.storage.models import (
    Account,
    AccountReassignment,
    Invitation,
    NewAccount,
    Organization,
    Role,
    TotpCredential,
    WebhookEndpoint,
)


class CredentialStore(Protocol):
    """Persistence contract shared by the in-memory and Postgres stores.

    Methods documented as conditional return ``None`` (or ``False``) when the
    guard does not hold instead of raising; callers decide whether that is a
    conflict or a retry.
    """

    # organizations / accounts
    def create_organization(self, name: str) -> Organization: ...

    def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    def create_account(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        role: Role = Role.MEMBER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def soft_delete_account(self, account_id: str, now: datetime) -> bool: ...

    def delete_account(self, account_id: str) -> bool: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]: ...

    # second factor
    def get_totp_credential(self, account_id: str) -> Optional[TotpCredential]: ...

    def save_totp_credential(
        self, credential: TotpCredential, *, expected_version: Optional[int]
    ) -> Optional[TotpCredential]:
        """Insert (``expected_version=None``) or compare-and-swap update."""
        ...

    def delete_totp_credential(
        self, account_id: str, *, expected_version: Optional[int] = None
    ) -> bool: ...

    # invitations
    def create_invitation(self, invitation: Invitation) -> Invitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]: ...

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]: ...

    def find_pending_invitation(
        self, organization_id: str, email: str, now: datetime
    ) -> Optional[Invitation]: ...

    def list_pending_invitations(self, organization_id: str) -> List[Invitation]: ...

    def rotate_invitation_token(
        self, invitation_id: str, token: str, expires_at: datetime, now: datetime
    ) -> Optional[Invitation]: ...

    def cancel_invitation(
        self, invitation_id: str, now: datetime
    ) -> Optional[Invitation]: ...

    def accept_invitation(
        self,
        token: str,
        now: datetime,
        mutation: Union[NewAccount, AccountReassignment],
    ) -> Optional[Tuple[Invitation, Account]]:
        """Flip a pending, unexpired invitation and apply ``mutation`` atomically."""
        ...

    # webhooks
    def create_webhook(self, endpoint: WebhookEndpoint) -> WebhookEndpoint: ...

    def get_webhook(self, webhook_id: str) -> Optional[WebhookEndpoint]: ...

    def list_webhooks(self, organization_id: str) -> List[WebhookEndpoint]: ...

    def update_webhook_secret(self, webhook_id: str, signing_secret: str) -> bool: ...

    def record_webhook_failure(self, webhook_id: str) -> Optional[int]: ...

    def update_webhook(self, endpoint: WebhookEndpoint) -> Optional[WebhookEndpoint]:
        """Persist name, url, events, enabled and failure_count. Secret is untouched."""
        ...

    def delete_webhook(self, webhook_id: str) -> bool: ...

    def record_webhook_success(self, webhook_id: str, now: datetime) -> bool: ...
