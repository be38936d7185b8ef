from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class InvitationStatus(str, Enum):
    """Invitation states.

    ``EXPIRED`` is never written to storage; it is derived at read time from
    ``expires_at`` while the stored status is still ``PENDING``.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


STORED_INVITATION_STATUSES = frozenset(
    {InvitationStatus.PENDING, InvitationStatus.ACCEPTED, InvitationStatus.CANCELLED}
)


class WebhookStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"


@dataclass
class Organization:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    organization_id: Optional[str] = None
    role: Role = Role.MEMBER
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]


@dataclass
class TotpCredential:
    """Second-factor state for one account.

    ``secret`` without ``enabled`` is the pending-setup sub-state. ``version``
    is bumped on every write and is the guard for conditional updates.
    """

    account_id: str
    secret: Optional[str] = None
    enabled: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    last_used_step: Optional[int] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.enabled and not self.secret:
            raise ValueError("enabled TOTP credential requires a secret")

    @property
    def pending(self) -> bool:
        return bool(self.secret) and not self.enabled


@dataclass
class Invitation:
    id: str
    token: str
    email: str
    role: Role
    organization_id: str
    invited_by_id: str
    expires_at: datetime
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def effective_status(self, now: datetime) -> InvitationStatus:
        if self.status == InvitationStatus.PENDING:
            if self.is_expired(now):
                return InvitationStatus.EXPIRED
            return InvitationStatus.PENDING
        if self.status in (InvitationStatus.ACCEPTED, InvitationStatus.CANCELLED):
            return self.status
        raise ValueError(f"invalid stored invitation status: {self.status!r}")


@dataclass
class NewAccount:
    """Account to create as part of accepting an invitation."""

    email: str
    organization_id: str
    role: Role
    first_name: str
    last_name: Optional[str]
    password_hash: str
    password_algo: str
    email_verified_at: datetime

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()


@dataclass
class AccountReassignment:
    """Existing account moved into the inviting organization (restored if soft-deleted)."""

    account_id: str
    organization_id: str
    role: Role


@dataclass
class WebhookEndpoint:
    id: str
    organization_id: str
    name: str
    url: str
    events: List[str]
    signing_secret: str
    enabled: bool = True
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def status(self, failure_threshold: int) -> WebhookStatus:
        if self.failure_count >= failure_threshold:
            return WebhookStatus.FAILED
        return WebhookStatus.ACTIVE if self.enabled else WebhookStatus.INACTIVE
