from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional, Union

from trustcore.logging import get_logger
from trustcore.service import generator
from trustcore.service.errors import (
    AlreadyResolvedError,
    ConflictError,
    DuplicateMemberError,
    DuplicatePendingInviteError,
    ForbiddenError,
    InvitationExpiredError,
    NotFoundError,
    ValidationError,
)
from trustcore.service.passwords import PasswordHasher
from trustcore.service.store import CredentialStore
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import (
    Account,
    AccountReassignment,
    Invitation,
    InvitationStatus,
    NewAccount,
    Role,
    new_id,
    utcnow,
)

if TYPE_CHECKING:
    from trustcore.service.email import EmailService

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class InvitationCreated:
    invitation: Invitation
    invite_url: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class InvitationDetails:
    email: str
    role: Role
    organization_id: str
    organization_name: Optional[str]
    inviter_name: Optional[str]
    inviter_email: Optional[str]
    expires_at: datetime
    existing_user: bool


@dataclass
class NewAccountFields:
    first_name: str
    password: str
    last_name: Optional[str] = None


@dataclass
class AcceptResult:
    account_id: str
    created: bool


@dataclass
class InvitationResent:
    invitation_id: str
    token: str
    invite_url: str
    expires_at: datetime
    warnings: List[str] = field(default_factory=list)


@dataclass
class InvitationSummary:
    invitation: Invitation
    is_expired: bool


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class InvitationService:
    """Invitation state machine: pending -> accepted | cancelled, with derived expiry.

    Expiry is never written; every read path compares ``now`` against
    ``expires_at`` itself, so correctness does not depend on a sweeper.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        email: Optional["EmailService"] = None,
        *,
        ttl_days: int = 7,
        app_base_url: str = "http://localhost:3000",
        password_min_length: int = 8,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.email = email
        self.ttl = timedelta(days=ttl_days)
        self.app_base_url = app_base_url.rstrip("/")
        self.password_min_length = password_min_length
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def invite_url(self, token: str) -> str:
        return f"{self.app_base_url}/invite/{token}"

    def _require_admin(self, organization_id: str, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if (
            not account
            or not account.is_active
            or account.organization_id != organization_id
            or account.role != Role.ADMIN
        ):
            raise ForbiddenError("only organization admins can manage invitations")
        return account

    def create(
        self, organization_id: str, email: str, role: Union[Role, str], invited_by: str
    ) -> InvitationCreated:
        normalized = normalize_email(email)
        if not _EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        try:
            invite_role = Role(role)
        except ValueError:
            raise ValidationError("role must be admin or member", detail={"field": "role"})

        organization = self.store.get_organization(organization_id)
        if not organization:
            raise NotFoundError("organization not found")
        inviter = self._require_admin(organization_id, invited_by)

        now = self._now()
        existing = self.store.get_account_by_email(normalized)
        if existing and existing.is_active and existing.organization_id == organization_id:
            raise DuplicateMemberError("user is already a member of this organization")
        if self.store.find_pending_invitation(organization_id, normalized, now):
            raise DuplicatePendingInviteError("an invitation has already been sent to this email")

        invitation = Invitation(
            id=new_id(),
            token=generator.random_token(generator.INVITATION_TOKEN_BYTES),
            email=normalized,
            role=invite_role,
            organization_id=organization_id,
            invited_by_id=inviter.id,
            expires_at=now + self.ttl,
            status=InvitationStatus.PENDING,
            created_at=now,
        )
        try:
            invitation = self.store.create_invitation(invitation)
        except ConstraintViolation as exc:
            raise DuplicatePendingInviteError(
                "an invitation has already been sent to this email", detail=exc.detail
            )

        url = self.invite_url(invitation.token)
        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            organization_id=organization_id,
            role=invite_role.value,
        )
        warnings = self._send_invitation(invitation, url, organization.name, inviter)
        return InvitationCreated(invitation=invitation, invite_url=url, warnings=warnings)

    def _load_usable(self, token: str, now: datetime) -> Invitation:
        invitation = self.store.get_invitation_by_token(token) if token else None
        if not invitation:
            raise NotFoundError("invitation not found")
        status = invitation.effective_status(now)
        if status == InvitationStatus.PENDING:
            return invitation
        if status == InvitationStatus.EXPIRED:
            raise InvitationExpiredError()
        if status in (InvitationStatus.ACCEPTED, InvitationStatus.CANCELLED):
            raise AlreadyResolvedError(f"invitation has already been {status.value}")
        raise ValueError(f"unhandled invitation status: {status!r}")

    def validate(self, token: str) -> InvitationDetails:
        invitation = self._load_usable(token, self._now())
        organization = self.store.get_organization(invitation.organization_id)
        inviter = self.store.get_account(invitation.invited_by_id)
        existing = self.store.get_account_by_email(invitation.email)
        return InvitationDetails(
            email=invitation.email,
            role=invitation.role,
            organization_id=invitation.organization_id,
            organization_name=organization.name if organization else None,
            inviter_name=inviter.display_name if inviter else None,
            inviter_email=inviter.email if inviter else None,
            expires_at=invitation.expires_at,
            existing_user=existing is not None,
        )

    def accept(
        self, token: str, new_account: Optional[NewAccountFields] = None
    ) -> AcceptResult:
        """Accept an invitation, creating or reassigning the invited account.

        The invitation is re-checked here; an earlier :meth:`validate` by the
        caller is not trusted. The status flip and the account change commit
        together or not at all.
        """
        now = self._now()
        invitation = self._load_usable(token, now)
        existing = self.store.get_account_by_email(invitation.email)

        mutation: Union[NewAccount, AccountReassignment]
        if existing:
            mutation = AccountReassignment(
                account_id=existing.id,
                organization_id=invitation.organization_id,
                role=invitation.role,
            )
        else:
            fields = self._check_new_account_fields(new_account)
            password_hash, password_algo = self.hasher.hash_with_algo(fields.password)
            mutation = NewAccount(
                email=invitation.email,
                organization_id=invitation.organization_id,
                role=invitation.role,
                first_name=fields.first_name.strip(),
                last_name=(fields.last_name or "").strip() or None,
                password_hash=password_hash,
                password_algo=password_algo,
                email_verified_at=now,
            )

        try:
            outcome = self.store.accept_invitation(token, now, mutation)
        except ConstraintViolation as exc:
            logger.warning(
                "invitation_accept_constraint", invitation_id=invitation.id, error=exc.message
            )
            raise ConflictError("account could not be provisioned", detail=exc.detail)

        if outcome is None:
            # The guard failed: raced with another accept, a cancel, a resend or expiry.
            logger.info("invitation_accept_conflict", invitation_id=invitation.id)
            self._load_usable(token, now)
            raise AlreadyResolvedError("invitation has already been resolved")

        accepted, account = outcome
        logger.info(
            "invitation_accepted",
            invitation_id=accepted.id,
            account_id=account.id,
            organization_id=accepted.organization_id,
            created=existing is None,
        )
        return AcceptResult(account_id=account.id, created=existing is None)

    def _check_new_account_fields(
        self, new_account: Optional[NewAccountFields]
    ) -> NewAccountFields:
        if new_account is None or not (new_account.first_name or "").strip():
            raise ValidationError(
                "first name is required for new accounts", detail={"field": "first_name"}
            )
        if len(new_account.password or "") < self.password_min_length:
            raise ValidationError(
                f"password must be at least {self.password_min_length} characters",
                detail={"field": "password"},
            )
        return new_account

    def _load_for_admin(self, invitation_id: str, requested_by: str) -> Invitation:
        invitation = self.store.get_invitation(invitation_id)
        requester = self.store.get_account(requested_by)
        if not invitation or not requester or requester.organization_id != invitation.organization_id:
            raise NotFoundError("invitation not found")
        self._require_admin(invitation.organization_id, requested_by)
        if invitation.status != InvitationStatus.PENDING:
            raise NotFoundError("invitation not found or already resolved")
        return invitation

    def cancel(self, invitation_id: str, requested_by: str) -> Invitation:
        self._load_for_admin(invitation_id, requested_by)
        cancelled = self.store.cancel_invitation(invitation_id, self._now())
        if not cancelled:
            raise NotFoundError("invitation not found or already resolved")
        logger.info("invitation_cancelled", invitation_id=invitation_id)
        return cancelled

    def resend(self, invitation_id: str, requested_by: str) -> InvitationResent:
        invitation = self._load_for_admin(invitation_id, requested_by)
        now = self._now()
        rotated = self.store.rotate_invitation_token(
            invitation_id,
            generator.random_token(generator.INVITATION_TOKEN_BYTES),
            now + self.ttl,
            now,
        )
        if not rotated:
            raise NotFoundError("invitation not found or already resolved")

        url = self.invite_url(rotated.token)
        logger.info("invitation_resent", invitation_id=invitation_id)
        organization = self.store.get_organization(invitation.organization_id)
        inviter = self.store.get_account(requested_by)
        warnings = self._send_invitation(
            rotated, url, organization.name if organization else None, inviter
        )
        return InvitationResent(
            invitation_id=rotated.id,
            token=rotated.token,
            invite_url=url,
            expires_at=rotated.expires_at,
            warnings=warnings,
        )

    def list_pending(
        self, organization_id: str, requested_by: str
    ) -> List[InvitationSummary]:
        self._require_admin(organization_id, requested_by)
        now = self._now()
        pending = sorted(
            self.store.list_pending_invitations(organization_id),
            key=lambda inv: inv.created_at,
            reverse=True,
        )
        return [InvitationSummary(invitation=inv, is_expired=inv.is_expired(now)) for inv in pending]

    def _send_invitation(
        self,
        invitation: Invitation,
        url: str,
        organization_name: Optional[str],
        inviter: Optional[Account],
    ) -> List[str]:
        if not self.email:
            return []
        sent = self.email.send(
            "invitation",
            invitation.email,
            {
                "organization_name": organization_name,
                "inviter_name": inviter.display_name if inviter else None,
                "role": invitation.role.value,
                "invite_url": url,
                "expires_in_days": self.ttl.days,
            },
        )
        if sent:
            return []
        logger.warning("invitation_email_failed", invitation_id=invitation.id)
        return ["invitation email could not be sent"]
