from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path

from trustcore.api.schemas import (
    BackupCodesResponse,
    Envelope,
    InvitationAcceptRequest,
    InvitationAcceptResponse,
    InvitationCreateRequest,
    InvitationCreatedResponse,
    InvitationDetailsResponse,
    InvitationListResponse,
    InvitationResentResponse,
    InvitationResponse,
    PasswordConfirmRequest,
    SecondFactorResponse,
    ServiceTokenRequest,
    ServiceTokenResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    WebhookCreateRequest,
    WebhookCreatedResponse,
    WebhookDeliveryResponse,
    WebhookListResponse,
    WebhookResponse,
    WebhookSecretResponse,
    WebhookUpdateRequest,
    WhoAmIResponse,
)
from trustcore.logging import get_logger
from trustcore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCodeError,
    SecondFactorRequiredError,
)
from trustcore.service.invitations import NewAccountFields
from trustcore.service.runtime import get_runtime
from trustcore.service.service_tokens import ServiceClaims, bearer_token
from trustcore.service.webhooks import WebhookView
from trustcore.storage.models import Invitation, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def require_service_token(
    authorization: Optional[str] = Header(None),
) -> ServiceClaims:
    """Authenticate the caller by the service token minted at the edge."""
    token = bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return get_runtime().service_tokens.verify(token)


async def require_second_factor(
    principal: ServiceClaims = Depends(require_service_token),
) -> ServiceClaims:
    if not principal.second_factor_verified:
        raise ForbiddenError("second factor verification required")
    return principal


async def require_org_admin(
    principal: ServiceClaims = Depends(require_service_token),
) -> ServiceClaims:
    """Organization admin whose token carries the second factor when the account has one."""
    if not principal.organization_id or principal.role != Role.ADMIN.value:
        raise ForbiddenError("organization admin access required")
    if not principal.second_factor_verified:
        status = get_runtime().two_factor.status(principal.subject)
        if status.enabled:
            logger.info("admin_route_requires_second_factor", account_id=principal.subject)
            raise SecondFactorRequiredError()
    return principal


def _mint_for(account_id: str, *, second_factor_verified: bool) -> tuple[str, ServiceClaims]:
    runtime = get_runtime()
    account = runtime.store.get_account(account_id)
    if not account or not account.is_active:
        raise AuthenticationError("invalid credentials")
    claims = ServiceClaims(
        subject=account.id,
        email=account.email,
        name=account.name,
        role=account.role.value,
        organization_id=account.organization_id,
        second_factor_verified=second_factor_verified,
    )
    token = runtime.service_tokens.mint(claims)
    return token, runtime.service_tokens.verify(token)


def _invitation_response(invitation: Invitation, is_expired: bool) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        email=invitation.email,
        role=invitation.role.value,
        status=invitation.status.value,
        expires_at=invitation.expires_at,
        created_at=invitation.created_at,
        is_expired=is_expired,
    )


def _webhook_response(view: WebhookView) -> WebhookResponse:
    return WebhookResponse(
        id=view.id,
        name=view.name,
        url=view.url,
        events=view.events,
        status=view.status.value,
        failure_count=view.failure_count,
        last_triggered_at=view.last_triggered_at,
        created_at=view.created_at,
    )


# service tokens


@router.post("/service-tokens", response_model=Envelope, tags=["service-tokens"])
async def mint_service_token(body: ServiceTokenRequest):
    """Edge sign-in: exchange password (and second factor) for a short-lived service token."""
    runtime = get_runtime()
    account = runtime.store.get_account_by_email(body.email)
    record = runtime.store.get_password_record(account.id) if account else None
    if not account or not account.is_active or not record:
        raise AuthenticationError("invalid credentials")
    verified = await asyncio.to_thread(runtime.hasher.verify, body.password, record[0])
    if not verified:
        logger.info("edge_sign_in_rejected", account_id=account.id)
        raise AuthenticationError("invalid credentials")

    second_factor = False
    if body.code:
        status = runtime.two_factor.status(account.id)
        if status.enabled:
            result = await asyncio.to_thread(
                runtime.two_factor.verify_login, account.id, body.code
            )
            if not result.valid:
                raise InvalidCodeError()
            second_factor = True

    token, claims = _mint_for(account.id, second_factor_verified=second_factor)
    return Envelope(
        status="ok",
        data=ServiceTokenResponse(
            token=token,
            expires_at=claims.expires_at,
            second_factor_verified=claims.second_factor_verified,
        ),
    )


@router.get("/internal/whoami", response_model=Envelope, tags=["internal"])
async def whoami(principal: ServiceClaims = Depends(require_service_token)):
    return Envelope(
        status="ok",
        data=WhoAmIResponse(
            account_id=principal.subject,
            email=principal.email,
            name=principal.name,
            role=principal.role,
            organization_id=principal.organization_id,
            second_factor_verified=principal.second_factor_verified,
            expires_at=principal.expires_at,
        ),
    )


# second factor


@router.get("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor_status(principal: ServiceClaims = Depends(require_service_token)):
    status = get_runtime().two_factor.status(principal.subject)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            pending=status.pending,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor_setup(principal: ServiceClaims = Depends(require_service_token)):
    setup = get_runtime().two_factor.setup(principal.subject)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.put("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor_enable(
    body: TwoFactorCodeRequest, principal: ServiceClaims = Depends(require_service_token)
):
    result = await asyncio.to_thread(
        get_runtime().two_factor.enable, principal.subject, body.code
    )
    return Envelope(
        status="ok",
        data=BackupCodesResponse(backup_codes=result.backup_codes, warnings=result.warnings),
    )


@router.delete("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: PasswordConfirmRequest, principal: ServiceClaims = Depends(require_second_factor)
):
    result = await asyncio.to_thread(
        get_runtime().two_factor.disable, principal.subject, body.password
    )
    return Envelope(status="ok", data={"status": "disabled", "warnings": result.warnings})


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["auth"])
async def regenerate_backup_codes(
    body: PasswordConfirmRequest, principal: ServiceClaims = Depends(require_second_factor)
):
    codes = await asyncio.to_thread(
        get_runtime().backup_codes.regenerate, principal.subject, body.password
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_second_factor(
    body: TwoFactorCodeRequest, principal: ServiceClaims = Depends(require_service_token)
):
    """Step up an existing service token by presenting a second factor."""
    result = await asyncio.to_thread(
        get_runtime().two_factor.verify_login, principal.subject, body.code
    )
    if not result.valid:
        raise InvalidCodeError()
    token, _claims = _mint_for(principal.subject, second_factor_verified=True)
    return Envelope(
        status="ok",
        data={
            **SecondFactorResponse(
                valid=True,
                method=result.method,
                remaining_backup_codes=result.remaining_backup_codes,
            ).model_dump(),
            "token": token,
        },
    )


# invitations


@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: InvitationCreateRequest, principal: ServiceClaims = Depends(require_org_admin)
):
    organization_id = principal.organization_id
    created = await asyncio.to_thread(
        get_runtime().invitations.create,
        organization_id,
        body.email,
        body.role,
        principal.subject,
    )
    return Envelope(
        status="ok",
        data=InvitationCreatedResponse(
            invitation=_invitation_response(created.invitation, False),
            invite_url=created.invite_url,
            warnings=created.warnings,
        ),
    )


@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(principal: ServiceClaims = Depends(require_org_admin)):
    organization_id = principal.organization_id
    summaries = get_runtime().invitations.list_pending(organization_id, principal.subject)
    return Envelope(
        status="ok",
        data=InvitationListResponse(
            items=[_invitation_response(s.invitation, s.is_expired) for s in summaries]
        ),
    )


@router.get("/invitations/{token}", response_model=Envelope, tags=["invitations"])
async def validate_invitation(token: str = Path(..., max_length=128)):
    details = get_runtime().invitations.validate(token)
    return Envelope(
        status="ok",
        data=InvitationDetailsResponse(
            email=details.email,
            role=details.role.value,
            organization_id=details.organization_id,
            organization_name=details.organization_name,
            inviter_name=details.inviter_name,
            inviter_email=details.inviter_email,
            expires_at=details.expires_at,
            existing_user=details.existing_user,
        ),
    )


@router.post("/invitations/{token}/accept", response_model=Envelope, tags=["invitations"])
async def accept_invitation(
    body: InvitationAcceptRequest, token: str = Path(..., max_length=128)
):
    fields = None
    if body.first_name is not None or body.password is not None:
        fields = NewAccountFields(
            first_name=body.first_name or "",
            password=body.password or "",
            last_name=body.last_name,
        )
    result = await asyncio.to_thread(get_runtime().invitations.accept, token, fields)
    return Envelope(
        status="ok",
        data=InvitationAcceptResponse(account_id=result.account_id, created=result.created),
    )


@router.post("/invitations/{invitation_id}/resend", response_model=Envelope, tags=["invitations"])
async def resend_invitation(
    invitation_id: str, principal: ServiceClaims = Depends(require_org_admin)
):
    resent = await asyncio.to_thread(
        get_runtime().invitations.resend, invitation_id, principal.subject
    )
    return Envelope(
        status="ok",
        data=InvitationResentResponse(
            id=resent.invitation_id,
            invite_url=resent.invite_url,
            expires_at=resent.expires_at,
            warnings=resent.warnings,
        ),
    )


@router.delete("/invitations/{invitation_id}", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    invitation_id: str, principal: ServiceClaims = Depends(require_org_admin)
):
    get_runtime().invitations.cancel(invitation_id, principal.subject)
    return Envelope(status="ok", data={"id": invitation_id, "status": "cancelled"})


# webhooks


@router.post("/webhooks", response_model=Envelope, status_code=201, tags=["webhooks"])
async def create_webhook(
    body: WebhookCreateRequest, principal: ServiceClaims = Depends(require_org_admin)
):
    organization_id = principal.organization_id
    view, secret = get_runtime().webhooks.create_endpoint(
        organization_id, body.name, body.url, body.events
    )
    return Envelope(
        status="ok",
        data=WebhookCreatedResponse(webhook=_webhook_response(view), signing_secret=secret),
    )


@router.get("/webhooks", response_model=Envelope, tags=["webhooks"])
async def list_webhooks(principal: ServiceClaims = Depends(require_org_admin)):
    organization_id = principal.organization_id
    views = get_runtime().webhooks.list_endpoints(organization_id)
    return Envelope(
        status="ok", data=WebhookListResponse(items=[_webhook_response(v) for v in views])
    )


@router.get("/webhooks/{webhook_id}", response_model=Envelope, tags=["webhooks"])
async def get_webhook(
    webhook_id: str, principal: ServiceClaims = Depends(require_org_admin)
):
    organization_id = principal.organization_id
    view = get_runtime().webhooks.get_endpoint(organization_id, webhook_id)
    return Envelope(status="ok", data=_webhook_response(view))


@router.post("/webhooks/{webhook_id}/secret", response_model=Envelope, tags=["webhooks"])
async def regenerate_webhook_secret(
    webhook_id: str, principal: ServiceClaims = Depends(require_org_admin)
):
    organization_id = principal.organization_id
    secret = get_runtime().webhooks.regenerate_secret(organization_id, webhook_id)
    return Envelope(status="ok", data=WebhookSecretResponse(signing_secret=secret))


@router.put("/webhooks/{webhook_id}", response_model=Envelope, tags=["webhooks"])
async def update_webhook(
    webhook_id: str,
    body: WebhookUpdateRequest,
    principal: ServiceClaims = Depends(require_org_admin),
):
    view = get_runtime().webhooks.update_endpoint(
        principal.organization_id,
        webhook_id,
        name=body.name,
        url=body.url,
        events=body.events,
        enabled=body.enabled,
    )
    return Envelope(status="ok", data=_webhook_response(view))


@router.delete("/webhooks/{webhook_id}", response_model=Envelope, tags=["webhooks"])
async def delete_webhook(
    webhook_id: str, principal: ServiceClaims = Depends(require_org_admin)
):
    get_runtime().webhooks.delete_endpoint(principal.organization_id, webhook_id)
    return Envelope(status="ok", data={"id": webhook_id, "status": "deleted"})


@router.post("/webhooks/{webhook_id}/test", response_model=Envelope, tags=["webhooks"])
async def send_test_webhook(
    webhook_id: str, principal: ServiceClaims = Depends(require_org_admin)
):
    """Send a signed test event; delivery failures come back in the body, not as errors."""
    result = await asyncio.to_thread(
        get_runtime().webhooks.send_test_event, principal.organization_id, webhook_id
    )
    return Envelope(
        status="ok",
        data=WebhookDeliveryResponse(
            success=result.success, status_code=result.status_code, error=result.error
        ),
    )
