from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from trustcore.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "expired",
    "server_error",
    # second factor
    "invalid_code",
    "not_initialized",
    "already_enabled",
    "not_enabled",
    "password_required",
    "invalid_password",
    "second_factor_required",
    # invitations
    "already_resolved",
    "duplicate_member",
    "duplicate_invite",
    # service tokens
    "invalid_signature",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# service tokens


class ServiceTokenRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    code: Optional[str] = Field(
        None, max_length=16, description="TOTP or backup code when two-factor is enabled"
    )


class ServiceTokenResponse(BaseModel):
    token: str
    token_type: Literal["bearer"] = "bearer"
    expires_at: datetime
    second_factor_verified: bool


class WhoAmIResponse(BaseModel):
    account_id: str
    email: str
    name: Optional[str] = None
    role: str
    organization_id: Optional[str] = None
    second_factor_verified: bool
    expires_at: Optional[datetime] = None


# second factor


class TwoFactorStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether two-factor is currently enabled")
    pending: bool = Field(..., description="Whether a secret awaits confirmation")
    backup_codes_remaining: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    warnings: List[str] = Field(default_factory=list)


class SecondFactorResponse(BaseModel):
    valid: bool
    method: Optional[str] = None
    remaining_backup_codes: int


# invitations


class InvitationCreateRequest(BaseModel):
    email: str = Field(..., max_length=320)
    role: Literal["admin", "member"] = "member"


class InvitationResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    expires_at: datetime
    created_at: datetime
    is_expired: bool


class InvitationCreatedResponse(BaseModel):
    invitation: InvitationResponse
    invite_url: str
    warnings: List[str] = Field(default_factory=list)


class InvitationListResponse(BaseModel):
    items: List[InvitationResponse]


class InvitationDetailsResponse(BaseModel):
    email: str
    role: str
    organization_id: str
    organization_name: Optional[str] = None
    inviter_name: Optional[str] = None
    inviter_email: Optional[str] = None
    expires_at: datetime
    existing_user: bool


class InvitationAcceptRequest(BaseModel):
    first_name: Optional[str] = Field(None, max_length=128)
    last_name: Optional[str] = Field(None, max_length=128)
    password: Optional[str] = Field(None, max_length=1024)


class InvitationAcceptResponse(BaseModel):
    account_id: str
    created: bool


class InvitationResentResponse(BaseModel):
    id: str
    invite_url: str
    expires_at: datetime
    warnings: List[str] = Field(default_factory=list)


# webhooks


class WebhookCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    url: str = Field(..., max_length=2048)
    events: List[str] = Field(..., min_length=1, max_length=64)


class WebhookResponse(BaseModel):
    id: str
    name: str
    url: str
    events: List[str]
    status: str
    failure_count: int
    last_triggered_at: Optional[datetime] = None
    created_at: datetime


class WebhookCreatedResponse(BaseModel):
    webhook: WebhookResponse
    signing_secret: str = Field(..., description="Shown once; store it now")


class WebhookListResponse(BaseModel):
    items: List[WebhookResponse]


class WebhookSecretResponse(BaseModel):
    signing_secret: str


class WebhookUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=128)
    url: Optional[str] = Field(None, max_length=2048)
    events: Optional[List[str]] = Field(None, min_length=1, max_length=64)
    enabled: Optional[bool] = None


class WebhookDeliveryResponse(BaseModel):
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
