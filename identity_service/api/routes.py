"""HTTP route definitions for the identity service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, EmailStr, Field

from ..domain.account import Account, Membership, SecurityEvent, TenantMembership
from ..domain.contracts import (
    ProfileUpdate,
    RegisterInput,
    RequestContext,
    SessionGrant,
    TwoFactorChallenge,
)
from ..domain.service import IdentityService
from ..domain.tenants import TenantService
from ..security.tokens import SessionClaims
from .dependencies import (
    current_session,
    get_identity_service,
    get_tenant_service,
    public_request,
    registration_request,
    request_context,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


class AccountResponse(BaseModel):
    """Public projection of an `Account`; never carries credentials or 2FA secrets."""

    account_id: str
    email: EmailStr
    display_name: str
    avatar_url: str | None = None
    role: str
    two_factor_enabled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        return cls(
            account_id=account.account_id,
            email=account.email,
            display_name=account.display_name,
            avatar_url=account.avatar_url,
            role=account.role,
            two_factor_enabled=account.two_factor_enabled,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class TenantResponse(BaseModel):
    """A company the caller belongs to, with the caller's membership in it."""

    tenant_id: str
    name: str
    slug: str
    plan: str
    role: str
    status: str
    joined_at: datetime

    @classmethod
    def from_domain(cls, item: TenantMembership) -> "TenantResponse":
        return cls(
            tenant_id=item.tenant.tenant_id,
            name=item.tenant.name,
            slug=item.tenant.slug,
            plan=item.tenant.plan,
            role=item.role,
            status=item.status,
            joined_at=item.membership.joined_at,
        )


class AuthenticatedResponse(BaseModel):
    status: Literal["authenticated"] = "authenticated"
    token: str
    token_type: str = "bearer"
    expires_in: int
    tenant_id: str
    user: AccountResponse


class TwoFactorChallengeResponse(BaseModel):
    status: Literal["two_factor_required"] = "two_factor_required"
    email: EmailStr
    challenge_token: str


class RegisterResponse(AuthenticatedResponse):
    tenant: TenantResponse


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=72)
    display_name: str = Field(..., min_length=1, max_length=100)
    tenant_name: str | None = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class TwoFactorLoginRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=32)
    challenge_token: str


class FederatedSessionRequest(BaseModel):
    """Exchange an identity-provider access token for a session."""

    access_token: str = Field(..., min_length=1)
    tenant_name: str | None = Field(default=None, max_length=100)


class ProfileUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=100)
    avatar_url: str | None = Field(default=None, max_length=2048)


class ChangePasswordRequest(BaseModel):
    current_password: str | None = Field(default=None, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=72)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class PasswordResetAcceptedResponse(BaseModel):
    status: Literal["accepted"] = "accepted"
    message: str = "if the email belongs to an account, a reset link has been sent"


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=72)
    code: str | None = Field(default=None, max_length=32)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class TwoFactorSetupResponse(BaseModel):
    """Provisioning material for an authenticator app; the secret is only inside the URI."""

    provisioning_uri: str
    qr_code: str


class RecoveryCodesResponse(BaseModel):
    recovery_codes: list[str]


class SwitchTenantRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)


class TenantListResponse(BaseModel):
    items: list[TenantResponse]
    active_tenant_id: str


class InvitationListResponse(BaseModel):
    items: list[TenantResponse]


class CreateCompanyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class InviteMemberRequest(BaseModel):
    email: EmailStr
    role: Literal["admin", "member", "viewer"] = "member"


class MembershipResponse(BaseModel):
    account_id: str
    tenant_id: str
    role: str
    status: str
    joined_at: datetime

    @classmethod
    def from_domain(cls, membership: Membership) -> "MembershipResponse":
        return cls(
            account_id=membership.account_id,
            tenant_id=membership.tenant_id,
            role=membership.role,
            status=membership.status,
            joined_at=membership.joined_at,
        )


class SecurityEventEntry(BaseModel):
    event_id: int
    event_type: str
    success: bool
    source_address: str | None
    user_agent: str | None
    detail: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_domain(cls, event: SecurityEvent) -> "SecurityEventEntry":
        return cls(
            event_id=event.event_id,
            event_type=event.event_type,
            success=event.success,
            source_address=event.source_address,
            user_agent=event.user_agent,
            detail=event.detail or {},
            created_at=event.created_at,
        )


class SecurityEventListResponse(BaseModel):
    items: list[SecurityEventEntry]
    next_cursor: str | None = None


def _session_body(grant: SessionGrant) -> AuthenticatedResponse:
    return AuthenticatedResponse(
        token=grant.token,
        expires_in=grant.expires_in,
        tenant_id=grant.tenant_id,
        user=AccountResponse.from_domain(grant.account),
    )


def _login_body(outcome: SessionGrant | TwoFactorChallenge) -> AuthenticatedResponse | TwoFactorChallengeResponse:
    if isinstance(outcome, TwoFactorChallenge):
        return TwoFactorChallengeResponse(email=outcome.email, challenge_token=outcome.challenge_token)
    return _session_body(outcome)


# ----------------------------------------------------------------------
# Public routes
# ----------------------------------------------------------------------


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    context: RequestContext = Depends(registration_request),
    service: IdentityService = Depends(get_identity_service),
) -> RegisterResponse:
    """Create a password account, its default company, and a session."""
    result = service.register(
        RegisterInput(
            email=payload.email,
            password=payload.password,
            display_name=payload.display_name,
            tenant_name=payload.tenant_name,
        ),
        context,
    )
    grant = result.session
    return RegisterResponse(
        token=grant.token,
        expires_in=grant.expires_in,
        tenant_id=grant.tenant_id,
        user=AccountResponse.from_domain(grant.account),
        tenant=TenantResponse.from_domain(result.membership),
    )


@router.post("/login", response_model=AuthenticatedResponse | TwoFactorChallengeResponse)
def login(
    payload: LoginRequest,
    context: RequestContext = Depends(public_request),
    service: IdentityService = Depends(get_identity_service),
) -> AuthenticatedResponse | TwoFactorChallengeResponse:
    """Password login; answers with a 2FA challenge when the account has 2FA enabled."""
    return _login_body(service.login(payload.email, payload.password, context))


@router.post("/2fa/verify", response_model=AuthenticatedResponse)
def verify_two_factor(
    payload: TwoFactorLoginRequest,
    context: RequestContext = Depends(public_request),
    service: IdentityService = Depends(get_identity_service),
) -> AuthenticatedResponse:
    grant = service.verify_two_factor_login(payload.email, payload.code, payload.challenge_token, context)
    return _session_body(grant)


@router.post("/oauth/session", response_model=AuthenticatedResponse | TwoFactorChallengeResponse)
def exchange_federated_session(
    payload: FederatedSessionRequest,
    context: RequestContext = Depends(public_request),
    service: IdentityService = Depends(get_identity_service),
) -> AuthenticatedResponse | TwoFactorChallengeResponse:
    """Exchange an identity-provider token; same response shape as password login."""
    return _login_body(service.exchange_federated_session(payload.access_token, payload.tenant_name, context))


@router.post(
    "/forgot-password", response_model=PasswordResetAcceptedResponse, status_code=status.HTTP_202_ACCEPTED
)
def forgot_password(
    payload: ForgotPasswordRequest,
    context: RequestContext = Depends(public_request),
    service: IdentityService = Depends(get_identity_service),
) -> PasswordResetAcceptedResponse:
    """Send a reset link; the response is identical whether or not the account exists."""
    service.request_password_reset(payload.email, context)
    return PasswordResetAcceptedResponse()


@router.post("/reset-password", status_code=status.HTTP_204_NO_CONTENT)
def reset_password(
    payload: ResetPasswordRequest,
    context: RequestContext = Depends(public_request),
    service: IdentityService = Depends(get_identity_service),
) -> Response:
    service.reset_password(payload.token, payload.new_password, payload.code, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Authenticated routes
# ----------------------------------------------------------------------


@router.get("/me", response_model=AccountResponse)
def me(
    claims: SessionClaims = Depends(current_session),
    service: IdentityService = Depends(get_identity_service),
) -> AccountResponse:
    return AccountResponse.from_domain(service.get_profile(claims.subject_id))


@router.put("/profile", response_model=AccountResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    claims: SessionClaims = Depends(current_session),
    context: RequestContext = Depends(request_context),
    service: IdentityService = Depends(get_identity_service),
) -> AccountResponse:
    account = service.update_profile(
        claims.subject_id,
        ProfileUpdate(display_name=payload.display_name, avatar_url=payload.avatar_url),
        context,
    )
    return AccountResponse.from_domain(account)


@router.post("/change-password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(
    payload: ChangePasswordRequest,
    claims: SessionClaims = Depends(current_session),
    context: RequestContext = Depends(request_context),
    service: IdentityService = Depends(get_identity_service),
) -> Response:
    service.change_password(claims.subject_id, payload.current_password or "", payload.new_password, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    claims: SessionClaims = Depends(current_session),
    context: RequestContext = Depends(request_context),
    service: IdentityService = Depends(get_identity_service),
) -> Response:
    """Record the logout; the client discards its token."""
    service.logout(claims.subject_id, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
def begin_two_factor_setup(
    claims: SessionClaims = Depends(current_session),
    service: IdentityService = Depends(get_identity_service),
) -> TwoFactorSetupResponse:
    provisioning = service.begin_two_factor_setup(claims.subject_id)
    return TwoFactorSetupResponse(
        provisioning_uri=provisioning.provisioning_uri,
        qr_code=provisioning.qr_code_data_uri,
    )


@router.post("/2fa/enable", response_model=RecoveryCodesResponse)
def enable_two_factor(
    payload: TwoFactorCodeRequest,
    claims: SessionClaims = Depends(current_session),
    context: RequestContext = Depends(request_context),
    service: IdentityService = Depends(get_identity_service),
) -> RecoveryCodesResponse:
    """Confirm setup with a TOTP code; the recovery codes are shown only once."""
    return RecoveryCodesResponse(recovery_codes=service.enable_two_factor(claims.subject_id, payload.code, context))


@router.post("/2fa/disable", status_code=status.HTTP_204_NO_CONTENT)
def disable_two_factor(
    payload: TwoFactorCodeRequest,
    claims: SessionClaims = Depends(current_session),
    context: RequestContext = Depends(request_context),
    service: IdentityService = Depends(get_identity_service),
) -> Response:
    service.disable_two_factor(claims.subject_id, payload.code, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/2fa/recovery-codes", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(
    payload: TwoFactorCodeRequest,
    claims: SessionClaims = Depends(current_session),
    context: RequestContext = Depends(request_context),
    service: IdentityService = Depends(get_identity_service),
) -> RecoveryCodesResponse:
    codes = service.regenerate_recovery_codes(claims.subject_id, payload.code, context)
    return RecoveryCodesResponse(recovery_codes=codes)


@router.get("/security-events", response_model=SecurityEventListResponse)
def list_security_events(
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    claims: SessionClaims = Depends(current_session),
    service: IdentityService = Depends(get_identity_service),
) -> SecurityEventListResponse:
    """Return the caller's security events, newest first, with cursor pagination."""
    try:
        events, next_cursor = service.list_security_events(claims.subject_id, limit=limit, cursor=cursor)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SecurityEventListResponse(
        items=[SecurityEventEntry.from_domain(event) for event in events],
        next_cursor=next_cursor,
    )


@router.get("/companies", response_model=TenantListResponse)
def list_companies(
    claims: SessionClaims = Depends(current_session),
    tenants: TenantService = Depends(get_tenant_service),
) -> TenantListResponse:
    items = tenants.list_memberships(claims.subject_id)
    return TenantListResponse(
        items=[TenantResponse.from_domain(item) for item in items],
        active_tenant_id=claims.tenant_id,
    )


@router.post("/switch-company", response_model=AuthenticatedResponse)
def switch_company(
    payload: SwitchTenantRequest,
    claims: SessionClaims = Depends(current_session),
    tenants: TenantService = Depends(get_tenant_service),
) -> AuthenticatedResponse:
    """Re-issue the session scoped to another company the caller belongs to."""
    return _session_body(tenants.switch_active_tenant(claims.subject_id, payload.tenant_id))


@router.post("/companies", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
def create_company(
    payload: CreateCompanyRequest,
    claims: SessionClaims = Depends(current_session),
    tenants: TenantService = Depends(get_tenant_service),
) -> TenantResponse:
    """Create a company with the caller as its admin; switch to it with `/switch-company`."""
    return TenantResponse.from_domain(tenants.create_tenant(payload.name, claims.subject_id))


@router.post(
    "/companies/{tenant_id}/invitations",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
def invite_member(
    tenant_id: str,
    payload: InviteMemberRequest,
    claims: SessionClaims = Depends(current_session),
    tenants: TenantService = Depends(get_tenant_service),
) -> MembershipResponse:
    membership = tenants.invite_member(claims.subject_id, tenant_id, payload.email, payload.role)
    return MembershipResponse.from_domain(membership)


@router.get("/invitations", response_model=InvitationListResponse)
def list_invitations(
    claims: SessionClaims = Depends(current_session),
    tenants: TenantService = Depends(get_tenant_service),
) -> InvitationListResponse:
    items = tenants.list_invitations(claims.subject_id)
    return InvitationListResponse(items=[TenantResponse.from_domain(item) for item in items])


@router.post("/invitations/{tenant_id}/accept", response_model=TenantResponse)
def accept_invitation(
    tenant_id: str,
    claims: SessionClaims = Depends(current_session),
    tenants: TenantService = Depends(get_tenant_service),
) -> TenantResponse:
    return TenantResponse.from_domain(tenants.accept_invitation(claims.subject_id, tenant_id))
