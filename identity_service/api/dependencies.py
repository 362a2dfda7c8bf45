"""FastAPI dependencies: service lookup, request context, auth, and admission."""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..domain.contracts import RequestContext
from ..domain.service import IdentityService
from ..domain.tenants import TenantService
from ..errors import TokenInvalid
from ..security.governor import RateGovernor
from ..security.tokens import SessionClaims, TokenSigner

_bearer = HTTPBearer(auto_error=False)


def get_identity_service(request: Request) -> IdentityService:
    """Resolve the `IdentityService` stored on the FastAPI application state."""
    return request.app.state.identity_service


def get_tenant_service(request: Request) -> TenantService:
    return request.app.state.tenant_service


def get_signer(request: Request) -> TokenSigner:
    return request.app.state.token_signer


def get_governor(request: Request) -> RateGovernor:
    return request.app.state.rate_governor


def source_address(request: Request) -> str:
    """First hop of ``X-Forwarded-For`` when present, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def request_context(request: Request) -> RequestContext:
    return RequestContext(source_address=source_address(request), user_agent=request.headers.get("user-agent"))


def public_request(
    context: RequestContext = Depends(request_context),
    governor: RateGovernor = Depends(get_governor),
) -> RequestContext:
    """Admit unauthenticated traffic against the per-address window."""
    governor.admit_address(context.source_address or "unknown")
    return context


def registration_request(
    context: RequestContext = Depends(public_request),
    governor: RateGovernor = Depends(get_governor),
) -> RequestContext:
    governor.admit_registration(context.source_address or "unknown")
    return context


def current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    signer: TokenSigner = Depends(get_signer),
    governor: RateGovernor = Depends(get_governor),
) -> SessionClaims:
    """Verify the bearer token and admit the caller against the per-subject window."""
    if credentials is None or not credentials.credentials:
        raise TokenInvalid("missing bearer token")
    claims = signer.verify(credentials.credentials)
    governor.admit_subject(claims.subject_id)
    return claims
