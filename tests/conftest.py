from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity_service.api.errors import register_exception_handlers
from identity_service.api.routes import router
from identity_service.domain.ledger import SecurityLedger
from identity_service.domain.service import IdentityService
from identity_service.domain.tenants import TenantService
from identity_service.errors import FederatedVerificationFailed
from identity_service.main import ServiceContainer, install_services
from identity_service.memory_repository import InMemoryAccountRepository
from identity_service.security.governor import RateGovernor
from identity_service.security.passwords import PasswordHasher
from identity_service.security.rate_limiter import FixedWindowRateLimiter
from identity_service.security.tokens import TokenSigner
from identity_service.security.totp import TotpEngine

STRONG_PASSWORD = "Str0ngP@ssw0rd!!"


class FakeClock:
    """Manually advanced clock usable as both a datetime and an epoch source."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.welcomes: list[tuple[str, str]] = []
        self.lockouts: list[str] = []
        self.password_resets: list[tuple[str, str]] = []

    def send_welcome(self, email: str, name: str) -> None:
        self.welcomes.append((email, name))

    def send_lockout_notice(self, email: str) -> None:
        self.lockouts.append(email)

    def send_password_reset(self, email: str, token: str) -> None:
        self.password_resets.append((email, token))


class StubIdentityProvider:
    """Maps provider tokens to identities; unknown tokens fail verification."""

    def __init__(self) -> None:
        self.identities = {}

    def verify_external_token(self, token: str):
        try:
            return self.identities[token]
        except KeyError:
            raise FederatedVerificationFailed() from None


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def identity_provider() -> StubIdentityProvider:
    return StubIdentityProvider()


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture()
def signer(clock: FakeClock) -> TokenSigner:
    return TokenSigner("test-secret", issuer="identity-service-test", ttl_seconds=3600, clock=clock.time)


@pytest.fixture()
def totp(clock: FakeClock) -> TotpEngine:
    return TotpEngine(issuer="Workspace Test", encryption_key="test-encryption-key", clock=clock.time)


@pytest.fixture()
def ledger(store, notifier, clock) -> SecurityLedger:
    return SecurityLedger(store, notifier=notifier, threshold=5, lockout=timedelta(minutes=30), clock=clock)


@pytest.fixture()
def tenants(store, signer) -> TenantService:
    return TenantService(store, signer)


@pytest.fixture()
def identity_service(store, hasher, signer, totp, ledger, tenants, identity_provider, notifier, clock):
    return IdentityService(
        store=store,
        hasher=hasher,
        signer=signer,
        totp=totp,
        ledger=ledger,
        tenants=tenants,
        identity_provider=identity_provider,
        notifier=notifier,
        clock=clock,
    )


def make_governor(public: int = 100, subject: int = 60, registration: int = 3) -> RateGovernor:
    return RateGovernor(
        public=FixedWindowRateLimiter(public, 900),
        subject=FixedWindowRateLimiter(subject, 60),
        registration=FixedWindowRateLimiter(registration, 900),
    )


@pytest.fixture()
def api_app(store, hasher, identity_provider, notifier):
    """FastAPI app wired to the in-memory store with real clocks."""
    signer = TokenSigner("api-test-secret", issuer="identity-service-test", ttl_seconds=3600)
    ledger = SecurityLedger(store, notifier=notifier)
    tenants = TenantService(store, signer)
    service = IdentityService(
        store=store,
        hasher=hasher,
        signer=signer,
        totp=TotpEngine(issuer="Workspace Test", encryption_key="api-test-key"),
        ledger=ledger,
        tenants=tenants,
        identity_provider=identity_provider,
        notifier=notifier,
    )
    app = FastAPI()
    app.include_router(router)
    register_exception_handlers(app)
    install_services(
        app,
        ServiceContainer(
            identity_service=service,
            tenant_service=tenants,
            token_signer=signer,
            rate_governor=make_governor(registration=20),
            identity_provider=identity_provider,
        ),
    )
    return app


@pytest.fixture()
def api_client(api_app):
    with TestClient(api_app) as client:
        yield client
