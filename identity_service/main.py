"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.errors import register_exception_handlers
from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.ledger import SecurityLedger
from .domain.service import IdentityService
from .domain.tenants import TenantService
from .federation import DisabledIdentityProvider, HttpIdentityProvider, IdentityProvider
from .logging_utils import configure_logging
from .memory_repository import InMemoryAccountRepository
from .notifications import BackgroundNotifier, LoggingNotifier, Notifier
from .repository import AccountRepository, CredentialStore
from .security.governor import RateGovernor, build_rate_governor
from .security.passwords import PasswordHasher
from .security.tokens import TokenSigner
from .security.totp import TotpEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceContainer:
    """Everything the routes resolve from ``app.state``."""

    identity_service: IdentityService
    tenant_service: TenantService
    token_signer: TokenSigner
    rate_governor: RateGovernor
    identity_provider: IdentityProvider


def build_services(
    settings: Settings,
    store: CredentialStore,
    *,
    identity_provider: IdentityProvider | None = None,
    notifier: Notifier | None = None,
    rate_governor: RateGovernor | None = None,
) -> ServiceContainer:
    """Compose the identity core from settings and the chosen credential store."""
    signer = TokenSigner.from_settings(settings)
    notifier = notifier or LoggingNotifier()
    if identity_provider is None:
        if settings.idp_userinfo_url:
            identity_provider = HttpIdentityProvider(
                settings.idp_userinfo_url,
                api_key=settings.idp_api_key or None,
                timeout=settings.idp_timeout_seconds,
            )
        else:
            identity_provider = DisabledIdentityProvider()
    ledger = SecurityLedger(
        store,
        notifier=notifier,
        threshold=settings.lockout_threshold,
        lockout=timedelta(minutes=settings.lockout_minutes),
    )
    tenants = TenantService(store, signer)
    identity = IdentityService(
        store=store,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        signer=signer,
        totp=TotpEngine(issuer=settings.totp_issuer, encryption_key=settings.encryption_key_material),
        ledger=ledger,
        tenants=tenants,
        identity_provider=identity_provider,
        notifier=notifier,
        password_reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
    )
    return ServiceContainer(
        identity_service=identity,
        tenant_service=tenants,
        token_signer=signer,
        rate_governor=rate_governor or build_rate_governor(settings),
        identity_provider=identity_provider,
    )


def install_services(app: FastAPI, container: ServiceContainer) -> None:
    app.state.identity_service = container.identity_service
    app.state.tenant_service = container.tenant_service
    app.state.token_signer = container.token_signer
    app.state.rate_governor = container.rate_governor


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialise shared resources (store, services, sweeper) for the app lifecycle."""
        configure_logging(settings.log_level)
        if settings.uses_dev_secret:
            logger.warning("JWT_SECRET is the development default; set a real secret outside local dev")

        pool: ConnectionPool | None = None
        if settings.store_backend == "memory":
            logger.warning("using the in-memory credential store; data is lost on restart")
            store: CredentialStore = InMemoryAccountRepository()
        else:
            pool = ConnectionPool(settings.database_url, open=False)
            pool.open()
            store = AccountRepository(pool)

        notifier = BackgroundNotifier(LoggingNotifier())
        container = build_services(settings, store, notifier=notifier)
        install_services(app, container)
        container.rate_governor.start_sweeper(settings.rate_limit_sweep_seconds)
        try:
            yield
        finally:
            container.rate_governor.stop_sweeper()
            notifier.shutdown()
            if isinstance(container.identity_provider, HttpIdentityProvider):
                container.identity_provider.close()
            if pool is not None:
                pool.close()

    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

    # CORS for local frontend dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )
    register_exception_handlers(app)

    @app.get("/healthz", tags=["health"])
    def healthz() -> dict[str, str]:
        """Return a minimal readiness indicator used by orchestration systems."""
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(v1_router)
    return app


app = create_app()
