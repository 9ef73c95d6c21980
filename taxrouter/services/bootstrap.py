from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from taxrouter.adapters.registry import AdapterRegistry, build_adapter_registry
from taxrouter.core.config import FileConfig, Settings
from taxrouter.persistence.db import build_control_engine, build_session_factory
from taxrouter.services.affiliate_tokens import AffiliateTokenAuthenticator
from taxrouter.services.audit import AuditSink
from taxrouter.services.auth.employees import EmployeeService
from taxrouter.services.auth.firebase import FirebaseTokenVerifier
from taxrouter.services.auth.magic_links import MagicLinkService
from taxrouter.services.auth.portal_tokens import PortalTokenService
from taxrouter.services.auth.tenant_users import TenantUserService
from taxrouter.services.crypto.secret_box import SecretBox, load_secret_box
from taxrouter.services.secrets.gcp import GcpSecretManagerProvider
from taxrouter.services.secrets.resolver import ManagedSecretProvider, SecretResolver
from taxrouter.services.tenants.cache import Connector, TenantConnectionCache
from taxrouter.services.tenants.engine import TenantEngineConnector
from taxrouter.services.tenants.registry import TenantRegistry


logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    """Process singletons, built once at startup and closed once at shutdown."""

    settings: Settings
    file_config: FileConfig
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    secret_box: SecretBox
    resolver: SecretResolver
    registry: TenantRegistry
    cache: TenantConnectionCache
    adapters: AdapterRegistry
    affiliate_tokens: AffiliateTokenAuthenticator
    audit: AuditSink
    firebase: FirebaseTokenVerifier
    portal_tokens: PortalTokenService
    employees: EmployeeService
    tenant_users: TenantUserService
    magic_links: MagicLinkService

    def start(self) -> None:
        self.cache.start_eviction()

    async def close(self) -> None:
        # Order matters: no new evictions, then tenant handles, then the control plane.
        await self.cache.stop_eviction()
        await self.cache.close_all()
        await self.resolver.close()
        await self.engine.dispose()
        logger.info("core_services_closed")


def build_core_services(
    settings: Settings,
    file_config: FileConfig,
    *,
    engine: AsyncEngine | None = None,
    connector: Connector | None = None,
    secret_provider: ManagedSecretProvider | None = None,
) -> CoreServices:
    secret_box = load_secret_box(settings)
    engine = engine or build_control_engine(settings, file_config)
    session_factory = build_session_factory(engine)
    adapters = build_adapter_registry(secret_box)
    resolver = SecretResolver(
        provider=secret_provider or GcpSecretManagerProvider(),
        ttl_seconds=settings.secret_cache_ttl_s,
        fetch_timeout_s=settings.secret_fetch_timeout_s,
    )
    registry = TenantRegistry(
        session_factory=session_factory,
        secret_box=secret_box,
        adapter_kinds=adapters.kinds,
    )
    cache = TenantConnectionCache(
        registry=registry,
        connector=connector or TenantEngineConnector(settings),
        idle_timeout_s=settings.tenant_cache_idle_timeout_s,
        eviction_interval_s=settings.tenant_cache_eviction_interval_s,
    )
    portal_tokens = PortalTokenService(
        secret=file_config.portal.jwt_secret,
        issuer=settings.portal_token_issuer,
        magic_link_ttl_s=settings.portal_magic_link_ttl_s,
        session_ttl_s=settings.portal_session_ttl_s,
    )
    if not portal_tokens.configured:
        logger.warning("portal_jwt_secret_missing portal routes will reject every token")
    firebase = FirebaseTokenVerifier(
        project_id=settings.firebase_project_id or file_config.firebase.project_id,
        jwks_url=settings.firebase_jwks_url,
        cache_ttl_s=settings.firebase_jwks_cache_ttl_s,
        clock_skew_s=settings.firebase_clock_skew_s,
    )
    if not firebase.configured:
        logger.warning("firebase_project_id_missing employee and tenant-user routes will reject every token")
    services = CoreServices(
        settings=settings,
        file_config=file_config,
        engine=engine,
        session_factory=session_factory,
        secret_box=secret_box,
        resolver=resolver,
        registry=registry,
        cache=cache,
        adapters=adapters,
        affiliate_tokens=AffiliateTokenAuthenticator(),
        audit=AuditSink(session_factory=session_factory),
        firebase=firebase,
        portal_tokens=portal_tokens,
        employees=EmployeeService(session_factory=session_factory),
        tenant_users=TenantUserService(session_factory=session_factory, cache=cache, adapters=adapters),
        magic_links=MagicLinkService(
            session_factory=session_factory,
            tokens=portal_tokens,
            cache=cache,
            adapters=adapters,
            secret_box=secret_box,
            base_url=file_config.portal.base_url,
            session_ttl_s=settings.portal_session_ttl_s,
        ),
    )
    logger.info("core_services_built adapters=%s", ",".join(adapters.kinds))
    return services
