from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxrouter.adapters.registry import AdapterRegistry
from taxrouter.core.errors import (
    CredentialUnavailable,
    InvalidOrExpiredToken,
    MalformedCiphertext,
    MalformedInput,
    NotAuthenticated,
)
from taxrouter.domain.entities import as_utc
from taxrouter.domain.models import PortalMagicToken
from taxrouter.services.auth.portal_tokens import (
    TOKEN_TYPE_MAGIC_LINK,
    IssuedPortalToken,
    PortalClaims,
    PortalTokenService,
)
from taxrouter.services.crypto.secret_box import SealKind, SecretBox, last_four_matches
from taxrouter.services.tenants.cache import TenantConnectionCache


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MagicLink:
    url: str
    email: str
    token: IssuedPortalToken


@dataclass(frozen=True)
class PortalSession:
    token: IssuedPortalToken
    client_id: str
    tenant_id: str
    expires_in: int


class MagicLinkService:
    """Issue single-use portal links and exchange them for session tokens.

    The exchange succeeds once per link: the ``portal_magic_tokens`` row is
    flipped to used with a conditional update, so two concurrent exchanges of
    the same link cannot both obtain a session.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: PortalTokenService,
        cache: TenantConnectionCache,
        adapters: AdapterRegistry,
        secret_box: SecretBox,
        base_url: str,
        session_ttl_s: int,
    ) -> None:
        self._session_factory = session_factory
        self._tokens = tokens
        self._cache = cache
        self._adapters = adapters
        self._secret_box = secret_box
        self._base_url = base_url.rstrip("/")
        self._session_ttl_s = session_ttl_s

    async def issue(self, tenant_id: str, client_id: str) -> MagicLink:
        handle, record = await self._cache.obtain(tenant_id)
        adapter = self._adapters.for_kind(record.adapter_type)
        client = await adapter.get_client(handle, record.schema_prefix, client_id)
        if not client.email:
            raise MalformedInput("client has no email address")
        issued = self._tokens.issue_magic_link(client_id=client.id, tenant_id=tenant_id, email=client.email)
        async with self._session_factory() as session:
            session.add(
                PortalMagicToken(
                    id=UUID(issued.jti),
                    client_id=UUID(client.id),
                    tenant_id=tenant_id,
                    email=client.email,
                    used=False,
                    expires_at=issued.expires_at,
                )
            )
            await session.commit()
        url = f"{self._base_url}/{tenant_id}/portal?token={issued.token}"
        return MagicLink(url=url, email=client.email, token=issued)

    def inspect(self, token: str | None) -> PortalClaims:
        # Signature and expiry only; consumption is checked at exchange time.
        return self._tokens.verify(token, expected_type=TOKEN_TYPE_MAGIC_LINK)

    async def exchange(
        self,
        token: str | None,
        last_four: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PortalSession:
        claims = self.inspect(token)
        if not claims.jti:
            raise InvalidOrExpiredToken("magic link has no token id")
        try:
            token_id = UUID(claims.jti)
        except ValueError as exc:
            raise InvalidOrExpiredToken("magic link token id is malformed") from exc
        await self._require_unused(token_id, claims)

        handle, record = await self._cache.obtain(claims.tenant_id)
        adapter = self._adapters.for_kind(record.adapter_type)
        stored = await adapter.get_client_stored_ssn(handle, record.schema_prefix, claims.client_id)
        try:
            plaintext = self._secret_box.open_if_sealed(stored or "", SealKind.SSN)
        except MalformedCiphertext as exc:
            logger.error("portal_ssn_unseal_failed tenant_id=%s client_id=%s", claims.tenant_id, claims.client_id)
            raise CredentialUnavailable("identity verification not available") from exc
        if not last_four_matches(plaintext, last_four or ""):
            logger.warning(
                "portal_identity_check_failed tenant_id=%s client_id=%s", claims.tenant_id, claims.client_id
            )
            raise NotAuthenticated("identity verification failed")

        async with self._session_factory() as session:
            result = await session.execute(
                update(PortalMagicToken)
                .where(PortalMagicToken.id == token_id, PortalMagicToken.used.is_(False))
                .values(used=True, used_at=func.now(), ip_address=ip_address, user_agent=user_agent)
            )
            await session.commit()
        if result.rowcount == 0:
            raise InvalidOrExpiredToken("magic link already used")

        issued = self._tokens.issue_session(
            client_id=claims.client_id, tenant_id=claims.tenant_id, email=claims.email
        )
        logger.info("portal_magic_link_exchanged tenant_id=%s client_id=%s", claims.tenant_id, claims.client_id)
        return PortalSession(
            token=issued,
            client_id=claims.client_id,
            tenant_id=claims.tenant_id,
            expires_in=self._session_ttl_s,
        )

    async def _require_unused(self, token_id: UUID, claims: PortalClaims) -> None:
        async with self._session_factory() as session:
            result = await session.execute(select(PortalMagicToken).where(PortalMagicToken.id == token_id))
            row = result.scalar_one_or_none()
        if row is None:
            raise InvalidOrExpiredToken("magic link not found")
        if row.used:
            logger.warning("portal_magic_link_reuse token_id=%s", token_id)
            raise InvalidOrExpiredToken("magic link already used")
        if row.tenant_id != claims.tenant_id or str(row.client_id) != claims.client_id:
            raise InvalidOrExpiredToken("magic link does not match its record")
        if as_utc(row.expires_at) <= as_utc(self._tokens.now()):
            raise InvalidOrExpiredToken("magic link expired")
