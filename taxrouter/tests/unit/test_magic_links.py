from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from taxrouter.adapters.registry import AdapterRegistry
from taxrouter.core.errors import InvalidOrExpiredToken, NotAuthenticated
from taxrouter.domain.entities import Client
from taxrouter.domain.models import PortalMagicToken
from taxrouter.services.auth.magic_links import MagicLinkService
from taxrouter.services.auth.portal_tokens import TOKEN_TYPE_SESSION, PortalTokenService
from taxrouter.services.crypto.secret_box import SealKind, SecretBox
from taxrouter.services.tenants.cache import TenantConnectionCache
from taxrouter.tests.utils.fakes import FakeConnector, FakeRegistry, FakeResult, FakeSessionFactory, make_record


BOX = SecretBox(bytes(range(32)))
CLIENT_ID = str(uuid4())


class PortalAdapter:
    adapter_type = "mywelltax"

    def __init__(self, stored_ssn: str | None) -> None:
        self.stored_ssn = stored_ssn

    async def get_client(self, handle, schema_prefix: str, client_id: str) -> Client:
        return Client(id=client_id, email="ada@example.com", role="user")

    async def get_client_stored_ssn(self, handle, schema_prefix: str, client_id: str) -> str | None:
        return self.stored_ssn


def _service(sessions: FakeSessionFactory, *, stored_ssn: str | None = None) -> MagicLinkService:
    registry = FakeRegistry([make_record("acme")])
    return MagicLinkService(
        session_factory=sessions,
        tokens=PortalTokenService(secret="portal-secret"),
        cache=TenantConnectionCache(registry=registry, connector=FakeConnector()),
        adapters=AdapterRegistry({"mywelltax": PortalAdapter(stored_ssn or BOX.seal("123-45-6789", SealKind.SSN))}),
        secret_box=BOX,
        base_url="https://portal.example.com/",
        session_ttl_s=7200,
    )


def _stored_link(jti: str, *, used: bool = False, expires_in: timedelta = timedelta(hours=1)) -> PortalMagicToken:
    return PortalMagicToken(
        id=UUID(jti),
        client_id=UUID(CLIENT_ID),
        tenant_id="acme",
        email="ada@example.com",
        used=used,
        expires_at=datetime.now(timezone.utc) + expires_in,
    )


@pytest.mark.asyncio
async def test_issue_records_link_and_builds_url() -> None:
    sessions = FakeSessionFactory()

    link = await _service(sessions).issue("acme", CLIENT_ID)

    assert link.url == f"https://portal.example.com/acme/portal?token={link.token.token}"
    assert link.email == "ada@example.com"
    [row] = sessions.added
    assert str(row.id) == link.token.jti
    assert row.used is False


@pytest.mark.asyncio
async def test_exchange_issues_session_once() -> None:
    issuing = FakeSessionFactory()
    link = await _service(issuing).issue("acme", CLIENT_ID)
    sessions = FakeSessionFactory(
        results=[FakeResult([{"row": _stored_link(link.token.jti)}]), FakeResult(rowcount=1)]
    )
    service = _service(sessions)

    session = await service.exchange(link.token.token, "6789", ip_address="203.0.113.7", user_agent="pytest")

    assert session.client_id == CLIENT_ID
    assert session.tenant_id == "acme"
    assert session.expires_in == 7200
    claims = PortalTokenService(secret="portal-secret").verify(session.token.token, expected_type=TOKEN_TYPE_SESSION)
    assert claims.client_id == CLIENT_ID


@pytest.mark.asyncio
async def test_exchange_loses_race_for_single_use() -> None:
    link = await _service(FakeSessionFactory()).issue("acme", CLIENT_ID)
    sessions = FakeSessionFactory(
        results=[FakeResult([{"row": _stored_link(link.token.jti)}]), FakeResult(rowcount=0)]
    )

    with pytest.raises(InvalidOrExpiredToken):
        await _service(sessions).exchange(link.token.token, "6789")


@pytest.mark.asyncio
async def test_exchange_rejects_used_link_before_identity_check() -> None:
    link = await _service(FakeSessionFactory()).issue("acme", CLIENT_ID)
    sessions = FakeSessionFactory(results=[FakeResult([{"row": _stored_link(link.token.jti, used=True)}])])

    with pytest.raises(InvalidOrExpiredToken):
        await _service(sessions).exchange(link.token.token, "6789")
    assert len(sessions.statements) == 1


@pytest.mark.asyncio
async def test_exchange_rejects_wrong_last_four() -> None:
    link = await _service(FakeSessionFactory()).issue("acme", CLIENT_ID)
    sessions = FakeSessionFactory(results=[FakeResult([{"row": _stored_link(link.token.jti)}])])

    with pytest.raises(NotAuthenticated):
        await _service(sessions).exchange(link.token.token, "0000")
    # The link stays unused so the client can retry.
    assert len(sessions.statements) == 1


@pytest.mark.asyncio
async def test_exchange_rejects_expired_record_and_unknown_link() -> None:
    link = await _service(FakeSessionFactory()).issue("acme", CLIENT_ID)
    expired = FakeSessionFactory(
        results=[FakeResult([{"row": _stored_link(link.token.jti, expires_in=timedelta(seconds=-1))}])]
    )
    unknown = FakeSessionFactory(results=[FakeResult([])])

    with pytest.raises(InvalidOrExpiredToken):
        await _service(expired).exchange(link.token.token, "6789")
    with pytest.raises(InvalidOrExpiredToken):
        await _service(unknown).exchange(link.token.token, "6789")
