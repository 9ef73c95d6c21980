from __future__ import annotations

from uuid import UUID, uuid4

import pytest
from starlette.requests import Request

from taxrouter.core.errors import MalformedInput
from taxrouter.services.audit import (
    AuditAction,
    AuditResource,
    AuditSink,
    client_ip,
    request_details,
    sanitize_details,
)
from taxrouter.tests.utils.fakes import FakeSessionFactory


def _make_request(
    path: str = "/api/v1/acme/clients",
    *,
    query: bytes = b"",
    headers: list[tuple[bytes, bytes]] | None = None,
    method: str = "GET",
) -> Request:
    # Construct a minimal ASGI scope for audit detail tests.
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "scheme": "http",
        "server": ("test", 80),
        "client": ("10.0.0.9", 1234),
        "headers": headers or [],
        "query_string": query,
    }
    return Request(scope)


def test_sanitize_details_redacts_sensitive_keys_recursively() -> None:
    details = {
        "client": {"ssn": "123-45-6789", "name": "Ada"},
        "items": [{"db_password": "x"}, {"note": "ok"}],
        "Authorization": "Bearer abc",
    }

    assert sanitize_details(details) == {
        "client": {"ssn": "[REDACTED]", "name": "Ada"},
        "items": [{"db_password": "[REDACTED]"}, {"note": "ok"}],
        "Authorization": "[REDACTED]",
    }


def test_request_details_redacts_token_query_values() -> None:
    request = _make_request(query=b"token=abc123&status=PENDING&flag")

    details = request_details(request, {"secret_ref": "projects/p/secrets/s"})

    assert details == {
        "method": "GET",
        "path": "/api/v1/acme/clients",
        "query": "token=[REDACTED]&status=PENDING&flag",
        "extra": {"secret_ref": "[REDACTED]"},
    }


def test_client_ip_prefers_forwarded_then_real_ip_then_peer() -> None:
    forwarded = _make_request(headers=[(b"x-forwarded-for", b"203.0.113.7, 10.0.0.1"), (b"x-real-ip", b"198.51.100.2")])
    real_ip = _make_request(headers=[(b"x-real-ip", b"198.51.100.2")])
    peer = _make_request()

    assert client_ip(forwarded) == "203.0.113.7"
    assert client_ip(real_ip) == "198.51.100.2"
    assert client_ip(peer) == "10.0.0.9"
    assert client_ip(None) is None


def test_client_ip_skips_values_that_are_not_addresses() -> None:
    spoofed = _make_request(headers=[(b"x-forwarded-for", b"not-an-ip, 1.2.3.4"), (b"x-real-ip", b"2001:db8::1")])
    all_bad = _make_request(headers=[(b"x-forwarded-for", b"x"), (b"x-real-ip", b"also bad")])

    assert client_ip(spoofed) == "2001:db8::1"
    assert client_ip(all_bad) == "10.0.0.9"


@pytest.mark.asyncio
async def test_record_request_ignores_unparseable_forwarded_header() -> None:
    factory = FakeSessionFactory()
    sink = AuditSink(session_factory=factory)
    request = _make_request(headers=[(b"x-forwarded-for", b"not-an-ip, 1.2.3.4")])

    ok = await sink.record_request(
        request,
        employee_id=uuid4(),
        tenant_id="acme",
        action=AuditAction.VIEW,
        resource_type=AuditResource.CLIENT,
    )

    assert ok is True
    [entry] = factory.added
    assert entry.ip_address == "10.0.0.9"


@pytest.mark.asyncio
async def test_record_request_writes_one_entry() -> None:
    factory = FakeSessionFactory()
    sink = AuditSink(session_factory=factory)
    employee_id = uuid4()
    client_id = str(uuid4())
    request = _make_request(
        f"/api/v1/acme/clients/{client_id}",
        headers=[(b"user-agent", b"pytest"), (b"x-forwarded-for", b"203.0.113.7")],
    )

    ok = await sink.record_request(
        request,
        employee_id=employee_id,
        tenant_id="acme",
        action=AuditAction.VIEW,
        resource_type=AuditResource.CLIENT,
        client_id=client_id,
        resource_id=client_id,
    )

    assert ok is True
    assert factory.commits == 1
    [entry] = factory.added
    assert entry.employee_id == employee_id
    assert entry.tenant_id == "acme"
    assert entry.client_id == UUID(client_id)
    assert entry.action == "VIEW"
    assert entry.resource_type == "CLIENT"
    assert entry.ip_address == "203.0.113.7"
    assert entry.user_agent == "pytest"
    assert entry.details["path"] == f"/api/v1/acme/clients/{client_id}"


@pytest.mark.asyncio
async def test_record_drops_non_uuid_identifiers() -> None:
    factory = FakeSessionFactory()
    sink = AuditSink(session_factory=factory)

    await sink.record(
        employee_id=uuid4(),
        tenant_id="acme",
        action=AuditAction.UPLOAD,
        resource_type=AuditResource.DOCUMENT,
        client_id="legacy-42",
        resource_id=None,
    )

    assert factory.added[0].client_id is None


@pytest.mark.asyncio
async def test_failed_write_is_logged_not_raised(caplog) -> None:
    factory = FakeSessionFactory(fail_commit=True)
    sink = AuditSink(session_factory=factory)

    with caplog.at_level("ERROR"):
        ok = await sink.record(
            employee_id=uuid4(),
            tenant_id="acme",
            action=AuditAction.DELETE,
            resource_type=AuditResource.DOCUMENT,
        )

    assert ok is False
    assert factory.rollbacks == 1
    assert any("audit_event_write_failed" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, 1001])
async def test_list_limit_bounds(limit: int) -> None:
    factory = FakeSessionFactory()
    sink = AuditSink(session_factory=factory)

    with pytest.raises(MalformedInput):
        await sink.list_by_tenant("acme", limit=limit)
    assert factory.statements == []
