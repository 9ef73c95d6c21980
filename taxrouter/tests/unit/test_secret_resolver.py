from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from taxrouter.core.errors import SecretUnavailable
from taxrouter.services.secrets.gcp import GcpSecretManagerProvider
from taxrouter.services.secrets.resolver import SecretResolver, is_managed_secret_path, normalize_secret_path
from taxrouter.services.tenants.secrets import (
    STATUS_MISSING,
    STATUS_RESOLVED,
    STATUS_UNAVAILABLE,
    resolve_signing_key,
    resolve_storage_credentials,
    verify_tenant_secrets,
)
from taxrouter.tests.utils.fakes import FakeClock, make_record


class FakeSecretProvider:
    provider = "fake"

    def __init__(self, values: dict[str, bytes] | None = None, *, delay: float = 0.0) -> None:
        self.values = values or {}
        self.delay = delay
        self.requests: list[str] = []
        self.closed = False
        self.cancelled = False

    async def access(self, name: str) -> bytes:
        self.requests.append(name)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if name not in self.values:
            raise LookupError(name)
        return self.values[name]

    async def close(self) -> None:
        self.closed = True


MANAGED = "projects/p1/secrets/storage-creds"


def test_managed_path_shapes() -> None:
    assert is_managed_secret_path("projects/p1/secrets/name")
    assert is_managed_secret_path("projects/p1/secrets/name/versions/3")
    assert not is_managed_secret_path("/etc/creds.json")
    assert not is_managed_secret_path("projects/p1/secrets/")
    assert normalize_secret_path("projects/p1/secrets/name") == "projects/p1/secrets/name/versions/latest"
    assert normalize_secret_path("projects/p1/secrets/name/versions/3") == "projects/p1/secrets/name/versions/3"


@pytest.mark.asyncio
async def test_managed_secret_is_cached_until_ttl_expires() -> None:
    clock = FakeClock()
    provider = FakeSecretProvider({f"{MANAGED}/versions/latest": b"v1"})
    resolver = SecretResolver(provider=provider, ttl_seconds=3600, clock=clock)

    assert await resolver.resolve(MANAGED) == b"v1"
    provider.values[f"{MANAGED}/versions/latest"] = b"v2"
    clock.advance(3599)
    assert await resolver.resolve(MANAGED) == b"v1"
    clock.advance(2)
    assert await resolver.resolve(MANAGED) == b"v2"
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_clear_forces_refetch() -> None:
    provider = FakeSecretProvider({f"{MANAGED}/versions/latest": b"v1"})
    resolver = SecretResolver(provider=provider, clock=FakeClock())

    await resolver.resolve(MANAGED)
    await resolver.clear(MANAGED)
    await resolver.resolve(MANAGED)
    await resolver.clear_all()
    await resolver.resolve(MANAGED)

    assert len(provider.requests) == 3


@pytest.mark.asyncio
async def test_filesystem_reference(tmp_path) -> None:
    path = tmp_path / "creds.json"
    path.write_bytes(b'{"type": "service_account"}')
    resolver = SecretResolver(provider=None)

    assert await resolver.resolve(str(path)) == b'{"type": "service_account"}'
    with pytest.raises(SecretUnavailable) as exc_info:
        await resolver.resolve(str(tmp_path / "missing.json"))
    assert exc_info.value.reference == str(tmp_path / "missing.json")


@pytest.mark.asyncio
async def test_empty_reference_and_missing_provider() -> None:
    resolver = SecretResolver(provider=None)

    with pytest.raises(SecretUnavailable):
        await resolver.resolve("")
    with pytest.raises(SecretUnavailable):
        await resolver.resolve("   ")
    with pytest.raises(SecretUnavailable):
        await resolver.resolve(MANAGED)


@pytest.mark.asyncio
async def test_provider_error_and_timeout_surface_as_unavailable() -> None:
    resolver = SecretResolver(provider=FakeSecretProvider({}), clock=FakeClock())
    with pytest.raises(SecretUnavailable):
        await resolver.resolve(MANAGED)

    slow = FakeSecretProvider({f"{MANAGED}/versions/latest": b"late"}, delay=1.0)
    resolver = SecretResolver(provider=slow, fetch_timeout_s=0.01, clock=FakeClock())
    with pytest.raises(SecretUnavailable):
        await resolver.resolve(MANAGED)
    # The failure is not cached.
    slow.delay = 0.0
    assert await resolver.resolve(MANAGED) == b"late"


@pytest.mark.asyncio
async def test_cancelled_caller_cancels_the_fetch() -> None:
    provider = FakeSecretProvider({f"{MANAGED}/versions/latest": b"v"}, delay=5.0)
    resolver = SecretResolver(provider=provider, fetch_timeout_s=10.0, clock=FakeClock())

    task = asyncio.create_task(resolver.resolve(MANAGED))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert provider.cancelled


@pytest.mark.asyncio
async def test_close_clears_and_closes_provider() -> None:
    provider = FakeSecretProvider({f"{MANAGED}/versions/latest": b"v"})
    resolver = SecretResolver(provider=provider, clock=FakeClock())
    await resolver.resolve(MANAGED)

    await resolver.close()

    assert provider.closed
    await resolver.resolve(MANAGED)
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_storage_credentials_fall_back_to_file(tmp_path) -> None:
    path = tmp_path / "gcs.json"
    path.write_bytes(b"from-file")
    resolver = SecretResolver(provider=FakeSecretProvider({}), clock=FakeClock())
    record = make_record(storage_credentials_secret=MANAGED, storage_credentials_path=str(path))

    assert await resolve_storage_credentials(resolver, record) == b"from-file"

    with pytest.raises(SecretUnavailable):
        await resolve_storage_credentials(resolver, make_record())
    with pytest.raises(SecretUnavailable):
        await resolve_signing_key(resolver, make_record())


@pytest.mark.asyncio
async def test_verify_tenant_secrets_reports_status_without_values(tmp_path) -> None:
    path = tmp_path / "gcs.json"
    path.write_bytes(b"12345")
    resolver = SecretResolver(provider=FakeSecretProvider({}), clock=FakeClock())
    record = make_record(
        storage_credentials_secret=MANAGED,
        storage_credentials_path=str(path),
        docusign_private_key_secret=None,
    )

    checks = {check.name: check for check in await verify_tenant_secrets(resolver, record)}

    assert checks["storage_credentials_secret"].status == STATUS_UNAVAILABLE
    assert checks["storage_credentials_path"].status == STATUS_RESOLVED
    assert checks["storage_credentials_path"].size_bytes == 5
    assert checks["docusign_private_key_secret"].status == STATUS_MISSING


class _FakeSecretManagerClient:
    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.transport = self
        self.closed = False

    async def access_secret_version(self, request: dict):
        self.requests.append(request)
        return SimpleNamespace(payload=SimpleNamespace(data=b"managed-bytes"))

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_gcp_provider_reads_payload_through_resolver() -> None:
    client = _FakeSecretManagerClient()
    provider = GcpSecretManagerProvider(client=client)
    resolver = SecretResolver(provider=provider, clock=FakeClock())

    assert await resolver.resolve(MANAGED) == b"managed-bytes"
    assert client.requests == [{"name": f"{MANAGED}/versions/latest"}]

    await resolver.close()
    assert client.closed
