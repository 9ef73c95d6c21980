from __future__ import annotations

from dataclasses import dataclass
import logging

from taxrouter.core.errors import SecretUnavailable
from taxrouter.domain.records import TenantConnectionRecord
from taxrouter.services.secrets.resolver import SecretResolver


logger = logging.getLogger(__name__)

STATUS_RESOLVED = "resolved"
STATUS_MISSING = "missing"
STATUS_UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class SecretCheck:
    name: str
    reference: str | None
    status: str
    size_bytes: int | None = None


async def resolve_storage_credentials(resolver: SecretResolver, record: TenantConnectionRecord) -> bytes:
    """Managed secret first; fall back to the filesystem path when the secret is unset or unreadable."""
    if record.storage_credentials_secret:
        try:
            return await resolver.resolve(record.storage_credentials_secret)
        except SecretUnavailable:
            if not record.storage_credentials_path:
                raise
            logger.warning(
                "storage_credentials_secret_fallback tenant_id=%s reference=%s",
                record.tenant_id,
                record.storage_credentials_secret,
            )
    if record.storage_credentials_path:
        return await resolver.resolve(record.storage_credentials_path)
    raise SecretUnavailable("", f"no storage credentials configured for tenant {record.tenant_id}")


async def resolve_signing_key(resolver: SecretResolver, record: TenantConnectionRecord) -> bytes:
    if not record.docusign_private_key_secret:
        raise SecretUnavailable("", f"no signing key configured for tenant {record.tenant_id}")
    return await resolver.resolve(record.docusign_private_key_secret)


async def _check(resolver: SecretResolver, name: str, reference: str | None) -> SecretCheck:
    if not reference:
        return SecretCheck(name=name, reference=None, status=STATUS_MISSING)
    try:
        value = await resolver.resolve(reference)
    except SecretUnavailable:
        return SecretCheck(name=name, reference=reference, status=STATUS_UNAVAILABLE)
    return SecretCheck(name=name, reference=reference, status=STATUS_RESOLVED, size_bytes=len(value))


async def verify_tenant_secrets(resolver: SecretResolver, record: TenantConnectionRecord) -> list[SecretCheck]:
    # Reports reachability only; secret bytes never leave this function.
    return [
        await _check(resolver, "storage_credentials_secret", record.storage_credentials_secret),
        await _check(resolver, "storage_credentials_path", record.storage_credentials_path),
        await _check(resolver, "docusign_private_key_secret", record.docusign_private_key_secret),
    ]
