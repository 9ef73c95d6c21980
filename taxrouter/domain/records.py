from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class TenantConnectionRecord:
    # Decrypted snapshot handed out by the registry; the password never reaches repr or logs.
    tenant_id: str
    tenant_name: str
    db_host: str
    db_port: int
    db_user: str
    db_password: str = field(repr=False)
    db_name: str = ""
    db_sslmode: str = "require"
    schema_prefix: str = ""
    adapter_type: str = "mywelltax"
    storage_provider: str | None = None
    storage_bucket: str | None = None
    storage_credentials_secret: str | None = None
    storage_credentials_path: str | None = None
    docusign_integration_key: str | None = None
    docusign_client_id: str | None = None
    docusign_private_key_secret: str | None = None
    docusign_api_url: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class EmployeeIdentity:
    employee_id: UUID
    firebase_uid: str
    email: str
    role: str
    first_name: str | None = None
    last_name: str | None = None


@dataclass(frozen=True)
class PortalIdentity:
    client_id: str
    tenant_id: str
    email: str
    token_type: str


@dataclass(frozen=True)
class TenantUserIdentity:
    firebase_uid: str
    email: str | None = None


Identity = EmployeeIdentity | PortalIdentity | TenantUserIdentity


@dataclass(frozen=True)
class RequestContext:
    """Per-request value handed to data-plane handlers.

    Carries at most one caller identity, the tenant path variable, and, once the
    tenant has been routed, the open handle, the record snapshot, and the adapter
    selected by the record's adapter kind.
    """

    identity: Identity | None = None
    tenant_id: str | None = None
    record: TenantConnectionRecord | None = None
    handle: Any = None
    adapter: Any = None
    path_params: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.identity is not None and not isinstance(
            self.identity, (EmployeeIdentity, PortalIdentity, TenantUserIdentity)
        ):
            raise TypeError(f"unsupported identity kind: {type(self.identity).__name__}")

    @property
    def adapter_kind(self) -> str | None:
        return self.record.adapter_type if self.record is not None else None

    @property
    def schema_prefix(self) -> str:
        if self.record is None:
            raise RuntimeError("request context has no tenant record")
        return self.record.schema_prefix

    @property
    def employee(self) -> EmployeeIdentity | None:
        return self.identity if isinstance(self.identity, EmployeeIdentity) else None

    @property
    def portal(self) -> PortalIdentity | None:
        return self.identity if isinstance(self.identity, PortalIdentity) else None

    @property
    def tenant_user(self) -> TenantUserIdentity | None:
        return self.identity if isinstance(self.identity, TenantUserIdentity) else None
