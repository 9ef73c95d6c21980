from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from taxrouter.apps.api.deps import get_core, require_admin
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import EmployeeIdentity, TenantConnectionRecord
from taxrouter.persistence.db import pool_stats
from taxrouter.services.bootstrap import CoreServices
from taxrouter.services.tenants.engine import CONNECTION_FIELDS
from taxrouter.services.tenants.secrets import verify_tenant_secrets


router = APIRouter(prefix="/admin", tags=["admin-tenants"], responses=DEFAULT_ERROR_RESPONSES)


class TenantResponse(BaseModel):
    # Password and secret references are never serialized; flags report whether they are set.
    tenant_id: str
    tenant_name: str
    db_host: str
    db_port: int
    db_user: str
    db_name: str
    db_sslmode: str
    schema_prefix: str
    adapter_type: str
    storage_provider: str | None
    storage_bucket: str | None
    has_storage_credentials: bool
    has_signing_key: bool
    docusign_integration_key: str | None
    docusign_client_id: str | None
    docusign_api_url: str | None
    is_active: bool
    created_at: str | None
    updated_at: str | None
    created_by: str | None
    notes: str | None


class TenantCreateRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=100)
    tenant_name: str = Field(min_length=1, max_length=255)
    db_host: str = Field(min_length=1)
    db_port: int | None = Field(default=None, ge=1, le=65535)
    db_user: str = Field(min_length=1)
    db_password: str = Field(min_length=1)
    db_name: str = Field(min_length=1)
    db_sslmode: str | None = None
    schema_prefix: str = Field(min_length=1)
    adapter_type: str | None = None
    storage_provider: str | None = None
    storage_bucket: str | None = None
    storage_credentials_secret: str | None = None
    storage_credentials_path: str | None = None
    docusign_integration_key: str | None = None
    docusign_client_id: str | None = None
    docusign_private_key_secret: str | None = None
    docusign_api_url: str | None = None
    notes: str | None = None


class TenantUpdateRequest(BaseModel):
    tenant_name: str | None = None
    db_host: str | None = None
    db_port: int | None = Field(default=None, ge=1, le=65535)
    db_user: str | None = None
    # Empty or omitted leaves the stored password unchanged.
    db_password: str | None = None
    db_name: str | None = None
    db_sslmode: str | None = None
    schema_prefix: str | None = None
    adapter_type: str | None = None
    storage_provider: str | None = None
    storage_bucket: str | None = None
    storage_credentials_secret: str | None = None
    storage_credentials_path: str | None = None
    docusign_integration_key: str | None = None
    docusign_client_id: str | None = None
    docusign_private_key_secret: str | None = None
    docusign_api_url: str | None = None
    is_active: bool | None = None
    notes: str | None = None


class SecretCheckResponse(BaseModel):
    name: str
    status: str
    size_bytes: int | None


class CacheStatusResponse(BaseModel):
    cached_tenants: list[str]
    control_pool: dict[str, int | None]


def _tenant_response(record: TenantConnectionRecord) -> TenantResponse:
    return TenantResponse(
        tenant_id=record.tenant_id,
        tenant_name=record.tenant_name,
        db_host=record.db_host,
        db_port=record.db_port,
        db_user=record.db_user,
        db_name=record.db_name,
        db_sslmode=record.db_sslmode,
        schema_prefix=record.schema_prefix,
        adapter_type=record.adapter_type,
        storage_provider=record.storage_provider,
        storage_bucket=record.storage_bucket,
        has_storage_credentials=bool(record.storage_credentials_secret or record.storage_credentials_path),
        has_signing_key=bool(record.docusign_private_key_secret),
        docusign_integration_key=record.docusign_integration_key,
        docusign_client_id=record.docusign_client_id,
        docusign_api_url=record.docusign_api_url,
        is_active=record.is_active,
        created_at=record.created_at.isoformat() if record.created_at else None,
        updated_at=record.updated_at.isoformat() if record.updated_at else None,
        created_by=record.created_by,
        notes=record.notes,
    )


@router.get("/tenants", response_model=SuccessEnvelope[list[TenantResponse]] | list[TenantResponse])
async def list_tenants(
    request: Request,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    records = await core.registry.list_all()
    return success_response(request=request, data=[_tenant_response(record) for record in records])


@router.post(
    "/tenants",
    status_code=201,
    response_model=SuccessEnvelope[TenantResponse] | TenantResponse,
)
async def create_tenant(
    request: Request,
    payload: TenantCreateRequest,
    admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    record = await core.registry.create(
        values=payload.model_dump(exclude_none=True),
        created_by=admin.email,
        grant_admin_to=admin.employee_id,
    )
    return success_response(request=request, data=_tenant_response(record))


@router.get("/tenants/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def get_tenant(
    request: Request,
    tenant_id: str,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    record = await core.registry.get_any(tenant_id)
    return success_response(request=request, data=_tenant_response(record))


@router.put("/tenants/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def update_tenant(
    request: Request,
    tenant_id: str,
    payload: TenantUpdateRequest,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    record = await core.registry.update(tenant_id, changes=changes)
    if CONNECTION_FIELDS.intersection(changes):
        await core.cache.invalidate(tenant_id)
    return success_response(request=request, data=_tenant_response(record))


@router.delete("/tenants/{tenant_id}", status_code=204, response_class=Response)
async def deactivate_tenant(
    tenant_id: str,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> Response:
    # Soft delete; an already cached handle lives until idle eviction.
    await core.registry.deactivate(tenant_id)
    return Response(status_code=204)


@router.post(
    "/tenants/{tenant_id}/secrets/verify",
    response_model=SuccessEnvelope[list[SecretCheckResponse]] | list[SecretCheckResponse],
)
async def verify_secrets(
    request: Request,
    tenant_id: str,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    record = await core.registry.get_any(tenant_id)
    checks = await verify_tenant_secrets(core.resolver, record)
    data = [SecretCheckResponse(name=check.name, status=check.status, size_bytes=check.size_bytes) for check in checks]
    return success_response(request=request, data=data)


@router.get("/cache", response_model=SuccessEnvelope[CacheStatusResponse] | CacheStatusResponse)
async def cache_status(
    request: Request,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    payload = CacheStatusResponse(cached_tenants=core.cache.cached_tenants(), control_pool=pool_stats(core.engine))
    return success_response(request=request, data=payload)
