from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from taxrouter.apps.api.deps import get_core, require_admin
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import EmployeeIdentity
from taxrouter.services.audit import MAX_AUDIT_QUERY_LIMIT, audit_entry_view
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(BaseModel):
    id: str
    employee_id: str
    tenant_id: str
    client_id: str | None
    action: str
    resource_type: str
    resource_id: str | None
    details: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    created_at: str | None


@router.get(
    "/employees/{employee_id}",
    response_model=SuccessEnvelope[list[AuditEntryResponse]] | list[AuditEntryResponse],
)
async def audit_by_employee(
    request: Request,
    employee_id: UUID,
    limit: int = Query(default=100, ge=1, le=MAX_AUDIT_QUERY_LIMIT),
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    rows = await core.audit.list_by_employee(employee_id, limit=limit)
    return success_response(request=request, data=[AuditEntryResponse(**audit_entry_view(row)) for row in rows])


@router.get(
    "/tenants/{tenant_id}",
    response_model=SuccessEnvelope[list[AuditEntryResponse]] | list[AuditEntryResponse],
)
async def audit_by_tenant(
    request: Request,
    tenant_id: str,
    limit: int = Query(default=100, ge=1, le=MAX_AUDIT_QUERY_LIMIT),
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    rows = await core.audit.list_by_tenant(tenant_id, limit=limit)
    return success_response(request=request, data=[AuditEntryResponse(**audit_entry_view(row)) for row in rows])


@router.get(
    "/tenants/{tenant_id}/clients/{client_id}",
    response_model=SuccessEnvelope[list[AuditEntryResponse]] | list[AuditEntryResponse],
)
async def audit_by_client(
    request: Request,
    tenant_id: str,
    client_id: UUID,
    limit: int = Query(default=100, ge=1, le=MAX_AUDIT_QUERY_LIMIT),
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    rows = await core.audit.list_by_client(tenant_id, client_id, limit=limit)
    return success_response(request=request, data=[AuditEntryResponse(**audit_entry_view(row)) for row in rows])
