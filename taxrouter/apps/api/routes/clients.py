from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict

from taxrouter.apps.api.deps import admin_tenant_context, employee_tenant_context, get_core, record_access
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import RequestContext
from taxrouter.services.audit import AuditAction, AuditResource
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(tags=["clients"], responses=DEFAULT_ERROR_RESPONSES)


class ClientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    role: str
    created_at: datetime | None = None
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    dob: str | None = None
    # Masked as ***-**-NNNN; the stored value is never returned.
    ssn: str | None = None
    address1: str | None = None
    address2: str | None = None
    city: str | None = None
    state: str | None = None
    zipcode: int | None = None


class ClientComprehensiveResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    client: ClientResponse
    spouse: dict[str, Any] | None = None
    dependents: list[dict[str, Any]] = []
    filings: list[dict[str, Any]] = []


@router.get("/{tenant_id}/clients", response_model=SuccessEnvelope[list[ClientResponse]] | list[ClientResponse])
async def list_clients(
    request: Request,
    ctx: RequestContext = Depends(employee_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    clients = await ctx.adapter.list_clients(ctx.handle, ctx.schema_prefix)
    await record_access(request, core, ctx, action=AuditAction.VIEW, resource_type=AuditResource.CLIENT)
    data = [ClientResponse.model_validate(client) for client in clients]
    return success_response(request=request, data=data)


@router.get("/{tenant_id}/clients/{client_id}", response_model=SuccessEnvelope[ClientResponse] | ClientResponse)
async def get_client(
    request: Request,
    client_id: str,
    ctx: RequestContext = Depends(employee_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    client = await ctx.adapter.get_client(ctx.handle, ctx.schema_prefix, client_id)
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.VIEW,
        resource_type=AuditResource.CLIENT,
        client_id=client_id,
        resource_id=client_id,
    )
    return success_response(request=request, data=ClientResponse.model_validate(client))


@router.get(
    "/{tenant_id}/clients/{client_id}/comprehensive",
    response_model=SuccessEnvelope[ClientComprehensiveResponse] | ClientComprehensiveResponse,
)
async def get_client_comprehensive(
    request: Request,
    client_id: str,
    ctx: RequestContext = Depends(employee_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    comprehensive = await ctx.adapter.get_client_comprehensive(ctx.handle, ctx.schema_prefix, client_id)
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.VIEW,
        resource_type=AuditResource.CLIENT,
        client_id=client_id,
        resource_id=client_id,
    )
    return success_response(request=request, data=ClientComprehensiveResponse.model_validate(comprehensive))


@router.get(
    "/{tenant_id}/filings",
    response_model=SuccessEnvelope[list[ClientComprehensiveResponse]] | list[ClientComprehensiveResponse],
)
async def list_clients_by_filings(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(employee_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    results = await ctx.adapter.get_clients_by_filings(ctx.handle, ctx.schema_prefix, limit=limit, offset=offset)
    await record_access(request, core, ctx, action=AuditAction.VIEW, resource_type=AuditResource.FILING)
    data = [ClientComprehensiveResponse.model_validate(item) for item in results]
    return success_response(request=request, data=data)


class FilingCompletedResponse(BaseModel):
    filing_id: str
    status: str
    is_completed: bool


@router.put(
    "/{tenant_id}/filings/{filing_id}/complete",
    response_model=SuccessEnvelope[FilingCompletedResponse] | FilingCompletedResponse,
)
async def complete_filing(
    request: Request,
    filing_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    await ctx.adapter.complete_filing(ctx.handle, ctx.schema_prefix, filing_id)
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.EDIT,
        resource_type=AuditResource.FILING,
        resource_id=filing_id,
    )
    payload = FilingCompletedResponse(filing_id=filing_id, status="COMPLETED", is_completed=True)
    return success_response(request=request, data=payload)
