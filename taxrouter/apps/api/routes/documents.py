from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from taxrouter.apps.api.deps import admin_tenant_context, get_core, record_access
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import RequestContext
from taxrouter.services.audit import AuditAction, AuditResource
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    file_path: str
    type: str
    filing_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DocumentCreateRequest(BaseModel):
    # Metadata for an object already written to the tenant's bucket.
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=255)
    file_path: str = Field(min_length=1)
    type: str = Field(min_length=1, max_length=100)


@router.post(
    "/{tenant_id}/filings/{filing_id}/documents",
    status_code=201,
    response_model=SuccessEnvelope[DocumentResponse] | DocumentResponse,
)
async def create_document(
    request: Request,
    filing_id: str,
    payload: DocumentCreateRequest,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    document = await ctx.adapter.create_document(
        ctx.handle, ctx.schema_prefix, {**payload.model_dump(), "filing_id": filing_id}
    )
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.UPLOAD,
        resource_type=AuditResource.DOCUMENT,
        client_id=document.user_id,
        resource_id=document.id,
    )
    return success_response(request=request, data=DocumentResponse.model_validate(document))


@router.get(
    "/{tenant_id}/filings/{filing_id}/documents",
    response_model=SuccessEnvelope[list[DocumentResponse]] | list[DocumentResponse],
)
async def list_filing_documents(
    request: Request,
    filing_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    documents = await ctx.adapter.list_documents_by_filing(ctx.handle, ctx.schema_prefix, filing_id)
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.VIEW,
        resource_type=AuditResource.DOCUMENT,
        client_id=documents[0].user_id if documents else None,
        resource_id=filing_id,
    )
    return success_response(request=request, data=[DocumentResponse.model_validate(item) for item in documents])


@router.get(
    "/{tenant_id}/documents/{document_id}",
    response_model=SuccessEnvelope[DocumentResponse] | DocumentResponse,
)
async def get_document(
    request: Request,
    document_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    document = await ctx.adapter.get_document(ctx.handle, ctx.schema_prefix, document_id)
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.VIEW,
        resource_type=AuditResource.DOCUMENT,
        client_id=document.user_id,
        resource_id=document.id,
    )
    return success_response(request=request, data=DocumentResponse.model_validate(document))


@router.delete("/{tenant_id}/documents/{document_id}", status_code=204, response_class=Response)
async def delete_document(
    request: Request,
    document_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> Response:
    # Load first so the audit row can name the owning client.
    document = await ctx.adapter.get_document(ctx.handle, ctx.schema_prefix, document_id)
    await ctx.adapter.delete_document(ctx.handle, ctx.schema_prefix, document.id)
    await record_access(
        request,
        core,
        ctx,
        action=AuditAction.DELETE,
        resource_type=AuditResource.DOCUMENT,
        client_id=document.user_id,
        resource_id=document.id,
    )
    return Response(status_code=204)
