from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from taxrouter.apps.api.deps import get_core, get_portal_identity, require_admin, route_tenant
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.apps.api.routes.clients import ClientComprehensiveResponse
from taxrouter.domain.records import EmployeeIdentity, PortalIdentity
from taxrouter.services.audit import client_ip
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(tags=["portal"], responses=DEFAULT_ERROR_RESPONSES)


class PortalLinkResponse(BaseModel):
    url: str
    email: str
    expires_at: datetime


class PortalTokenInfoResponse(BaseModel):
    tenant_id: str
    client_id: str
    email: str
    expires_at: datetime


class PortalExchangeRequest(BaseModel):
    magic_token: str = Field(min_length=1)
    last_four: str = Field(min_length=4, max_length=4, pattern=r"^\d{4}$")


class PortalSessionResponse(BaseModel):
    session_token: str
    expires_in: int
    client_id: str
    tenant_id: str


@router.post(
    "/{tenant_id}/clients/{client_id}/portal-link",
    status_code=201,
    response_model=SuccessEnvelope[PortalLinkResponse] | PortalLinkResponse,
)
async def create_portal_link(
    request: Request,
    tenant_id: str,
    client_id: str,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    link = await core.magic_links.issue(tenant_id, client_id)
    data = PortalLinkResponse(url=link.url, email=link.email, expires_at=link.token.expires_at)
    return success_response(request=request, data=data)


@router.get(
    "/portal/validate",
    response_model=SuccessEnvelope[PortalTokenInfoResponse] | PortalTokenInfoResponse,
)
async def validate_portal_link(
    request: Request,
    token: str = Query(min_length=1),
    core: CoreServices = Depends(get_core),
) -> dict:
    claims = core.magic_links.inspect(token)
    data = PortalTokenInfoResponse(
        tenant_id=claims.tenant_id,
        client_id=claims.client_id,
        email=claims.email,
        expires_at=claims.expires_at,
    )
    return success_response(request=request, data=data)


@router.post(
    "/portal/exchange",
    response_model=SuccessEnvelope[PortalSessionResponse] | PortalSessionResponse,
)
async def exchange_portal_link(
    request: Request,
    payload: PortalExchangeRequest,
    core: CoreServices = Depends(get_core),
) -> dict:
    session = await core.magic_links.exchange(
        payload.magic_token,
        payload.last_four,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    data = PortalSessionResponse(
        session_token=session.token.token,
        expires_in=session.expires_in,
        client_id=session.client_id,
        tenant_id=session.tenant_id,
    )
    return success_response(request=request, data=data)


@router.get(
    "/portal/me",
    response_model=SuccessEnvelope[ClientComprehensiveResponse] | ClientComprehensiveResponse,
)
async def portal_me(
    request: Request,
    portal: PortalIdentity = Depends(get_portal_identity),
    core: CoreServices = Depends(get_core),
) -> dict:
    # The tenant comes from the session token, never from the request path.
    ctx = await route_tenant(request, core, portal.tenant_id, portal)
    comprehensive = await ctx.adapter.get_client_comprehensive(ctx.handle, ctx.schema_prefix, portal.client_id)
    return success_response(request=request, data=ClientComprehensiveResponse.model_validate(comprehensive))
