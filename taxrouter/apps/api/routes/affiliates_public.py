from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from taxrouter.apps.api.deps import get_core, parse_bearer_token, route_tenant
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.apps.api.routes.affiliates import AffiliateResponse, AffiliateStatsResponse, CommissionResponse
from taxrouter.core.errors import NotAuthenticated, NotAuthorized
from taxrouter.domain.records import RequestContext
from taxrouter.persistence.guards import require_uuid
from taxrouter.services.auth.roles import ROLE_ADMIN, employee_role_allows
from taxrouter.services.bootstrap import CoreServices


logger = logging.getLogger(__name__)

router = APIRouter(tags=["affiliate-dashboard"], responses=DEFAULT_ERROR_RESPONSES)


class AffiliateDashboardResponse(BaseModel):
    affiliate: AffiliateResponse
    stats: AffiliateStatsResponse
    recent_commissions: list[CommissionResponse]


async def affiliate_viewer_context(
    request: Request,
    tenant_id: str,
    affiliate_id: str,
    token: str | None = Query(default=None),
    core: CoreServices = Depends(get_core),
) -> RequestContext:
    """Route the tenant for an affiliate token holder or an admin employee.

    A ``?token=`` query parameter wins; it must belong to the affiliate in the
    path. Without one, the caller must present an admin Firebase bearer token.
    """
    affiliate_id = require_uuid(affiliate_id, field="affiliateId")
    if token:
        ctx = await route_tenant(request, core, tenant_id, None)
        owner = await core.affiliate_tokens.validate(ctx.handle, ctx.schema_prefix, token)
        if owner != affiliate_id:
            logger.warning("affiliate_token_scope_mismatch tenant_id=%s affiliate_id=%s", tenant_id, affiliate_id)
            raise NotAuthorized("token does not belong to this affiliate")
        return ctx
    bearer = parse_bearer_token(request.headers.get("Authorization"))
    if not bearer:
        raise NotAuthenticated("affiliate token or admin bearer token required")
    claims = await core.firebase.verify(bearer)
    employee = await core.employees.identity_for_uid(claims.uid)
    if not employee_role_allows(role=employee.role, required=ROLE_ADMIN):
        raise NotAuthorized("admin role required")
    return await route_tenant(request, core, tenant_id, employee)


@router.get(
    "/{tenant_id}/affiliates/{affiliate_id}/dashboard",
    response_model=SuccessEnvelope[AffiliateDashboardResponse] | AffiliateDashboardResponse,
)
async def affiliate_dashboard(
    request: Request,
    affiliate_id: str,
    ctx: RequestContext = Depends(affiliate_viewer_context),
) -> dict:
    affiliate = await ctx.adapter.get_affiliate(ctx.handle, ctx.schema_prefix, affiliate_id)
    stats = await ctx.adapter.get_affiliate_stats(ctx.handle, ctx.schema_prefix, affiliate.id)
    commissions = await ctx.adapter.list_commissions(
        ctx.handle, ctx.schema_prefix, affiliate_id=affiliate.id, limit=10
    )
    data = AffiliateDashboardResponse(
        affiliate=AffiliateResponse.model_validate(affiliate),
        stats=AffiliateStatsResponse.model_validate(stats),
        recent_commissions=[CommissionResponse.model_validate(item) for item in commissions],
    )
    return success_response(request=request, data=data)


@router.get(
    "/{tenant_id}/affiliates/{affiliate_id}/stats",
    response_model=SuccessEnvelope[AffiliateStatsResponse] | AffiliateStatsResponse,
)
async def affiliate_stats(
    request: Request,
    affiliate_id: str,
    ctx: RequestContext = Depends(affiliate_viewer_context),
) -> dict:
    stats = await ctx.adapter.get_affiliate_stats(ctx.handle, ctx.schema_prefix, affiliate_id)
    return success_response(request=request, data=AffiliateStatsResponse.model_validate(stats))


@router.get(
    "/{tenant_id}/affiliates/{affiliate_id}/commissions",
    response_model=SuccessEnvelope[list[CommissionResponse]] | list[CommissionResponse],
)
async def affiliate_commissions(
    request: Request,
    affiliate_id: str,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: RequestContext = Depends(affiliate_viewer_context),
) -> dict:
    commissions = await ctx.adapter.list_commissions(
        ctx.handle, ctx.schema_prefix, affiliate_id=affiliate_id, status=status, limit=limit
    )
    return success_response(request=request, data=[CommissionResponse.model_validate(item) for item in commissions])
