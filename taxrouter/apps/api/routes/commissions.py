from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from taxrouter.apps.api.deps import admin_tenant_context
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES, TRANSITION_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.apps.api.routes.affiliates import CommissionResponse
from taxrouter.domain.records import RequestContext


router = APIRouter(tags=["commissions"], responses=DEFAULT_ERROR_RESPONSES)


class CommissionCancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


@router.get(
    "/{tenant_id}/commissions",
    response_model=SuccessEnvelope[list[CommissionResponse]] | list[CommissionResponse],
)
async def list_commissions(
    request: Request,
    affiliate_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    commissions = await ctx.adapter.list_commissions(
        ctx.handle, ctx.schema_prefix, affiliate_id=affiliate_id, status=status, limit=limit
    )
    return success_response(request=request, data=[CommissionResponse.model_validate(item) for item in commissions])


@router.put(
    "/{tenant_id}/commissions/{commission_id}/approve",
    response_model=SuccessEnvelope[CommissionResponse] | CommissionResponse,
    responses=TRANSITION_ERROR_RESPONSES,
)
async def approve_commission(
    request: Request,
    commission_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    commission = await ctx.adapter.approve_commission(ctx.handle, ctx.schema_prefix, commission_id)
    return success_response(request=request, data=CommissionResponse.model_validate(commission))


@router.put(
    "/{tenant_id}/commissions/{commission_id}/mark-paid",
    response_model=SuccessEnvelope[CommissionResponse] | CommissionResponse,
    responses=TRANSITION_ERROR_RESPONSES,
)
async def mark_commission_paid(
    request: Request,
    commission_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    commission = await ctx.adapter.mark_commission_paid(ctx.handle, ctx.schema_prefix, commission_id)
    return success_response(request=request, data=CommissionResponse.model_validate(commission))


@router.put(
    "/{tenant_id}/commissions/{commission_id}/cancel",
    response_model=SuccessEnvelope[CommissionResponse] | CommissionResponse,
    responses=TRANSITION_ERROR_RESPONSES,
)
async def cancel_commission(
    request: Request,
    commission_id: str,
    payload: CommissionCancelRequest,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    commission = await ctx.adapter.cancel_commission(ctx.handle, ctx.schema_prefix, commission_id, payload.reason)
    return success_response(request=request, data=CommissionResponse.model_validate(commission))
