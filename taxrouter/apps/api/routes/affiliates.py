from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from taxrouter.apps.api.deps import admin_tenant_context
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import RequestContext


router = APIRouter(tags=["affiliates"], responses=DEFAULT_ERROR_RESPONSES)


class AffiliateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    default_commission_rate: Decimal
    stripe_connect_account_id: str | None = None
    payout_method: str
    payout_threshold: Decimal
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CustomerInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


class CommissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    affiliate_id: str
    filing_id: str
    user_id: str
    discount_code_id: str | None = None
    payment_id: str | None = None
    order_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: str
    approved_at: datetime | None = None
    paid_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    customer: CustomerInfoResponse | None = None


class AffiliateStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    affiliate_id: str
    total_clicks: int
    total_conversions: int
    conversion_rate: Decimal
    total_commissions_earned: Decimal
    pending_commissions: Decimal
    approved_commissions: Decimal
    paid_commissions: Decimal
    cancelled_commissions: Decimal
    total_orders: int
    total_revenue: Decimal


class AffiliateCreateRequest(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)
    phone: str | None = None
    default_commission_rate: Decimal | None = Field(default=None, ge=0, le=100)
    stripe_connect_account_id: str | None = None
    payout_method: str | None = None
    payout_threshold: Decimal | None = Field(default=None, ge=0)
    is_active: bool | None = None


class AffiliateUpdateRequest(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: str | None = Field(default=None, min_length=3, max_length=255)
    # An explicit null clears the phone number.
    phone: str | None = None
    default_commission_rate: Decimal | None = Field(default=None, ge=0, le=100)
    stripe_connect_account_id: str | None = None
    payout_method: str | None = None
    payout_threshold: Decimal | None = Field(default=None, ge=0)
    is_active: bool | None = None


@router.get(
    "/{tenant_id}/affiliates",
    response_model=SuccessEnvelope[list[AffiliateResponse]] | list[AffiliateResponse],
)
async def list_affiliates(
    request: Request,
    active_only: bool = False,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    affiliates = await ctx.adapter.list_affiliates(ctx.handle, ctx.schema_prefix, active_only=active_only)
    return success_response(request=request, data=[AffiliateResponse.model_validate(item) for item in affiliates])


@router.post(
    "/{tenant_id}/affiliates",
    status_code=201,
    response_model=SuccessEnvelope[AffiliateResponse] | AffiliateResponse,
)
async def create_affiliate(
    request: Request,
    payload: AffiliateCreateRequest,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    affiliate = await ctx.adapter.create_affiliate(ctx.handle, ctx.schema_prefix, payload.model_dump(exclude_none=True))
    return success_response(request=request, data=AffiliateResponse.model_validate(affiliate))


@router.get(
    "/{tenant_id}/affiliates/{affiliate_id}",
    response_model=SuccessEnvelope[AffiliateResponse] | AffiliateResponse,
)
async def get_affiliate(
    request: Request,
    affiliate_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    affiliate = await ctx.adapter.get_affiliate(ctx.handle, ctx.schema_prefix, affiliate_id)
    return success_response(request=request, data=AffiliateResponse.model_validate(affiliate))


@router.put(
    "/{tenant_id}/affiliates/{affiliate_id}",
    response_model=SuccessEnvelope[AffiliateResponse] | AffiliateResponse,
)
async def update_affiliate(
    request: Request,
    affiliate_id: str,
    payload: AffiliateUpdateRequest,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    affiliate = await ctx.adapter.update_affiliate(
        ctx.handle, ctx.schema_prefix, affiliate_id, payload.model_dump(exclude_unset=True)
    )
    return success_response(request=request, data=AffiliateResponse.model_validate(affiliate))
