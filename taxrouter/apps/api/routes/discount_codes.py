from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from taxrouter.apps.api.deps import admin_tenant_context
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import RequestContext


router = APIRouter(tags=["discount-codes"], responses=DEFAULT_ERROR_RESPONSES)


class DiscountCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    description: str | None = None
    discount_type: str
    discount_value: Decimal
    max_uses: int | None = None
    current_uses: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool
    is_affiliate_code: bool
    affiliate_id: str | None = None
    commission_rate: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DiscountValidationResponse(BaseModel):
    code: DiscountCodeResponse
    is_valid: bool


class DiscountCodeCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    description: str | None = None
    discount_type: str
    discount_value: Decimal
    max_uses: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None
    affiliate_id: str | None = None
    commission_rate: Decimal | None = Field(default=None, ge=0, le=100)


class DiscountCodeUpdateRequest(BaseModel):
    code: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = None
    discount_type: str | None = None
    discount_value: Decimal | None = None
    max_uses: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None
    commission_rate: Decimal | None = Field(default=None, ge=0, le=100)


@router.get(
    "/{tenant_id}/discount-codes",
    response_model=SuccessEnvelope[list[DiscountCodeResponse]] | list[DiscountCodeResponse],
)
async def list_discount_codes(
    request: Request,
    affiliate_id: str | None = None,
    active_only: bool = False,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    codes = await ctx.adapter.list_discount_codes(
        ctx.handle, ctx.schema_prefix, affiliate_id=affiliate_id, active_only=active_only
    )
    return success_response(request=request, data=[DiscountCodeResponse.model_validate(item) for item in codes])


@router.post(
    "/{tenant_id}/discount-codes",
    status_code=201,
    response_model=SuccessEnvelope[DiscountCodeResponse] | DiscountCodeResponse,
)
async def create_discount_code(
    request: Request,
    payload: DiscountCodeCreateRequest,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    code = await ctx.adapter.create_discount_code(ctx.handle, ctx.schema_prefix, payload.model_dump(exclude_none=True))
    return success_response(request=request, data=DiscountCodeResponse.model_validate(code))


# Declared before /{code_id} so "validate" is not captured as an id.
@router.get(
    "/{tenant_id}/discount-codes/validate",
    response_model=SuccessEnvelope[DiscountValidationResponse] | DiscountValidationResponse,
)
async def validate_discount_code(
    request: Request,
    code: str = Query(min_length=1),
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    found = await ctx.adapter.get_discount_code_by_code(ctx.handle, ctx.schema_prefix, code)
    data = DiscountValidationResponse(code=DiscountCodeResponse.model_validate(found), is_valid=found.is_valid())
    return success_response(request=request, data=data)


@router.get(
    "/{tenant_id}/discount-codes/{code_id}",
    response_model=SuccessEnvelope[DiscountCodeResponse] | DiscountCodeResponse,
)
async def get_discount_code(
    request: Request,
    code_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    code = await ctx.adapter.get_discount_code(ctx.handle, ctx.schema_prefix, code_id)
    return success_response(request=request, data=DiscountCodeResponse.model_validate(code))


@router.put(
    "/{tenant_id}/discount-codes/{code_id}",
    response_model=SuccessEnvelope[DiscountCodeResponse] | DiscountCodeResponse,
)
async def update_discount_code(
    request: Request,
    code_id: str,
    payload: DiscountCodeUpdateRequest,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> dict:
    code = await ctx.adapter.update_discount_code(
        ctx.handle, ctx.schema_prefix, code_id, payload.model_dump(exclude_unset=True)
    )
    return success_response(request=request, data=DiscountCodeResponse.model_validate(code))


@router.put("/{tenant_id}/discount-codes/{code_id}/deactivate", status_code=204, response_class=Response)
async def deactivate_discount_code(
    code_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
) -> Response:
    await ctx.adapter.deactivate_discount_code(ctx.handle, ctx.schema_prefix, code_id)
    return Response(status_code=204)
