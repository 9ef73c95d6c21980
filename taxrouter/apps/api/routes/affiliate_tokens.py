from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from taxrouter.apps.api.deps import admin_tenant_context, get_core
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import RequestContext
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(tags=["affiliate-tokens"], responses=DEFAULT_ERROR_RESPONSES)


class AffiliateTokenResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    affiliate_id: str
    is_active: bool
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TokenGenerateRequest(BaseModel):
    expires_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)


class TokenGenerateResponse(BaseModel):
    # The plaintext is returned once and is not retrievable afterwards.
    token: str
    dashboard_url: str
    metadata: AffiliateTokenResponse


@router.post(
    "/{tenant_id}/affiliates/{affiliate_id}/generate-token",
    status_code=201,
    response_model=SuccessEnvelope[TokenGenerateResponse] | TokenGenerateResponse,
)
async def generate_token(
    request: Request,
    tenant_id: str,
    affiliate_id: str,
    payload: TokenGenerateRequest | None = None,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    payload = payload or TokenGenerateRequest()
    # Confirms the affiliate exists in this tenant before a token is bound to it.
    affiliate = await ctx.adapter.get_affiliate(ctx.handle, ctx.schema_prefix, affiliate_id)
    plaintext, token = await core.affiliate_tokens.generate(
        ctx.handle,
        ctx.schema_prefix,
        affiliate_id=affiliate.id,
        expires_at=payload.expires_at,
        notes=payload.notes,
    )
    base_url = core.file_config.portal.base_url.rstrip("/")
    data = TokenGenerateResponse(
        token=plaintext,
        dashboard_url=f"{base_url}/{tenant_id}/affiliate/{affiliate.id}?token={plaintext}",
        metadata=AffiliateTokenResponse.model_validate(token),
    )
    return success_response(request=request, data=data)


@router.get(
    "/{tenant_id}/affiliates/{affiliate_id}/tokens",
    response_model=SuccessEnvelope[list[AffiliateTokenResponse]] | list[AffiliateTokenResponse],
)
async def list_tokens(
    request: Request,
    affiliate_id: str,
    active_only: bool = False,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> dict:
    tokens = await core.affiliate_tokens.list_for_affiliate(
        ctx.handle, ctx.schema_prefix, affiliate_id, active_only=active_only
    )
    return success_response(request=request, data=[AffiliateTokenResponse.model_validate(item) for item in tokens])


@router.delete("/{tenant_id}/affiliates/{affiliate_id}/tokens/{token_id}", status_code=204, response_class=Response)
async def revoke_token(
    affiliate_id: str,
    token_id: str,
    ctx: RequestContext = Depends(admin_tenant_context),
    core: CoreServices = Depends(get_core),
) -> Response:
    await core.affiliate_tokens.revoke(ctx.handle, ctx.schema_prefix, token_id, affiliate_id=affiliate_id)
    return Response(status_code=204)
