from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from taxrouter.apps.api.deps import get_core, get_tenant_user_identity, require_admin
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import EmployeeIdentity, TenantUserIdentity
from taxrouter.services.auth.tenant_users import tenant_user_view
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(tags=["tenant-users"], responses=DEFAULT_ERROR_RESPONSES)


class TenantUserResponse(BaseModel):
    id: str
    tenant_id: str
    client_id: str
    firebase_uid: str
    email: str
    is_active: bool
    created_at: str | None
    updated_at: str | None


class TenantUserSelfRegisterRequest(BaseModel):
    # Used only when the Firebase token carries no email claim.
    email: str | None = Field(default=None, max_length=255)


class TenantUserRegisterResponse(BaseModel):
    created: bool
    user: TenantUserResponse


class TenantUserManualRegisterRequest(BaseModel):
    client_id: str = Field(min_length=1)
    firebase_uid: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=255)


class TenantUserProfileResponse(BaseModel):
    client: dict[str, Any]
    spouse: dict[str, Any] | None = None
    dependents: list[dict[str, Any]] = []
    filings: list[dict[str, Any]] = []


@router.post(
    "/{tenant_id}/user/register",
    status_code=201,
    response_model=SuccessEnvelope[TenantUserRegisterResponse] | TenantUserRegisterResponse,
)
async def register_tenant_user(
    request: Request,
    response: Response,
    tenant_id: str,
    payload: TenantUserSelfRegisterRequest | None = None,
    user: TenantUserIdentity = Depends(get_tenant_user_identity),
    core: CoreServices = Depends(get_core),
) -> dict:
    email = user.email or (payload.email if payload else None)
    row, created = await core.tenant_users.register_self(tenant_id, firebase_uid=user.firebase_uid, email=email)
    if not created:
        response.status_code = 200
    data = TenantUserRegisterResponse(created=created, user=TenantUserResponse(**tenant_user_view(row)))
    return success_response(request=request, data=data)


@router.get(
    "/{tenant_id}/user/profile",
    response_model=SuccessEnvelope[TenantUserProfileResponse] | TenantUserProfileResponse,
)
async def tenant_user_profile(
    request: Request,
    tenant_id: str,
    user: TenantUserIdentity = Depends(get_tenant_user_identity),
    core: CoreServices = Depends(get_core),
) -> dict:
    profile = await core.tenant_users.profile(tenant_id, user.firebase_uid)
    return success_response(request=request, data=TenantUserProfileResponse(**profile))


@router.post(
    "/{tenant_id}/users/register",
    status_code=201,
    response_model=SuccessEnvelope[TenantUserResponse] | TenantUserResponse,
)
async def register_tenant_user_manually(
    request: Request,
    tenant_id: str,
    payload: TenantUserManualRegisterRequest,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    row = await core.tenant_users.register_manual(
        tenant_id, client_id=payload.client_id, firebase_uid=payload.firebase_uid, email=payload.email
    )
    return success_response(request=request, data=TenantUserResponse(**tenant_user_view(row)))
