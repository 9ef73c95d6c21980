from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from taxrouter.apps.api.deps import get_core, get_current_employee, get_firebase_claims, require_admin
from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response
from taxrouter.domain.records import EmployeeIdentity
from taxrouter.services.auth.employees import employee_view
from taxrouter.services.auth.firebase import FirebaseClaims
from taxrouter.services.auth.roles import ROLE_ACCOUNTANT
from taxrouter.services.bootstrap import CoreServices


router = APIRouter(prefix="/employees", tags=["employees"], responses=DEFAULT_ERROR_RESPONSES)


class EmployeeResponse(BaseModel):
    id: str
    firebase_uid: str
    email: str
    first_name: str | None
    last_name: str | None
    role: str
    is_active: bool
    created_at: str | None
    updated_at: str | None


class EmployeeRegisterRequest(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)


class EmployeeRegisterResponse(BaseModel):
    created: bool
    employee: EmployeeResponse


class EmployeeUpdateRequest(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)


class TenantAccessResponse(BaseModel):
    tenant_id: str
    tenant_name: str
    role: str
    is_active: bool


class TenantGrantRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    role: str = ROLE_ACCOUNTANT


class TenantGrantResponse(BaseModel):
    employee_id: str
    tenant_id: str
    role: str
    is_active: bool


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[EmployeeRegisterResponse] | EmployeeRegisterResponse,
)
async def register_employee(
    request: Request,
    response: Response,
    payload: EmployeeRegisterRequest,
    claims: FirebaseClaims = Depends(get_firebase_claims),
    core: CoreServices = Depends(get_core),
) -> dict:
    # Bootstrap route: a verified Firebase token is enough, no employee row is required yet.
    row, created = await core.employees.register(
        claims=claims, first_name=payload.first_name, last_name=payload.last_name
    )
    if not created:
        response.status_code = 200
    data = EmployeeRegisterResponse(created=created, employee=EmployeeResponse(**employee_view(row)))
    return success_response(request=request, data=data)


@router.get("", response_model=SuccessEnvelope[list[EmployeeResponse]] | list[EmployeeResponse])
async def list_employees(
    request: Request,
    include_inactive: bool = False,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    rows = await core.employees.list_employees(include_inactive=include_inactive)
    return success_response(request=request, data=[EmployeeResponse(**employee_view(row)) for row in rows])


@router.get("/me", response_model=SuccessEnvelope[EmployeeResponse] | EmployeeResponse)
async def get_me(
    request: Request,
    employee: EmployeeIdentity = Depends(get_current_employee),
    core: CoreServices = Depends(get_core),
) -> dict:
    row = await core.employees.get(employee.employee_id)
    return success_response(request=request, data=EmployeeResponse(**employee_view(row)))


@router.put("/me", response_model=SuccessEnvelope[EmployeeResponse] | EmployeeResponse)
async def update_me(
    request: Request,
    payload: EmployeeUpdateRequest,
    employee: EmployeeIdentity = Depends(get_current_employee),
    core: CoreServices = Depends(get_core),
) -> dict:
    # Role changes are not self-service.
    row = await core.employees.update_profile(
        employee.employee_id, first_name=payload.first_name, last_name=payload.last_name
    )
    return success_response(request=request, data=EmployeeResponse(**employee_view(row)))


@router.get("/me/tenants", response_model=SuccessEnvelope[list[TenantAccessResponse]] | list[TenantAccessResponse])
async def list_my_tenants(
    request: Request,
    employee: EmployeeIdentity = Depends(get_current_employee),
    core: CoreServices = Depends(get_core),
) -> dict:
    access = await core.employees.tenant_access(employee.employee_id)
    data = [
        TenantAccessResponse(
            tenant_id=item.tenant_id, tenant_name=item.tenant_name, role=item.role, is_active=item.is_active
        )
        for item in access
    ]
    return success_response(request=request, data=data)


@router.get("/{employee_id}", response_model=SuccessEnvelope[EmployeeResponse] | EmployeeResponse)
async def get_employee(
    request: Request,
    employee_id: UUID,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    row = await core.employees.get(employee_id)
    return success_response(request=request, data=EmployeeResponse(**employee_view(row)))


@router.post(
    "/{employee_id}/tenants",
    status_code=201,
    response_model=SuccessEnvelope[TenantGrantResponse] | TenantGrantResponse,
)
async def grant_tenant_access(
    request: Request,
    employee_id: UUID,
    payload: TenantGrantRequest,
    admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> dict:
    row = await core.employees.grant(employee_id, payload.tenant_id, role=payload.role, granted_by=admin.employee_id)
    data = TenantGrantResponse(
        employee_id=str(row.employee_id), tenant_id=row.tenant_id, role=row.role, is_active=row.is_active
    )
    return success_response(request=request, data=data)


@router.delete("/{employee_id}/tenants/{tenant_id}", status_code=204, response_class=Response)
async def revoke_tenant_access(
    employee_id: UUID,
    tenant_id: str,
    _admin: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> Response:
    await core.employees.revoke(employee_id, tenant_id)
    return Response(status_code=204)
