from __future__ import annotations

import logging

from fastapi import Depends, Request

from taxrouter.core.errors import ConfigError, NotAuthenticated, NotAuthorized
from taxrouter.domain.records import (
    EmployeeIdentity,
    Identity,
    PortalIdentity,
    RequestContext,
    TenantUserIdentity,
)
from taxrouter.services.audit import AuditAction, AuditResource
from taxrouter.services.auth.firebase import FirebaseClaims
from taxrouter.services.auth.portal_tokens import TOKEN_TYPE_SESSION
from taxrouter.services.auth.roles import ROLE_ADMIN, employee_role_allows
from taxrouter.services.bootstrap import CoreServices


logger = logging.getLogger(__name__)


def get_core(request: Request) -> CoreServices:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise ConfigError("core services are not initialised")
    return core


def parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format; an absent header is reported by the caller.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise NotAuthenticated("missing or invalid bearer token")
    return parts[1]


def _require_bearer(request: Request) -> str:
    token = parse_bearer_token(request.headers.get("Authorization"))
    if not token:
        raise NotAuthenticated("missing bearer token")
    return token


async def get_firebase_claims(request: Request, core: CoreServices = Depends(get_core)) -> FirebaseClaims:
    return await core.firebase.verify(_require_bearer(request))


async def get_current_employee(
    claims: FirebaseClaims = Depends(get_firebase_claims),
    core: CoreServices = Depends(get_core),
) -> EmployeeIdentity:
    return await core.employees.identity_for_uid(claims.uid)


async def require_admin(employee: EmployeeIdentity = Depends(get_current_employee)) -> EmployeeIdentity:
    if not employee_role_allows(role=employee.role, required=ROLE_ADMIN):
        logger.info("employee_admin_required employee_id=%s role=%s", employee.employee_id, employee.role)
        raise NotAuthorized("admin role required")
    return employee


async def get_portal_identity(request: Request, core: CoreServices = Depends(get_core)) -> PortalIdentity:
    # Portal routes accept session tokens only; a magic link must be exchanged first.
    claims = core.portal_tokens.verify(_require_bearer(request), expected_type=TOKEN_TYPE_SESSION)
    return PortalIdentity(
        client_id=claims.client_id,
        tenant_id=claims.tenant_id,
        email=claims.email,
        token_type=claims.token_type,
    )


async def get_tenant_user_identity(claims: FirebaseClaims = Depends(get_firebase_claims)) -> TenantUserIdentity:
    return TenantUserIdentity(firebase_uid=claims.uid, email=claims.email)


async def route_tenant(
    request: Request,
    core: CoreServices,
    tenant_id: str,
    identity: Identity | None,
) -> RequestContext:
    handle, record = await core.cache.obtain(tenant_id)
    return RequestContext(
        identity=identity,
        tenant_id=tenant_id,
        record=record,
        handle=handle,
        adapter=core.adapters.for_kind(record.adapter_type),
        path_params={str(key): str(value) for key, value in request.path_params.items()},
    )


async def employee_tenant_context(
    request: Request,
    tenant_id: str,
    employee: EmployeeIdentity = Depends(get_current_employee),
    core: CoreServices = Depends(get_core),
) -> RequestContext:
    if not await core.employees.has_tenant_access(employee, tenant_id):
        logger.info("tenant_access_denied employee_id=%s tenant_id=%s", employee.employee_id, tenant_id)
        raise NotAuthorized("no access to tenant")
    return await route_tenant(request, core, tenant_id, employee)


async def admin_tenant_context(
    request: Request,
    tenant_id: str,
    employee: EmployeeIdentity = Depends(require_admin),
    core: CoreServices = Depends(get_core),
) -> RequestContext:
    return await route_tenant(request, core, tenant_id, employee)


async def record_access(
    request: Request,
    core: CoreServices,
    ctx: RequestContext,
    *,
    action: AuditAction,
    resource_type: AuditResource,
    client_id: str | None = None,
    resource_id: str | None = None,
) -> None:
    # Audit rows name an employee actor; portal and tenant-user reads are logged only.
    employee = ctx.employee
    if employee is None or ctx.tenant_id is None:
        return
    await core.audit.record_request(
        request,
        employee_id=employee.employee_id,
        tenant_id=ctx.tenant_id,
        action=action,
        resource_type=resource_type,
        client_id=client_id,
        resource_id=resource_id,
    )
