from __future__ import annotations

from taxrouter.core.errors import MalformedInput


ROLE_ADMIN = "admin"
ROLE_ACCOUNTANT = "accountant"
ROLE_SUPPORT = "support"
ROLE_VIEWER = "viewer"

EMPLOYEE_ROLES = (ROLE_ADMIN, ROLE_ACCOUNTANT, ROLE_SUPPORT)
TENANT_ROLES = (ROLE_ADMIN, ROLE_ACCOUNTANT, ROLE_VIEWER)

# Higher number grants more within a tenant.
TENANT_ROLE_ORDER: dict[str, int] = {
    ROLE_VIEWER: 1,
    ROLE_ACCOUNTANT: 2,
    ROLE_ADMIN: 3,
}


def normalize_employee_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized not in EMPLOYEE_ROLES:
        raise MalformedInput(f"role must be one of: {', '.join(EMPLOYEE_ROLES)}")
    return normalized


def normalize_tenant_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized not in TENANT_ROLES:
        raise MalformedInput(f"role must be one of: {', '.join(TENANT_ROLES)}")
    return normalized


def employee_role_allows(*, role: str, required: str) -> bool:
    # Global admins satisfy every employee role requirement.
    return role == ROLE_ADMIN or role == required


def tenant_role_allows(*, role: str, minimum_role: str) -> bool:
    return TENANT_ROLE_ORDER.get(role, 0) >= TENANT_ROLE_ORDER.get(minimum_role, 0)
