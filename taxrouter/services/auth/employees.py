from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxrouter.core.errors import MalformedInput, NotAuthorized, NotFound, TenantNotFound
from taxrouter.domain.models import Employee, EmployeeTenantAccess, TenantConnection
from taxrouter.domain.records import EmployeeIdentity
from taxrouter.services.auth.firebase import FirebaseClaims
from taxrouter.services.auth.roles import (
    ROLE_ACCOUNTANT,
    ROLE_ADMIN,
    normalize_tenant_role,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantAccessView:
    tenant_id: str
    tenant_name: str
    role: str
    is_active: bool


def identity_from_employee(row: Employee) -> EmployeeIdentity:
    return EmployeeIdentity(
        employee_id=row.id,
        firebase_uid=row.firebase_uid,
        email=row.email,
        role=row.role,
        first_name=row.first_name,
        last_name=row.last_name,
    )


def employee_view(row: Employee) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "firebase_uid": row.firebase_uid,
        "email": row.email,
        "first_name": row.first_name,
        "last_name": row.last_name,
        "role": row.role,
        "is_active": row.is_active,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class EmployeeService:
    """Employee directory and per-tenant access grants in the control plane."""

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def identity_for_uid(self, firebase_uid: str) -> EmployeeIdentity:
        row = await self.get_by_firebase_uid(firebase_uid)
        if row is None:
            raise NotAuthorized("employee not registered or inactive")
        return identity_from_employee(row)

    async def get_by_firebase_uid(self, firebase_uid: str) -> Employee | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Employee).where(Employee.firebase_uid == firebase_uid, Employee.is_active.is_(True))
            )
            return result.scalar_one_or_none()

    async def get(self, employee_id: UUID) -> Employee:
        async with self._session_factory() as session:
            row = await session.get(Employee, employee_id)
        if row is None:
            raise NotFound("employee", str(employee_id))
        return row

    async def list_employees(self, *, include_inactive: bool = False) -> list[Employee]:
        query = select(Employee).order_by(Employee.created_at.desc())
        if not include_inactive:
            query = query.where(Employee.is_active.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def register(
        self,
        *,
        claims: FirebaseClaims,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[Employee, bool]:
        """Create the employee for a verified Firebase identity; returns (row, created).

        The uid and email come from the verified token, never from the request body.
        The first employee of an empty directory becomes the global admin.
        """
        if not claims.email:
            raise MalformedInput("id token carries no email")
        existing = await self.get_by_firebase_uid(claims.uid)
        if existing is not None:
            return existing, False
        async with self._session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(Employee))
            row = Employee(
                firebase_uid=claims.uid,
                email=claims.email,
                first_name=first_name,
                last_name=last_name,
                role=ROLE_ADMIN if not count else ROLE_ACCOUNTANT,
                is_active=True,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise MalformedInput("employee already registered") from exc
            await session.refresh(row)
        logger.info("employee_registered employee_id=%s role=%s", row.id, row.role)
        return row, True

    async def update_profile(
        self,
        employee_id: UUID,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> Employee:
        async with self._session_factory() as session:
            row = await session.get(Employee, employee_id)
            if row is None:
                raise NotFound("employee", str(employee_id))
            if first_name is not None:
                row.first_name = first_name
            if last_name is not None:
                row.last_name = last_name
            await session.commit()
            await session.refresh(row)
        logger.info("employee_profile_updated employee_id=%s", employee_id)
        return row

    async def tenant_access(self, employee_id: UUID) -> list[TenantAccessView]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    EmployeeTenantAccess.tenant_id,
                    TenantConnection.tenant_name,
                    EmployeeTenantAccess.role,
                    EmployeeTenantAccess.is_active,
                )
                .join(TenantConnection, TenantConnection.tenant_id == EmployeeTenantAccess.tenant_id)
                .where(
                    EmployeeTenantAccess.employee_id == employee_id,
                    EmployeeTenantAccess.is_active.is_(True),
                    TenantConnection.is_active.is_(True),
                )
                .order_by(TenantConnection.tenant_name)
            )
            rows = result.all()
        return [
            TenantAccessView(tenant_id=row[0], tenant_name=row[1], role=row[2], is_active=bool(row[3]))
            for row in rows
        ]

    async def has_tenant_access(self, identity: EmployeeIdentity, tenant_id: str) -> bool:
        if identity.role == ROLE_ADMIN:
            return True
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmployeeTenantAccess.id).where(
                    EmployeeTenantAccess.employee_id == identity.employee_id,
                    EmployeeTenantAccess.tenant_id == tenant_id,
                    EmployeeTenantAccess.is_active.is_(True),
                )
            )
            return result.first() is not None

    async def grant(
        self,
        employee_id: UUID,
        tenant_id: str,
        *,
        role: str,
        granted_by: UUID,
    ) -> EmployeeTenantAccess:
        role = normalize_tenant_role(role)
        async with self._session_factory() as session:
            if await session.get(Employee, employee_id) is None:
                raise NotFound("employee", str(employee_id))
            tenant = await session.execute(
                select(TenantConnection.id).where(TenantConnection.tenant_id == tenant_id)
            )
            if tenant.first() is None:
                raise TenantNotFound(tenant_id)
            result = await session.execute(
                select(EmployeeTenantAccess).where(
                    EmployeeTenantAccess.employee_id == employee_id,
                    EmployeeTenantAccess.tenant_id == tenant_id,
                )
            )
            row = result.scalar_one_or_none()
            # Re-granting reactivates the existing pair instead of inserting a duplicate.
            if row is None:
                row = EmployeeTenantAccess(
                    employee_id=employee_id,
                    tenant_id=tenant_id,
                    role=role,
                    is_active=True,
                    created_by=granted_by,
                )
                session.add(row)
            else:
                row.role = role
                row.is_active = True
            await session.commit()
            await session.refresh(row)
        logger.info(
            "employee_tenant_access_granted employee_id=%s tenant_id=%s role=%s granted_by=%s",
            employee_id,
            tenant_id,
            role,
            granted_by,
        )
        return row

    async def revoke(self, employee_id: UUID, tenant_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmployeeTenantAccess).where(
                    EmployeeTenantAccess.employee_id == employee_id,
                    EmployeeTenantAccess.tenant_id == tenant_id,
                    EmployeeTenantAccess.is_active.is_(True),
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFound("tenant access", f"{employee_id}/{tenant_id}")
            row.is_active = False
            await session.commit()
        logger.info("employee_tenant_access_revoked employee_id=%s tenant_id=%s", employee_id, tenant_id)
