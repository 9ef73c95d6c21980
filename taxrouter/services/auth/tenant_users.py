from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxrouter.adapters.registry import AdapterRegistry
from taxrouter.core.errors import ConnectFailed, MalformedInput, NotAuthorized, NotFound
from taxrouter.domain.entities import entity_to_dict
from taxrouter.domain.models import TenantUser
from taxrouter.persistence.guards import require_uuid
from taxrouter.services.tenants.cache import TenantConnectionCache


logger = logging.getLogger(__name__)

# Placeholder client id for a registered user with no client row yet.
NEW_CLIENT_ID = UUID("00000000-0000-0000-0000-000000000000")


def tenant_user_view(row: TenantUser) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "tenant_id": row.tenant_id,
        "client_id": str(row.client_id),
        "firebase_uid": row.firebase_uid,
        "email": row.email,
        "is_active": row.is_active,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class TenantUserService:
    """Links Firebase client identities to client rows inside a tenant database."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TenantConnectionCache,
        adapters: AdapterRegistry,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._adapters = adapters

    async def get(self, tenant_id: str, firebase_uid: str) -> TenantUser | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantUser).where(
                    TenantUser.tenant_id == tenant_id,
                    TenantUser.firebase_uid == firebase_uid,
                    TenantUser.is_active.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def register_self(self, tenant_id: str, *, firebase_uid: str, email: str | None) -> tuple[TenantUser, bool]:
        """Register the caller against a tenant, matching a client row by email."""
        if not email:
            raise MalformedInput("email is required")
        existing = await self.get(tenant_id, firebase_uid)
        if existing is not None:
            return existing, False
        client_id = await self._match_client(tenant_id, email)
        row = await self._insert(tenant_id, client_id=client_id, firebase_uid=firebase_uid, email=email)
        return row, True

    async def register_manual(self, tenant_id: str, *, client_id: str, firebase_uid: str, email: str) -> TenantUser:
        if not client_id or not firebase_uid or not email:
            raise MalformedInput("clientId, firebaseUid, and email are required")
        parsed = UUID(require_uuid(client_id, field="clientId"))
        # Registry errors (unknown or inactive tenant) propagate before the link is written.
        await self._cache.obtain(tenant_id)
        return await self._insert(tenant_id, client_id=parsed, firebase_uid=firebase_uid, email=email)

    async def profile(self, tenant_id: str, firebase_uid: str) -> dict[str, Any]:
        row = await self.get(tenant_id, firebase_uid)
        if row is None:
            # A user registered only for another tenant is forbidden rather than unknown.
            if await self._registered_elsewhere(firebase_uid):
                raise NotAuthorized("tenant user belongs to a different tenant")
            raise NotFound("tenant user", firebase_uid)
        if row.client_id == NEW_CLIENT_ID:
            return {
                "client": {"id": str(NEW_CLIENT_ID), "email": row.email, "first_name": "", "last_name": ""},
                "spouse": None,
                "dependents": [],
                "filings": [],
            }
        handle, record = await self._cache.obtain(tenant_id)
        adapter = self._adapters.for_kind(record.adapter_type)
        comprehensive = await adapter.get_client_comprehensive(handle, record.schema_prefix, str(row.client_id))
        logger.info("tenant_user_profile_read tenant_id=%s client_id=%s", tenant_id, row.client_id)
        return entity_to_dict(comprehensive)

    async def _match_client(self, tenant_id: str, email: str) -> UUID:
        handle, record = await self._cache.obtain(tenant_id)
        adapter = self._adapters.for_kind(record.adapter_type)
        # A lookup failure still registers the user; the link can be repaired by an admin.
        try:
            client = await adapter.find_client_by_email(handle, record.schema_prefix, email)
        except (SQLAlchemyError, ConnectFailed) as exc:
            logger.warning(
                "tenant_user_client_lookup_failed tenant_id=%s error=%s", tenant_id, type(exc).__name__
            )
            return NEW_CLIENT_ID
        if client is None:
            logger.info("tenant_user_client_not_found tenant_id=%s", tenant_id)
            return NEW_CLIENT_ID
        return UUID(client.id)

    async def _insert(self, tenant_id: str, *, client_id: UUID, firebase_uid: str, email: str) -> TenantUser:
        row = TenantUser(
            tenant_id=tenant_id,
            client_id=client_id,
            firebase_uid=firebase_uid,
            email=email,
            is_active=True,
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise MalformedInput("tenant user already registered") from exc
            await session.refresh(row)
        logger.info(
            "tenant_user_registered tenant_id=%s tenant_user_id=%s client_id=%s", tenant_id, row.id, client_id
        )
        return row

    async def _registered_elsewhere(self, firebase_uid: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantUser.id).where(TenantUser.firebase_uid == firebase_uid, TenantUser.is_active.is_(True))
            )
            return result.first() is not None
