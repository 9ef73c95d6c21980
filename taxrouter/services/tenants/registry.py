from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxrouter.adapters.registry import DEFAULT_ADAPTER_KIND
from taxrouter.core.errors import (
    CredentialUnavailable,
    MalformedCiphertext,
    MalformedInput,
    TenantInactive,
    TenantNotFound,
)
from taxrouter.domain.models import EmployeeTenantAccess, TenantConnection
from taxrouter.domain.records import TenantConnectionRecord
from taxrouter.persistence.guards import is_valid_schema_prefix
from taxrouter.services.crypto.secret_box import SealKind, SecretBox


logger = logging.getLogger(__name__)

SSL_MODES = ("disable", "require", "verify-ca", "verify-full")
STORAGE_PROVIDERS = ("gcs", "s3", "azure")
DEFAULT_SIGNING_API_URL = "https://demo.docusign.net/restapi"

# Columns an admin may change after creation; tenant_id is immutable.
UPDATABLE_FIELDS = (
    "tenant_name",
    "db_host",
    "db_port",
    "db_user",
    "db_password",
    "db_name",
    "db_sslmode",
    "schema_prefix",
    "adapter_type",
    "storage_provider",
    "storage_bucket",
    "storage_credentials_secret",
    "storage_credentials_path",
    "docusign_integration_key",
    "docusign_client_id",
    "docusign_private_key_secret",
    "docusign_api_url",
    "is_active",
    "notes",
)


def record_from_row(row: TenantConnection, secret_box: SecretBox) -> TenantConnectionRecord:
    """Build the decrypted snapshot for a control-plane row.

    Sealed passwords are opened; unsealed ones pass through so rows written
    before sealing was introduced keep working.
    """
    password = row.db_password or ""
    if secret_box.is_sealed(password, SealKind.PASSWORD):
        try:
            password = secret_box.open(password, SealKind.PASSWORD)
        except MalformedCiphertext as exc:
            logger.error("tenant_credential_unseal_failed tenant_id=%s", row.tenant_id)
            raise CredentialUnavailable(f"stored credential unusable: {row.tenant_id}") from exc
    return TenantConnectionRecord(
        tenant_id=row.tenant_id,
        tenant_name=row.tenant_name,
        db_host=row.db_host,
        db_port=int(row.db_port or 5432),
        db_user=row.db_user,
        db_password=password,
        db_name=row.db_name,
        db_sslmode=row.db_sslmode or "require",
        schema_prefix=row.schema_prefix,
        adapter_type=row.adapter_type or DEFAULT_ADAPTER_KIND,
        storage_provider=row.storage_provider,
        storage_bucket=row.storage_bucket,
        storage_credentials_secret=row.storage_credentials_secret,
        storage_credentials_path=row.storage_credentials_path,
        docusign_integration_key=row.docusign_integration_key,
        docusign_client_id=row.docusign_client_id,
        docusign_private_key_secret=row.docusign_private_key_secret,
        docusign_api_url=row.docusign_api_url,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_by=row.created_by,
        notes=row.notes,
    )


def validate_tenant_fields(values: dict[str, Any], *, adapter_kinds: Iterable[str]) -> None:
    # Shared by create and partial update; only supplied keys are checked.
    if "tenant_id" in values and not str(values["tenant_id"] or "").strip():
        raise MalformedInput("tenant_id is required")
    if "db_sslmode" in values and values["db_sslmode"] not in SSL_MODES:
        raise MalformedInput(f"db_sslmode must be one of: {', '.join(SSL_MODES)}")
    provider = values.get("storage_provider")
    if provider is not None and provider not in STORAGE_PROVIDERS:
        raise MalformedInput(f"storage_provider must be one of: {', '.join(STORAGE_PROVIDERS)}")
    if "schema_prefix" in values and not is_valid_schema_prefix(values["schema_prefix"]):
        raise MalformedInput("schema_prefix must be a lowercase bare SQL identifier")
    kinds = tuple(adapter_kinds)
    if "adapter_type" in values and values["adapter_type"] not in kinds:
        raise MalformedInput(f"adapter_type must be one of: {', '.join(kinds)}")
    if "db_port" in values and values["db_port"] is not None:
        port = int(values["db_port"])
        if port < 1 or port > 65535:
            raise MalformedInput("db_port must be between 1 and 65535")


class TenantRegistry:
    """Control-plane access to tenant connection records.

    The registry is the only component that sees decrypted passwords; callers get
    immutable :class:`TenantConnectionRecord` snapshots.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        secret_box: SecretBox,
        adapter_kinds: Iterable[str] = (DEFAULT_ADAPTER_KIND,),
    ) -> None:
        self._session_factory = session_factory
        self._secret_box = secret_box
        self._adapter_kinds = tuple(adapter_kinds)

    async def get(self, tenant_id: str) -> TenantConnectionRecord:
        async with self._session_factory() as session:
            row = await self._load_row(session, tenant_id)
        if row is None:
            raise TenantNotFound(tenant_id)
        if not row.is_active:
            raise TenantInactive(tenant_id)
        return record_from_row(row, self._secret_box)

    async def get_any(self, tenant_id: str) -> TenantConnectionRecord:
        # Admin reads include deactivated tenants.
        async with self._session_factory() as session:
            row = await self._load_row(session, tenant_id)
        if row is None:
            raise TenantNotFound(tenant_id)
        return record_from_row(row, self._secret_box)

    async def list_all(self) -> list[TenantConnectionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantConnection).order_by(TenantConnection.created_at.desc())
            )
            rows = list(result.scalars().all())
        return [record_from_row(row, self._secret_box) for row in rows]

    async def list_active_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantConnection.tenant_id)
                .where(TenantConnection.is_active.is_(True))
                .order_by(TenantConnection.created_at.desc())
            )
            return [str(value) for value in result.scalars().all()]

    async def create(
        self,
        *,
        values: dict[str, Any],
        created_by: str | None = None,
        grant_admin_to: UUID | None = None,
    ) -> TenantConnectionRecord:
        required = ("tenant_id", "tenant_name", "db_host", "db_user", "db_password", "db_name", "schema_prefix")
        missing = [name for name in required if not values.get(name)]
        if missing:
            raise MalformedInput(f"missing required fields: {', '.join(missing)}")
        payload = {
            "db_port": 5432,
            "db_sslmode": "require",
            "adapter_type": DEFAULT_ADAPTER_KIND,
            "storage_provider": "gcs",
            "docusign_api_url": DEFAULT_SIGNING_API_URL,
            **{key: value for key, value in values.items() if value is not None},
        }
        validate_tenant_fields(payload, adapter_kinds=self._adapter_kinds)
        payload["db_password"] = self._secret_box.seal(str(payload["db_password"]), SealKind.PASSWORD)
        row = TenantConnection(
            **{key: value for key, value in payload.items() if key in UPDATABLE_FIELDS or key == "tenant_id"},
            is_active=True,
            created_by=created_by,
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise MalformedInput(f"tenant already exists: {payload['tenant_id']}") from exc
            await session.refresh(row)
        logger.info("tenant_created tenant_id=%s adapter=%s", row.tenant_id, row.adapter_type)
        if grant_admin_to is not None:
            await self._grant_creator_access(row.tenant_id, grant_admin_to)
        return record_from_row(row, self._secret_box)

    async def update(self, tenant_id: str, *, changes: dict[str, Any]) -> TenantConnectionRecord:
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise MalformedInput(f"unknown fields: {', '.join(unknown)}")
        validate_tenant_fields(changes, adapter_kinds=self._adapter_kinds)
        async with self._session_factory() as session:
            row = await self._load_row(session, tenant_id)
            if row is None:
                raise TenantNotFound(tenant_id)
            for key, value in changes.items():
                if key == "db_password":
                    if not value:
                        continue
                    value = self._secret_box.seal(str(value), SealKind.PASSWORD)
                setattr(row, key, value)
            await session.commit()
            await session.refresh(row)
        logger.info("tenant_updated tenant_id=%s fields=%s", tenant_id, ",".join(sorted(changes)))
        return record_from_row(row, self._secret_box)

    async def deactivate(self, tenant_id: str) -> None:
        async with self._session_factory() as session:
            row = await self._load_row(session, tenant_id)
            if row is None:
                raise TenantNotFound(tenant_id)
            row.is_active = False
            await session.commit()
        logger.info("tenant_deactivated tenant_id=%s", tenant_id)

    async def _load_row(self, session: AsyncSession, tenant_id: str) -> TenantConnection | None:
        result = await session.execute(
            select(TenantConnection).where(TenantConnection.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def _grant_creator_access(self, tenant_id: str, employee_id: UUID) -> None:
        # The tenant row is already committed; a failed grant is logged, not raised.
        async with self._session_factory() as session:
            try:
                session.add(
                    EmployeeTenantAccess(
                        employee_id=employee_id,
                        tenant_id=tenant_id,
                        role="admin",
                        is_active=True,
                        created_by=employee_id,
                    )
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "tenant_creator_grant_failed tenant_id=%s employee_id=%s",
                    tenant_id,
                    employee_id,
                    exc_info=exc,
                )
