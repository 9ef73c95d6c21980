from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TenantConnection(Base):
    __tablename__ = "tenant_connections"
    __table_args__ = (
        CheckConstraint(
            "db_sslmode IN ('disable', 'require', 'verify-ca', 'verify-full')",
            name="chk_db_sslmode",
        ),
        CheckConstraint(
            "storage_provider IS NULL OR storage_provider IN ('gcs', 's3', 'azure')",
            name="chk_storage_provider",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    tenant_name: Mapped[str] = mapped_column(String(255))
    db_host: Mapped[str] = mapped_column(String(255))
    db_port: Mapped[int] = mapped_column(Integer, default=5432, server_default=text("5432"))
    db_user: Mapped[str] = mapped_column(String(100))
    # Sealed with the password prefix; plaintext rows are tolerated during rotation.
    db_password: Mapped[str] = mapped_column(Text)
    db_name: Mapped[str] = mapped_column(String(100))
    db_sslmode: Mapped[str] = mapped_column(String(20), default="require", server_default="require")
    schema_prefix: Mapped[str] = mapped_column(String(100))
    adapter_type: Mapped[str] = mapped_column(String(50), default="mywelltax", server_default="mywelltax")
    storage_provider: Mapped[str | None] = mapped_column(String(20), nullable=True, default="gcs")
    storage_bucket: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Managed-secret path is authoritative; the filesystem path is the local fallback.
    storage_credentials_secret: Mapped[str | None] = mapped_column(String(500), nullable=True)
    storage_credentials_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    docusign_integration_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    docusign_client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    docusign_private_key_secret: Mapped[str | None] = mapped_column(String(500), nullable=True)
    docusign_api_url: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        default="https://demo.docusign.net/restapi",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    firebase_uid: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Global role: admin | accountant | support.
    role: Mapped[str] = mapped_column(String(50), default="accountant", server_default="accountant")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EmployeeTenantAccess(Base):
    __tablename__ = "employee_tenant_access"
    __table_args__ = (UniqueConstraint("employee_id", "tenant_id", name="uq_employee_tenant"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("employees.id", ondelete="CASCADE"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("tenant_connections.tenant_id", ondelete="CASCADE"), index=True
    )
    # Tenant role: admin | accountant | viewer.
    role: Mapped[str] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    created_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)


class TenantUser(Base):
    __tablename__ = "tenant_users"
    __table_args__ = (UniqueConstraint("tenant_id", "firebase_uid", name="uq_tenant_user_uid"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("tenant_connections.tenant_id", ondelete="CASCADE"), index=True
    )
    # Client row id inside the tenant database; not a foreign key across databases.
    client_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True))
    firebase_uid: Mapped[str] = mapped_column(String(255), index=True)
    email: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), index=True)
    tenant_id: Mapped[str] = mapped_column(String(100), index=True)
    client_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50))
    resource_type: Mapped[str] = mapped_column(String(50))
    resource_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class PortalMagicToken(Base):
    __tablename__ = "portal_magic_tokens"

    # Matches the jti claim of the magic-link JWT.
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    client_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), index=True)
    tenant_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("tenant_connections.tenant_id", ondelete="CASCADE"), index=True
    )
    email: Mapped[str] = mapped_column(Text)
    used: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    description: Mapped[str] = mapped_column(Text)
    checksum: Mapped[str] = mapped_column(String(64))
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
