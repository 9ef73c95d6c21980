from __future__ import annotations

from enum import Enum
import ipaddress
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request

from taxrouter.core.errors import MalformedInput
from taxrouter.domain.models import AuditLog


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "secret", "token", "ssn", "authorization"]
_REDACTED_VALUE = "[REDACTED]"
MAX_AUDIT_QUERY_LIMIT = 1000


class AuditAction(str, Enum):
    VIEW = "VIEW"
    EDIT = "EDIT"
    DELETE = "DELETE"
    DOWNLOAD = "DOWNLOAD"
    UPLOAD = "UPLOAD"
    CREATE = "CREATE"
    EXPORT = "EXPORT"


class AuditResource(str, Enum):
    CLIENT = "CLIENT"
    FILING = "FILING"
    DOCUMENT = "DOCUMENT"
    SSN = "SSN"
    SPOUSE = "SPOUSE"
    DEPENDENT = "DEPENDENT"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_details(item) for item in value]
    return value


def _sanitize_query(query: str) -> str:
    # Query strings carry portal and affiliate tokens; redact values of sensitive keys.
    if not query:
        return ""
    parts = []
    for pair in query.split("&"):
        key, sep, _ = pair.partition("=")
        parts.append(f"{key}={_REDACTED_VALUE}" if sep and _is_sensitive_key(key) else pair)
    return "&".join(parts)


def _valid_ip(value: str | None) -> str | None:
    # ip_address lands in an INET column; anything unparseable would fail the insert.
    if not value:
        return None
    candidate = value.strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate


def client_ip(request: Request | None) -> str | None:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer.

    Candidates that are not IP addresses are skipped.
    """
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = _valid_ip(forwarded.split(",")[0])
        if first:
            return first
    real_ip = _valid_ip(request.headers.get("x-real-ip"))
    if real_ip:
        return real_ip
    return _valid_ip(request.client.host) if request.client else None


def request_details(request: Request | None, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    details: dict[str, Any] = {}
    if request is not None:
        details = {
            "method": request.method,
            "path": request.url.path,
            "query": _sanitize_query(request.url.query),
        }
    if extra:
        details["extra"] = sanitize_details(extra)
    return details


def _optional_uuid(value: str | UUID | None) -> UUID | None:
    # Non-UUID client ids are dropped from the record rather than failing the write.
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def audit_entry_view(row: AuditLog) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "employee_id": str(row.employee_id),
        "tenant_id": row.tenant_id,
        "client_id": str(row.client_id) if row.client_id else None,
        "action": row.action,
        "resource_type": row.resource_type,
        "resource_id": str(row.resource_id) if row.resource_id else None,
        "details": row.details,
        "ip_address": str(row.ip_address) if row.ip_address else None,
        "user_agent": row.user_agent,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class AuditSink:
    """Append-only access log in the control-plane database.

    Writes are best-effort: a failed insert is logged and swallowed so the
    protected operation it describes still succeeds.
    """

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        *,
        employee_id: UUID,
        tenant_id: str,
        action: AuditAction,
        resource_type: AuditResource,
        client_id: str | UUID | None = None,
        resource_id: str | UUID | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        entry = AuditLog(
            employee_id=employee_id,
            tenant_id=tenant_id,
            client_id=_optional_uuid(client_id),
            action=AuditAction(action).value,
            resource_type=AuditResource(resource_type).value,
            resource_id=_optional_uuid(resource_id),
            details=sanitize_details(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        async with self._session_factory() as session:
            try:
                session.add(entry)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "audit_event_write_failed tenant_id=%s action=%s resource=%s",
                    tenant_id,
                    entry.action,
                    entry.resource_type,
                    exc_info=exc,
                )
                return False
        logger.info(
            "audit_event_recorded tenant_id=%s action=%s resource=%s employee_id=%s",
            tenant_id,
            entry.action,
            entry.resource_type,
            employee_id,
        )
        return True

    async def record_request(
        self,
        request: Request,
        *,
        employee_id: UUID,
        tenant_id: str,
        action: AuditAction,
        resource_type: AuditResource,
        client_id: str | None = None,
        resource_id: str | None = None,
    ) -> bool:
        return await self.record(
            employee_id=employee_id,
            tenant_id=tenant_id,
            action=action,
            resource_type=resource_type,
            client_id=client_id,
            resource_id=resource_id,
            details=request_details(request),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )

    async def list_by_employee(self, employee_id: UUID, *, limit: int = 100) -> list[AuditLog]:
        return await self._list(AuditLog.employee_id == employee_id, limit=limit)

    async def list_by_client(self, tenant_id: str, client_id: UUID, *, limit: int = 100) -> list[AuditLog]:
        return await self._list(AuditLog.tenant_id == tenant_id, AuditLog.client_id == client_id, limit=limit)

    async def list_by_tenant(self, tenant_id: str, *, limit: int = 100) -> list[AuditLog]:
        return await self._list(AuditLog.tenant_id == tenant_id, limit=limit)

    async def _list(self, *conditions: Any, limit: int) -> list[AuditLog]:
        if limit < 1 or limit > MAX_AUDIT_QUERY_LIMIT:
            raise MalformedInput(f"limit must be between 1 and {MAX_AUDIT_QUERY_LIMIT}")
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLog).where(*conditions).order_by(AuditLog.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())
