from __future__ import annotations

from typing import Any, Protocol, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from taxrouter.domain.entities import (
    Affiliate,
    AffiliateStats,
    Client,
    ClientComprehensive,
    Commission,
    DiscountCode,
    Document,
)


class ClientAdapter(Protocol):
    """Entity capabilities every tenant schema adapter provides.

    Adapters are stateless with respect to tenants: every call receives the
    open handle and the schema prefix from the caller.
    """

    adapter_type: str

    async def list_clients(self, handle: AsyncEngine, schema_prefix: str) -> list[Client]:
        ...

    async def get_client(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> Client:
        ...

    async def get_client_comprehensive(
        self, handle: AsyncEngine, schema_prefix: str, client_id: str
    ) -> ClientComprehensive:
        ...

    async def get_clients_by_filings(
        self, handle: AsyncEngine, schema_prefix: str, *, limit: int, offset: int
    ) -> list[ClientComprehensive]:
        ...

    async def find_client_by_email(self, handle: AsyncEngine, schema_prefix: str, email: str) -> Client | None:
        ...

    async def get_client_stored_ssn(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> str | None:
        ...

    async def complete_filing(self, handle: AsyncEngine, schema_prefix: str, filing_id: str) -> None:
        ...

    async def list_affiliates(
        self, handle: AsyncEngine, schema_prefix: str, *, active_only: bool = False
    ) -> list[Affiliate]:
        ...

    async def get_affiliate(self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str) -> Affiliate:
        ...

    async def create_affiliate(self, handle: AsyncEngine, schema_prefix: str, values: dict[str, Any]) -> Affiliate:
        ...

    async def update_affiliate(
        self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str, changes: dict[str, Any]
    ) -> Affiliate:
        ...

    async def list_commissions(
        self,
        handle: AsyncEngine,
        schema_prefix: str,
        *,
        affiliate_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[Commission]:
        ...

    async def get_affiliate_stats(self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str) -> AffiliateStats:
        ...

    async def approve_commission(self, handle: AsyncEngine, schema_prefix: str, commission_id: str) -> Commission:
        ...

    async def mark_commission_paid(self, handle: AsyncEngine, schema_prefix: str, commission_id: str) -> Commission:
        ...

    async def cancel_commission(
        self, handle: AsyncEngine, schema_prefix: str, commission_id: str, reason: str
    ) -> Commission:
        ...

    async def list_discount_codes(
        self,
        handle: AsyncEngine,
        schema_prefix: str,
        *,
        affiliate_id: str | None = None,
        active_only: bool = False,
    ) -> list[DiscountCode]:
        ...

    async def get_discount_code(self, handle: AsyncEngine, schema_prefix: str, code_id: str) -> DiscountCode:
        ...

    async def get_discount_code_by_code(self, handle: AsyncEngine, schema_prefix: str, code: str) -> DiscountCode:
        ...

    async def create_discount_code(
        self, handle: AsyncEngine, schema_prefix: str, values: dict[str, Any]
    ) -> DiscountCode:
        ...

    async def update_discount_code(
        self, handle: AsyncEngine, schema_prefix: str, code_id: str, changes: dict[str, Any]
    ) -> DiscountCode:
        ...

    async def deactivate_discount_code(self, handle: AsyncEngine, schema_prefix: str, code_id: str) -> None:
        ...

    async def create_document(self, handle: AsyncEngine, schema_prefix: str, values: dict[str, Any]) -> Document:
        ...

    async def get_document(self, handle: AsyncEngine, schema_prefix: str, document_id: str) -> Document:
        ...

    async def list_documents_by_filing(
        self, handle: AsyncEngine, schema_prefix: str, filing_id: str
    ) -> list[Document]:
        ...

    async def delete_document(self, handle: AsyncEngine, schema_prefix: str, document_id: str) -> None:
        ...


# Each helper checks out its own connection so one failed statement cannot poison the next.


async def fetch_all(handle: AsyncEngine, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    async with handle.connect() as conn:
        result = await conn.execute(text(sql), params or {})
        return [dict(row) for row in result.mappings().all()]


async def fetch_one(
    handle: AsyncEngine, sql: str, params: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    async with handle.connect() as conn:
        result = await conn.execute(text(sql), params or {})
        row = result.mappings().first()
        return dict(row) if row is not None else None


async def write_returning(
    handle: AsyncEngine, sql: str, params: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    async with handle.begin() as conn:
        result = await conn.execute(text(sql), params or {})
        row = result.mappings().first()
        return dict(row) if row is not None else None


async def write(handle: AsyncEngine, sql: str, params: dict[str, Any] | None = None) -> int:
    async with handle.begin() as conn:
        result = await conn.execute(text(sql), params or {})
        return int(result.rowcount or 0)


def column_list(columns: Sequence[str], alias: str | None = None) -> str:
    if alias:
        return ", ".join(f"{alias}.{column}" for column in columns)
    return ", ".join(columns)
