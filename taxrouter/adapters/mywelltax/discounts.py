from __future__ import annotations

from decimal import Decimal
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncEngine

from taxrouter.adapters.base import column_list, fetch_all, fetch_one, write, write_returning
from taxrouter.adapters.money import to_decimal
from taxrouter.core.errors import MalformedInput, NotFound
from taxrouter.domain.entities import DISCOUNT_TYPES, DiscountCode, as_utc
from taxrouter.persistence.guards import qualify, require_uuid


logger = logging.getLogger(__name__)

DISCOUNT_COLUMNS = (
    "id", "code", "description", "discount_type", "discount_value", "max_uses", "current_uses", "valid_from",
    "valid_until", "is_active", "is_affiliate_code", "affiliate_id", "commission_rate", "created_at", "updated_at",
)
DISCOUNT_UPDATABLE = (
    "code", "description", "discount_type", "discount_value", "max_uses", "valid_from", "valid_until",
    "is_active", "commission_rate",
)


def _discount_from_row(row: dict[str, Any]) -> DiscountCode:
    return DiscountCode(
        id=str(row["id"]),
        code=row["code"],
        discount_type=row["discount_type"],
        discount_value=to_decimal(row.get("discount_value")) or Decimal("0"),
        current_uses=int(row.get("current_uses") or 0),
        is_active=bool(row.get("is_active")),
        is_affiliate_code=bool(row.get("is_affiliate_code")),
        description=row.get("description"),
        max_uses=row.get("max_uses"),
        valid_from=row.get("valid_from"),
        valid_until=row.get("valid_until"),
        affiliate_id=str(row["affiliate_id"]) if row.get("affiliate_id") is not None else None,
        commission_rate=to_decimal(row.get("commission_rate")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _validate_discount(values: dict[str, Any]) -> None:
    if not str(values.get("code") or "").strip():
        raise MalformedInput("code is required")
    if values.get("discount_type") not in DISCOUNT_TYPES:
        raise MalformedInput(f"discount_type must be one of: {', '.join(DISCOUNT_TYPES)}")
    value = to_decimal(values.get("discount_value"))
    if value is None or value <= 0:
        raise MalformedInput("discount_value must be positive")
    if values["discount_type"] == "PERCENTAGE" and value > 100:
        raise MalformedInput("percentage discount_value must not exceed 100")
    max_uses = values.get("max_uses")
    if max_uses is not None and int(max_uses) < 1:
        raise MalformedInput("max_uses must be positive")
    valid_from, valid_until = values.get("valid_from"), values.get("valid_until")
    if valid_from is not None and valid_until is not None and as_utc(valid_until) <= as_utc(valid_from):
        raise MalformedInput("valid_until must be after valid_from")


class DiscountQueries:
    async def list_discount_codes(
        self,
        handle: AsyncEngine,
        schema_prefix: str,
        *,
        affiliate_id: str | None = None,
        active_only: bool = False,
    ) -> list[DiscountCode]:
        conditions: list[str] = []
        params: dict[str, Any] = {}
        if affiliate_id is not None:
            conditions.append("affiliate_id = :affiliate_id")
            params["affiliate_id"] = require_uuid(affiliate_id, field="affiliateId")
        if active_only:
            conditions.append("is_active = true")
        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(DISCOUNT_COLUMNS)} FROM {qualify(schema_prefix, 'discount_codes')} "
            f"{where}ORDER BY created_at DESC",
            params,
        )
        return [_discount_from_row(row) for row in rows]

    async def get_discount_code(self, handle: AsyncEngine, schema_prefix: str, code_id: str) -> DiscountCode:
        code_id = require_uuid(code_id, field="codeId")
        row = await fetch_one(
            handle,
            f"SELECT {column_list(DISCOUNT_COLUMNS)} FROM {qualify(schema_prefix, 'discount_codes')} WHERE id = :id",
            {"id": code_id},
        )
        if row is None:
            raise NotFound("discount code", code_id)
        return _discount_from_row(row)

    async def get_discount_code_by_code(self, handle: AsyncEngine, schema_prefix: str, code: str) -> DiscountCode:
        if not code or not code.strip():
            raise MalformedInput("code is required")
        row = await fetch_one(
            handle,
            f"SELECT {column_list(DISCOUNT_COLUMNS)} FROM {qualify(schema_prefix, 'discount_codes')} "
            "WHERE UPPER(code) = UPPER(:code)",
            {"code": code.strip()},
        )
        if row is None:
            raise NotFound("discount code", code)
        return _discount_from_row(row)

    async def create_discount_code(
        self, handle: AsyncEngine, schema_prefix: str, values: dict[str, Any]
    ) -> DiscountCode:
        payload: dict[str, Any] = {
            "description": None,
            "max_uses": None,
            "valid_from": None,
            "valid_until": None,
            "is_active": True,
            "affiliate_id": None,
            "commission_rate": None,
            **{key: value for key, value in values.items() if value is not None},
        }
        _validate_discount(payload)
        payload["id"] = str(uuid4())
        payload["code"] = str(payload["code"]).strip().upper()
        payload["current_uses"] = 0
        if payload["affiliate_id"] is not None:
            payload["affiliate_id"] = require_uuid(payload["affiliate_id"], field="affiliateId")
        payload["is_affiliate_code"] = payload["affiliate_id"] is not None
        columns = (
            "id", "code", "description", "discount_type", "discount_value", "max_uses", "current_uses",
            "valid_from", "valid_until", "is_active", "is_affiliate_code", "affiliate_id", "commission_rate",
        )
        row = await write_returning(
            handle,
            f"INSERT INTO {qualify(schema_prefix, 'discount_codes')} ({column_list(columns)}, created_at) "
            f"VALUES ({', '.join(':' + name for name in columns)}, NOW()) "
            f"RETURNING {column_list(DISCOUNT_COLUMNS)}",
            {name: payload[name] for name in columns},
        )
        if row is None:
            raise NotFound("discount code")
        logger.info("adapter_discount_code_created code_id=%s", row["id"])
        return _discount_from_row(row)

    async def update_discount_code(
        self, handle: AsyncEngine, schema_prefix: str, code_id: str, changes: dict[str, Any]
    ) -> DiscountCode:
        unknown = sorted(set(changes) - set(DISCOUNT_UPDATABLE))
        if unknown:
            raise MalformedInput(f"unknown fields: {', '.join(unknown)}")
        current = await self.get_discount_code(handle, schema_prefix, code_id)
        merged = {name: getattr(current, name) for name in DISCOUNT_UPDATABLE}
        merged.update(changes)
        _validate_discount(merged)
        merged["code"] = str(merged["code"]).strip().upper()
        assignments = ", ".join(f"{name} = :{name}" for name in DISCOUNT_UPDATABLE)
        row = await write_returning(
            handle,
            f"UPDATE {qualify(schema_prefix, 'discount_codes')} SET {assignments}, updated_at = NOW() "
            f"WHERE id = :id RETURNING {column_list(DISCOUNT_COLUMNS)}",
            {**merged, "id": current.id},
        )
        if row is None:
            raise NotFound("discount code", current.id)
        logger.info("adapter_discount_code_updated code_id=%s", current.id)
        return _discount_from_row(row)

    async def deactivate_discount_code(self, handle: AsyncEngine, schema_prefix: str, code_id: str) -> None:
        code_id = require_uuid(code_id, field="codeId")
        updated = await write(
            handle,
            f"UPDATE {qualify(schema_prefix, 'discount_codes')} SET is_active = false, updated_at = NOW() "
            "WHERE id = :id",
            {"id": code_id},
        )
        if updated == 0:
            raise NotFound("discount code", code_id)
        logger.info("adapter_discount_code_deactivated code_id=%s", code_id)
