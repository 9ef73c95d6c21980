from __future__ import annotations

from decimal import Decimal
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from taxrouter.adapters.base import column_list, fetch_all, fetch_one, write_returning
from taxrouter.adapters.money import percentage, to_decimal
from taxrouter.core.errors import IllegalStateTransition, MalformedInput, NotFound
from taxrouter.domain.entities import (
    COMMISSION_APPROVED,
    COMMISSION_CANCELLED,
    COMMISSION_PAID,
    COMMISSION_STATUSES,
    PAYOUT_METHODS,
    Affiliate,
    AffiliateStats,
    Commission,
    CustomerInfo,
    commission_transition_allowed,
)
from taxrouter.persistence.guards import qualify, require_uuid


logger = logging.getLogger(__name__)

AFFILIATE_COLUMNS = (
    "id", "first_name", "last_name", "email", "phone", "default_commission_rate", "stripe_connect_account_id",
    "payout_method", "payout_threshold", "is_active", "created_at", "updated_at",
)
AFFILIATE_WRITABLE = (
    "first_name", "last_name", "email", "phone", "default_commission_rate", "stripe_connect_account_id",
    "payout_method", "payout_threshold", "is_active",
)
COMMISSION_COLUMNS = (
    "id", "affiliate_id", "filing_id", "user_id", "discount_code_id", "payment_id", "order_amount",
    "discount_amount", "net_amount", "commission_rate", "commission_amount", "status", "approved_at",
    "paid_at", "notes", "created_at", "updated_at",
)
MAX_COMMISSION_LIMIT = 1000

# Extra assignments applied alongside each target status.
_TRANSITION_SET_CLAUSES = {
    COMMISSION_APPROVED: "approved_at = NOW(), ",
    COMMISSION_PAID: "paid_at = NOW(), ",
    COMMISSION_CANCELLED: "notes = :notes, ",
}


def _affiliate_from_row(row: dict[str, Any]) -> Affiliate:
    return Affiliate(
        id=str(row["id"]),
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        email=row.get("email") or "",
        default_commission_rate=to_decimal(row.get("default_commission_rate")) or Decimal("0"),
        payout_method=row.get("payout_method") or "MANUAL",
        payout_threshold=to_decimal(row.get("payout_threshold")) or Decimal("0"),
        is_active=bool(row.get("is_active")),
        phone=row.get("phone"),
        stripe_connect_account_id=row.get("stripe_connect_account_id"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _commission_from_row(row: dict[str, Any]) -> Commission:
    customer = None
    if row.get("customer_id") is not None:
        customer = CustomerInfo(
            id=str(row["customer_id"]),
            email=row.get("customer_email") or "",
            first_name=row.get("customer_first_name"),
            last_name=row.get("customer_last_name"),
        )
    return Commission(
        id=str(row["id"]),
        affiliate_id=str(row["affiliate_id"]),
        filing_id=str(row["filing_id"]),
        user_id=str(row["user_id"]),
        discount_code_id=str(row["discount_code_id"]) if row.get("discount_code_id") is not None else None,
        order_amount=to_decimal(row.get("order_amount")) or Decimal("0"),
        discount_amount=to_decimal(row.get("discount_amount")) or Decimal("0"),
        net_amount=to_decimal(row.get("net_amount")) or Decimal("0"),
        commission_rate=to_decimal(row.get("commission_rate")) or Decimal("0"),
        commission_amount=to_decimal(row.get("commission_amount")) or Decimal("0"),
        status=row["status"],
        payment_id=str(row["payment_id"]) if row.get("payment_id") is not None else None,
        approved_at=row.get("approved_at"),
        paid_at=row.get("paid_at"),
        notes=row.get("notes"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        customer=customer,
    )


def _validate_affiliate(values: dict[str, Any]) -> None:
    for name in ("first_name", "last_name", "email"):
        if not values.get(name):
            raise MalformedInput(f"{name} is required")
    if values.get("payout_method") not in PAYOUT_METHODS:
        raise MalformedInput(f"payout_method must be one of: {', '.join(PAYOUT_METHODS)}")
    rate = to_decimal(values.get("default_commission_rate"))
    if rate is None or rate < 0 or rate > 100:
        raise MalformedInput("default_commission_rate must be between 0 and 100")
    threshold = to_decimal(values.get("payout_threshold"))
    if threshold is None or threshold < 0:
        raise MalformedInput("payout_threshold must be non-negative")


class AffiliateQueries:
    async def list_affiliates(
        self, handle: AsyncEngine, schema_prefix: str, *, active_only: bool = False
    ) -> list[Affiliate]:
        where = "WHERE is_active = true " if active_only else ""
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(AFFILIATE_COLUMNS)} FROM {qualify(schema_prefix, 'affiliates')} "
            f"{where}ORDER BY created_at DESC",
        )
        return [_affiliate_from_row(row) for row in rows]

    async def get_affiliate(self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str) -> Affiliate:
        affiliate_id = require_uuid(affiliate_id, field="affiliateId")
        row = await fetch_one(
            handle,
            f"SELECT {column_list(AFFILIATE_COLUMNS)} FROM {qualify(schema_prefix, 'affiliates')} WHERE id = :id",
            {"id": affiliate_id},
        )
        if row is None:
            raise NotFound("affiliate", affiliate_id)
        return _affiliate_from_row(row)

    async def create_affiliate(self, handle: AsyncEngine, schema_prefix: str, values: dict[str, Any]) -> Affiliate:
        payload = {
            "phone": None,
            "stripe_connect_account_id": None,
            "payout_method": "MANUAL",
            "default_commission_rate": Decimal("10"),
            "payout_threshold": Decimal("50"),
            "is_active": True,
            **{key: value for key, value in values.items() if key in AFFILIATE_WRITABLE and value is not None},
        }
        _validate_affiliate(payload)
        columns = [name for name in AFFILIATE_WRITABLE if name in payload]
        row = await write_returning(
            handle,
            f"INSERT INTO {qualify(schema_prefix, 'affiliates')} ({column_list(columns)}) "
            f"VALUES ({', '.join(':' + name for name in columns)}) "
            f"RETURNING {column_list(AFFILIATE_COLUMNS)}",
            payload,
        )
        if row is None:
            raise NotFound("affiliate")
        logger.info("adapter_affiliate_created affiliate_id=%s", row["id"])
        return _affiliate_from_row(row)

    async def update_affiliate(
        self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str, changes: dict[str, Any]
    ) -> Affiliate:
        unknown = sorted(set(changes) - set(AFFILIATE_WRITABLE))
        if unknown:
            raise MalformedInput(f"unknown fields: {', '.join(unknown)}")
        current = await self.get_affiliate(handle, schema_prefix, affiliate_id)
        merged = {name: getattr(current, name) for name in AFFILIATE_WRITABLE}
        merged.update({key: value for key, value in changes.items() if value is not None or key == "phone"})
        _validate_affiliate(merged)
        assignments = ", ".join(f"{name} = :{name}" for name in AFFILIATE_WRITABLE)
        row = await write_returning(
            handle,
            f"UPDATE {qualify(schema_prefix, 'affiliates')} SET {assignments}, updated_at = NOW() "
            f"WHERE id = :id RETURNING {column_list(AFFILIATE_COLUMNS)}",
            {**merged, "id": current.id},
        )
        if row is None:
            raise NotFound("affiliate", current.id)
        logger.info("adapter_affiliate_updated affiliate_id=%s", current.id)
        return _affiliate_from_row(row)

    async def list_commissions(
        self,
        handle: AsyncEngine,
        schema_prefix: str,
        *,
        affiliate_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[Commission]:
        if limit < 1 or limit > MAX_COMMISSION_LIMIT:
            raise MalformedInput(f"limit must be between 1 and {MAX_COMMISSION_LIMIT}")
        conditions: list[str] = []
        params: dict[str, Any] = {"limit": limit}
        if affiliate_id is not None:
            conditions.append("c.affiliate_id = :affiliate_id")
            params["affiliate_id"] = require_uuid(affiliate_id, field="affiliateId")
        if status is not None:
            if status not in COMMISSION_STATUSES:
                raise MalformedInput(f"status must be one of: {', '.join(COMMISSION_STATUSES)}")
            conditions.append("c.status = :status")
            params["status"] = status
        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(COMMISSION_COLUMNS, 'c')}, u.id AS customer_id, "
            "u.first_name AS customer_first_name, u.last_name AS customer_last_name, u.email AS customer_email "
            f"FROM {qualify(schema_prefix, 'commissions')} c "
            f"JOIN {qualify(schema_prefix, 'user')} u ON c.user_id = u.id "
            f"{where}ORDER BY c.created_at DESC LIMIT :limit",
            params,
        )
        return [_commission_from_row(row) for row in rows]

    async def get_affiliate_stats(self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str) -> AffiliateStats:
        affiliate_id = require_uuid(affiliate_id, field="affiliateId")
        commissions = qualify(schema_prefix, "commissions")
        clicks = qualify(schema_prefix, "affiliate_clicks")
        row = await fetch_one(
            handle,
            "SELECT "
            f"COALESCE((SELECT COUNT(*) FROM {clicks} WHERE affiliate_id = :affiliate_id), 0) AS total_clicks, "
            "COALESCE(COUNT(c.id), 0) AS total_conversions, "
            "COALESCE(SUM(CASE WHEN c.status = 'PENDING' THEN c.commission_amount ELSE 0 END), 0) AS pending, "
            "COALESCE(SUM(CASE WHEN c.status = 'APPROVED' THEN c.commission_amount ELSE 0 END), 0) AS approved, "
            "COALESCE(SUM(CASE WHEN c.status = 'PAID' THEN c.commission_amount ELSE 0 END), 0) AS paid, "
            "COALESCE(SUM(CASE WHEN c.status = 'CANCELLED' THEN c.commission_amount ELSE 0 END), 0) AS cancelled, "
            "COALESCE(SUM(CASE WHEN c.status != 'CANCELLED' THEN c.commission_amount ELSE 0 END), 0) AS earned, "
            "COALESCE(SUM(c.order_amount), 0) AS total_revenue "
            f"FROM {commissions} c WHERE c.affiliate_id = :affiliate_id",
            {"affiliate_id": affiliate_id},
        )
        row = row or {}
        clicks_count = int(row.get("total_clicks") or 0)
        conversions = int(row.get("total_conversions") or 0)
        return AffiliateStats(
            affiliate_id=affiliate_id,
            total_clicks=clicks_count,
            total_conversions=conversions,
            conversion_rate=percentage(conversions, clicks_count),
            total_commissions_earned=to_decimal(row.get("earned")) or Decimal("0"),
            pending_commissions=to_decimal(row.get("pending")) or Decimal("0"),
            approved_commissions=to_decimal(row.get("approved")) or Decimal("0"),
            paid_commissions=to_decimal(row.get("paid")) or Decimal("0"),
            cancelled_commissions=to_decimal(row.get("cancelled")) or Decimal("0"),
            total_orders=conversions,
            total_revenue=to_decimal(row.get("total_revenue")) or Decimal("0"),
        )

    async def approve_commission(self, handle: AsyncEngine, schema_prefix: str, commission_id: str) -> Commission:
        return await self._transition_commission(handle, schema_prefix, commission_id, COMMISSION_APPROVED)

    async def mark_commission_paid(self, handle: AsyncEngine, schema_prefix: str, commission_id: str) -> Commission:
        return await self._transition_commission(handle, schema_prefix, commission_id, COMMISSION_PAID)

    async def cancel_commission(
        self, handle: AsyncEngine, schema_prefix: str, commission_id: str, reason: str
    ) -> Commission:
        if not reason or not reason.strip():
            raise MalformedInput("reason is required")
        return await self._transition_commission(
            handle, schema_prefix, commission_id, COMMISSION_CANCELLED, notes=reason.strip()
        )

    async def _transition_commission(
        self,
        handle: AsyncEngine,
        schema_prefix: str,
        commission_id: str,
        target: str,
        *,
        notes: str | None = None,
    ) -> Commission:
        commission_id = require_uuid(commission_id, field="commissionId")
        table = qualify(schema_prefix, "commissions")
        # The status guard lives in the WHERE clause so check and update are one statement.
        allowed = ", ".join(
            f"'{status}'" for status in COMMISSION_STATUSES if commission_transition_allowed(status, target)
        )
        params: dict[str, Any] = {"id": commission_id}
        if notes is not None:
            params["notes"] = notes
        row = await write_returning(
            handle,
            f"UPDATE {table} SET status = '{target}', {_TRANSITION_SET_CLAUSES[target]}updated_at = NOW() "
            f"WHERE id = :id AND status IN ({allowed}) RETURNING {column_list(COMMISSION_COLUMNS)}",
            params,
        )
        if row is not None:
            logger.info("adapter_commission_transitioned commission_id=%s status=%s", commission_id, target)
            return _commission_from_row(row)
        current = await fetch_one(handle, f"SELECT status FROM {table} WHERE id = :id", {"id": commission_id})
        if current is None:
            raise NotFound("commission", commission_id)
        logger.warning(
            "adapter_commission_transition_rejected commission_id=%s current=%s target=%s",
            commission_id,
            current["status"],
            target,
        )
        raise IllegalStateTransition(current["status"], target)
