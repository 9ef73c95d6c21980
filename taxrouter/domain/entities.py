from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any


COMMISSION_PENDING = "PENDING"
COMMISSION_APPROVED = "APPROVED"
COMMISSION_PAID = "PAID"
COMMISSION_CANCELLED = "CANCELLED"
COMMISSION_STATUSES = (COMMISSION_PENDING, COMMISSION_APPROVED, COMMISSION_PAID, COMMISSION_CANCELLED)

# Target status -> statuses it may be reached from.
COMMISSION_TRANSITIONS: dict[str, tuple[str, ...]] = {
    COMMISSION_APPROVED: (COMMISSION_PENDING,),
    COMMISSION_PAID: (COMMISSION_APPROVED,),
    COMMISSION_CANCELLED: (COMMISSION_PENDING, COMMISSION_APPROVED),
}

PAYOUT_METHODS = ("MANUAL", "STRIPE", "PAYPAL")
DISCOUNT_TYPES = ("PERCENTAGE", "FIXED_AMOUNT")


def commission_transition_allowed(current: str, target: str) -> bool:
    return current in COMMISSION_TRANSITIONS.get(target, ())


def as_utc(value: datetime) -> datetime:
    # Tenant databases store naive UTC timestamps; compare everything as aware UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Client:
    id: str
    email: str
    role: str
    created_at: datetime | None = None
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    dob: str | None = None
    # Always masked; the stored value never leaves the adapter.
    ssn: str | None = None
    address1: str | None = None
    address2: str | None = None
    city: str | None = None
    state: str | None = None
    zipcode: int | None = None


@dataclass(frozen=True)
class Affiliate:
    id: str
    first_name: str
    last_name: str
    email: str
    default_commission_rate: Decimal
    payout_method: str
    payout_threshold: Decimal
    is_active: bool
    phone: str | None = None
    stripe_connect_account_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CustomerInfo:
    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


@dataclass(frozen=True)
class Commission:
    id: str
    affiliate_id: str
    filing_id: str
    user_id: str
    discount_code_id: str | None
    order_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: str
    payment_id: str | None = None
    approved_at: datetime | None = None
    paid_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    customer: CustomerInfo | None = None


@dataclass(frozen=True)
class AffiliateStats:
    affiliate_id: str
    total_clicks: int
    total_conversions: int
    conversion_rate: Decimal
    total_commissions_earned: Decimal
    pending_commissions: Decimal
    approved_commissions: Decimal
    paid_commissions: Decimal
    cancelled_commissions: Decimal
    total_orders: int
    total_revenue: Decimal


@dataclass(frozen=True)
class DiscountCode:
    id: str
    code: str
    discount_type: str
    discount_value: Decimal
    current_uses: int
    is_active: bool
    is_affiliate_code: bool
    description: str | None = None
    max_uses: int | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    affiliate_id: str | None = None
    commission_rate: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        if not self.is_active:
            return False
        current = as_utc(now or datetime.now(timezone.utc))
        if self.valid_from is not None and as_utc(self.valid_from) > current:
            return False
        if self.valid_until is not None and as_utc(self.valid_until) <= current:
            return False
        if self.max_uses is not None and self.current_uses >= self.max_uses:
            return False
        return True


@dataclass(frozen=True)
class Document:
    id: str
    user_id: str
    name: str
    file_path: str
    type: str
    filing_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AffiliateToken:
    # Metadata only; the token hash stays in the tenant database.
    id: str
    affiliate_id: str
    is_active: bool
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ClientComprehensive:
    client: Client
    spouse: dict[str, Any] | None = None
    dependents: list[dict[str, Any]] = field(default_factory=list)
    filings: list[dict[str, Any]] = field(default_factory=list)


def entity_to_dict(entity: Any) -> dict[str, Any]:
    return asdict(entity)
