from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import product
from uuid import uuid4

import pytest

from taxrouter.adapters.mywelltax.adapter import MyWellTaxAdapter
from taxrouter.adapters.registry import AdapterRegistry
from taxrouter.core.errors import AdapterUnavailable, IllegalStateTransition, MalformedInput, NotFound
from taxrouter.domain.entities import (
    COMMISSION_APPROVED,
    COMMISSION_CANCELLED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    COMMISSION_STATUSES,
    DiscountCode,
    commission_transition_allowed,
)
from taxrouter.services.crypto.secret_box import SecretBox
from taxrouter.tests.utils.fakes import FakeEngine, FakeResult


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _code(**overrides) -> DiscountCode:
    values = {
        "id": str(uuid4()),
        "code": "SPRING25",
        "discount_type": "PERCENTAGE",
        "discount_value": Decimal("25"),
        "current_uses": 0,
        "is_active": True,
        "is_affiliate_code": False,
    }
    values.update(overrides)
    return DiscountCode(**values)


@pytest.mark.parametrize("active, started, unexpired, has_uses", list(product([True, False], repeat=4)))
def test_discount_validity_truth_table(active: bool, started: bool, unexpired: bool, has_uses: bool) -> None:
    code = _code(
        is_active=active,
        valid_from=NOW - timedelta(days=1) if started else NOW + timedelta(days=1),
        valid_until=NOW + timedelta(days=1) if unexpired else NOW - timedelta(seconds=1),
        max_uses=10,
        current_uses=3 if has_uses else 10,
    )
    assert code.is_valid(NOW) is (active and started and unexpired and has_uses)


def test_discount_open_ended_bounds_and_naive_timestamps() -> None:
    assert _code().is_valid(NOW)
    # Tenant databases hand back naive UTC timestamps.
    naive_until = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert _code(valid_until=naive_until).is_valid(NOW)
    assert not _code(valid_until=NOW).is_valid(NOW)
    assert _code(valid_from=NOW).is_valid(NOW)


@pytest.mark.parametrize("current", COMMISSION_STATUSES)
@pytest.mark.parametrize("target", [COMMISSION_APPROVED, COMMISSION_PAID, COMMISSION_CANCELLED])
def test_commission_transition_table(current: str, target: str) -> None:
    allowed = {
        (COMMISSION_PENDING, COMMISSION_APPROVED),
        (COMMISSION_APPROVED, COMMISSION_PAID),
        (COMMISSION_PENDING, COMMISSION_CANCELLED),
        (COMMISSION_APPROVED, COMMISSION_CANCELLED),
    }
    assert commission_transition_allowed(current, target) is ((current, target) in allowed)


def _commission_row(commission_id: str, status: str) -> dict:
    return {
        "id": commission_id,
        "affiliate_id": str(uuid4()),
        "filing_id": str(uuid4()),
        "user_id": str(uuid4()),
        "discount_code_id": None,
        "payment_id": None,
        "order_amount": Decimal("200.00"),
        "discount_amount": Decimal("20.00"),
        "net_amount": Decimal("180.00"),
        "commission_rate": Decimal("10.00"),
        "commission_amount": Decimal("18.00"),
        "status": status,
        "approved_at": NOW,
        "paid_at": None,
        "notes": None,
        "created_at": NOW,
        "updated_at": NOW,
    }


def _adapter() -> MyWellTaxAdapter:
    return MyWellTaxAdapter(SecretBox(bytes(32)))


@pytest.mark.asyncio
async def test_approve_commission_guards_status_in_one_statement() -> None:
    commission_id = str(uuid4())
    engine = FakeEngine([FakeResult([_commission_row(commission_id, COMMISSION_APPROVED)])])

    commission = await _adapter().approve_commission(engine, "taxes", commission_id)

    assert commission.status == COMMISSION_APPROVED
    assert commission.commission_amount == Decimal("18.00")
    sql, params = engine.statements[0]
    assert "UPDATE taxes.commissions" in sql
    assert "status IN ('PENDING')" in sql
    assert params == {"id": commission_id}
    assert len(engine.statements) == 1


@pytest.mark.asyncio
async def test_rejected_transition_reports_current_status() -> None:
    commission_id = str(uuid4())
    engine = FakeEngine([FakeResult([]), FakeResult([{"status": COMMISSION_PAID}])])

    with pytest.raises(IllegalStateTransition) as exc_info:
        await _adapter().cancel_commission(engine, "taxes", commission_id, "refund issued")

    assert exc_info.value.current == COMMISSION_PAID
    assert exc_info.value.target == COMMISSION_CANCELLED
    assert "status IN ('PENDING', 'APPROVED')" in engine.statements[0][0]
    assert engine.statements[0][1]["notes"] == "refund issued"


@pytest.mark.asyncio
async def test_transition_on_missing_commission_is_not_found() -> None:
    engine = FakeEngine([FakeResult([]), FakeResult([])])

    with pytest.raises(NotFound):
        await _adapter().mark_commission_paid(engine, "taxes", str(uuid4()))


@pytest.mark.asyncio
async def test_cancel_requires_reason_and_uuid() -> None:
    engine = FakeEngine()
    with pytest.raises(MalformedInput):
        await _adapter().cancel_commission(engine, "taxes", str(uuid4()), "  ")
    with pytest.raises(MalformedInput):
        await _adapter().approve_commission(engine, "taxes", "42")
    assert engine.statements == []


def test_adapter_registry_falls_back_to_default_kind() -> None:
    adapter = _adapter()
    registry = AdapterRegistry({"mywelltax": adapter})

    assert registry.kinds == ("mywelltax",)
    assert registry.for_kind("mywelltax") is adapter
    assert registry.for_kind("legacy") is adapter
    assert registry.for_kind(None) is adapter


def test_adapter_registry_without_default_raises() -> None:
    registry = AdapterRegistry({"mywelltax": _adapter()}, default_kind=None)

    with pytest.raises(AdapterUnavailable):
        registry.for_kind("legacy")
