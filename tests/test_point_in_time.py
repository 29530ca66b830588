import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from stockledger.core.config import settings
from stockledger.core.exceptions import LedgerDriftError
from stockledger.core.scope import StockScope
from stockledger.models.stock import StockProjection
from stockledger.services.point_in_time_service import (
    BalanceSource,
    DriftPolicy,
    ScopeFacts,
    get_balance_as_of,
    resolve_balance,
)
from stockledger.services.stock_operations import process_purchase_receipt, process_sale, record_opening_stock


def _at(day: int, hour: int = 9) -> datetime:
    return datetime(2026, 1, day, hour, tzinfo=timezone.utc)


@pytest.fixture()
def stocked(db, scope, clock):
    record_opening_stock(db, scope, 100, unit_cost="10.00", created_by="u1", occurred_at=_at(10), clock=clock)
    process_sale(db, scope, 30, sale_id="sale-1", created_by="u1", occurred_at=_at(12), clock=clock)
    process_purchase_receipt(
        db, scope, 50, unit_cost="11.00", receipt_id="rcpt-1", created_by="u1", occurred_at=_at(15), clock=clock
    )
    db.commit()
    return scope


def _set_projection(db, scope, qty: str) -> None:
    db.execute(
        update(StockProjection)
        .where(*scope.projection_clauses())
        .values(qty_available=Decimal(qty))
    )
    db.commit()


def test_cutoff_between_entries_returns_ledger_balance(db, stocked, clock):
    balance = get_balance_as_of(db, stocked, date(2026, 1, 13), clock=clock)
    assert balance.quantity == Decimal("70")
    assert balance.source is BalanceSource.LEDGER
    assert balance.unit_cost == Decimal("10.00")
    assert not balance.clamped


def test_cutoff_before_first_entry_returns_zero(db, stocked, clock):
    balance = get_balance_as_of(db, stocked, date(2026, 1, 5), clock=clock)
    assert balance.quantity == Decimal("0")
    assert balance.source is BalanceSource.NOT_YET_STOCKED


def test_date_cutoff_includes_the_whole_day(db, stocked, clock):
    balance = get_balance_as_of(db, stocked, date(2026, 1, 15), clock=clock)
    assert balance.quantity == Decimal("120")


def test_datetime_cutoff_is_inclusive(db, stocked, clock):
    assert get_balance_as_of(db, stocked, _at(12), clock=clock).quantity == Decimal("70")
    assert get_balance_as_of(db, stocked, _at(12, 8), clock=clock).quantity == Decimal("100")


def test_reconstruction_is_repeatable(db, stocked, clock):
    first = get_balance_as_of(db, stocked, date(2026, 1, 13), clock=clock)
    second = get_balance_as_of(db, stocked, date(2026, 1, 13), clock=clock)
    assert first == second


def test_today_reads_the_projection(db, stocked, clock):
    _set_projection(db, stocked, "123")
    balance = get_balance_as_of(db, stocked, date(2026, 1, 20), clock=clock)
    assert balance.source is BalanceSource.LIVE
    assert balance.quantity == Decimal("123")


def test_drift_estimate_uses_current_minus_later_movements(db, stocked, clock):
    _set_projection(db, stocked, "125")
    balance = get_balance_as_of(db, stocked, date(2026, 1, 13), policy="estimate", clock=clock)
    assert balance.source is BalanceSource.DRIFT_ESTIMATE
    assert balance.quantity == Decimal("75")
    assert balance.drift == Decimal("5")


def test_drift_refuse_policy_raises(db, stocked, clock):
    _set_projection(db, stocked, "125")
    with pytest.raises(LedgerDriftError) as excinfo:
        get_balance_as_of(db, stocked, date(2026, 1, 13), policy=DriftPolicy.REFUSE, clock=clock)
    assert excinfo.value.ledger_balance == Decimal("70")
    assert excinfo.value.projection_balance == Decimal("125")


def test_drift_policy_defaults_to_settings(db, stocked, clock, monkeypatch):
    monkeypatch.setattr(settings, "drift_policy", "refuse")
    _set_projection(db, stocked, "125")
    with pytest.raises(LedgerDriftError):
        get_balance_as_of(db, stocked, date(2026, 1, 13), clock=clock)


def test_negative_estimate_is_clamped_to_zero(db, stocked, clock):
    _set_projection(db, stocked, "20")
    balance = get_balance_as_of(db, stocked, date(2026, 1, 13), clock=clock)
    assert balance.quantity == Decimal("0")
    assert balance.raw_quantity == Decimal("-30")
    assert balance.clamped


def test_scope_without_any_history_is_zero(db, scope, clock):
    balance = get_balance_as_of(db, scope, date(2026, 1, 13), clock=clock)
    assert balance.quantity == Decimal("0")
    assert balance.source is BalanceSource.NO_HISTORY


def test_projection_without_ledger(db, scope, clock):
    db.add(
        StockProjection(
            id=str(uuid.uuid4()),
            business_id=scope.business_id,
            product_id=scope.product_id,
            variation_id=scope.variation_id,
            location_id=scope.location_id,
            qty_available=Decimal("12"),
            created_at=_at(8),
            updated_at=_at(8),
        )
    )
    db.commit()

    before = get_balance_as_of(db, scope, date(2026, 1, 5), clock=clock)
    assert before.source is BalanceSource.NOT_YET_STOCKED
    assert before.quantity == Decimal("0")

    after = get_balance_as_of(db, scope, date(2026, 1, 13), clock=clock)
    assert after.source is BalanceSource.PROJECTION_ESTIMATE
    assert after.quantity == Decimal("12")


def test_today_rule_wins_without_history():
    cutoff = _at(13)
    facts = ScopeFacts(
        cutoff=cutoff,
        is_today=True,
        current_qty=Decimal("7"),
        projection_created_at=None,
        anchor_balance=None,
        after_sum=Decimal("0"),
        first_entry_at=None,
        unit_cost=None,
        tolerance=Decimal("0.0001"),
    )
    scope = StockScope("biz-1", "prod-1", "var-1", "loc-main")
    assert resolve_balance(scope, facts).source is BalanceSource.LIVE
