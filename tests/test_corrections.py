from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stockledger.core.exceptions import CorrectionStateError, LedgerValidationError, RecordNotFoundError
from stockledger.models.audit_log import AuditLog
from stockledger.models.stock import StockLedgerEntry
from stockledger.services.correction_service import (
    CORRECTION_REFERENCE_TYPE,
    approve_correction,
    approve_corrections,
    build_stock_history,
    create_correction,
    get_correction_anchor,
    list_corrections,
)
from stockledger.services.ledger_service import get_current_stock
from stockledger.services.stock_operations import process_sale, record_opening_stock


def _at(day: int, hour: int = 9) -> datetime:
    return datetime(2026, 1, day, hour, tzinfo=timezone.utc)


@pytest.fixture()
def counted(db, scope, clock):
    """100 opened on the 10th, 30 sold on the 12th, counted at 65 on the 14th."""
    record_opening_stock(db, scope, 100, created_by="u1", occurred_at=_at(10), clock=clock)
    process_sale(db, scope, 30, sale_id="sale-1", created_by="u1", occurred_at=_at(12), clock=clock)
    db.commit()

    clock.advance_to(_at(14, 10))
    correction = create_correction(db, scope, physical_count=65, reason="cycle_count", created_by="u2", clock=clock)
    db.commit()
    approve_correction(
        db, business_id=scope.business_id, correction_id=correction.id, approved_by="manager", clock=clock
    )
    db.commit()
    return correction


def test_create_correction_captures_system_count(db, scope, clock):
    record_opening_stock(db, scope, 10, created_by="u1", clock=clock)
    correction = create_correction(db, scope, physical_count=7, reason="cycle_count", created_by="u2", clock=clock)
    assert correction.system_count == Decimal("10")
    assert correction.difference == Decimal("-3")
    assert correction.status == "pending"
    assert get_current_stock(db, scope) == Decimal("10")


def test_create_correction_validates_input(db, scope, clock):
    with pytest.raises(LedgerValidationError):
        create_correction(db, scope, physical_count=-1, reason="cycle_count", created_by="u2", clock=clock)
    with pytest.raises(LedgerValidationError):
        create_correction(db, scope, physical_count=1, reason="  ", created_by="u2", clock=clock)


def test_approval_books_difference_as_adjustment(db, scope, counted):
    db.refresh(counted)
    assert counted.status == "approved"
    assert counted.approved_by == "manager"
    assert counted.stock_entry_id is not None

    entry = db.get(StockLedgerEntry, counted.stock_entry_id)
    assert entry.type == "adjustment"
    assert entry.reference_type == CORRECTION_REFERENCE_TYPE
    assert entry.reference_id == counted.id
    assert Decimal(entry.quantity_delta) == Decimal("-5")
    assert get_current_stock(db, scope) == Decimal("65")

    audit = db.execute(select(AuditLog).where(AuditLog.action == "inventory_correction.approve")).scalar_one()
    assert audit.target_id == counted.id
    assert audit.actor_id == "manager"


def test_approval_of_zero_difference_writes_no_entry(db, scope, clock):
    record_opening_stock(db, scope, 4, created_by="u1", clock=clock)
    correction = create_correction(db, scope, physical_count=4, reason="cycle_count", created_by="u2", clock=clock)
    approve_correction(db, business_id=scope.business_id, correction_id=correction.id, approved_by="m", clock=clock)
    db.commit()

    assert correction.stock_entry_id is None
    count = db.execute(select(func.count(StockLedgerEntry.id)).where(*scope.ledger_clauses())).scalar_one()
    assert count == 1


def test_approval_may_take_stock_below_zero(db, scope, clock):
    record_opening_stock(db, scope, 2, created_by="u1", clock=clock)
    correction = create_correction(db, scope, physical_count=0, reason="lost", created_by="u2", clock=clock)
    process_sale(db, scope, 2, sale_id="s-1", created_by="u1", clock=clock)
    approve_correction(db, business_id=scope.business_id, correction_id=correction.id, approved_by="m", clock=clock)
    assert get_current_stock(db, scope) == Decimal("-2")


def test_approval_state_errors(db, scope, counted, clock):
    with pytest.raises(CorrectionStateError):
        approve_correction(db, business_id=scope.business_id, correction_id=counted.id, approved_by="m", clock=clock)
    with pytest.raises(RecordNotFoundError):
        approve_correction(db, business_id=scope.business_id, correction_id="missing", approved_by="m", clock=clock)
    with pytest.raises(RecordNotFoundError):
        approve_correction(db, business_id="other-biz", correction_id=counted.id, approved_by="m", clock=clock)


def test_anchor_is_latest_approved_correction(db, scope, counted, clock):
    anchor = get_correction_anchor(db, scope)
    assert anchor.anchored
    assert anchor.correction_id == counted.id
    assert anchor.baseline_quantity == Decimal("65")
    assert anchor.start_at == _at(14, 10)

    clock.advance_to(_at(16))
    create_correction(db, scope, physical_count=1, reason="recount", created_by="u2", clock=clock)
    db.commit()
    assert get_correction_anchor(db, scope).correction_id == counted.id


def test_anchor_defaults_to_epoch(db, scope):
    anchor = get_correction_anchor(db, scope)
    assert not anchor.anchored
    assert anchor.baseline_quantity == Decimal("0")
    assert anchor.start_at.year == 1970


def test_anchored_report_opens_with_counted_quantity(db, scope, counted, clock):
    clock.advance_to(_at(20))
    report = build_stock_history(db, scope, clock=clock)

    assert report.anchor.correction_id == counted.id
    assert report.opening_line.running_balance == Decimal("65")
    assert report.opening_line.reference_id == counted.id
    assert report.lines == []
    assert report.summary.calculated_final_balance == Decimal("65")
    assert report.summary.current_system_inventory == Decimal("65")
    assert report.summary.is_reconciled


def test_anchored_report_includes_movements_after_the_count(db, scope, counted, clock):
    process_sale(db, scope, 5, sale_id="sale-2", created_by="u1", occurred_at=_at(16), clock=clock)
    db.commit()
    clock.advance_to(_at(20))

    report = build_stock_history(db, scope, clock=clock)
    assert [line.reference_id for line in report.lines] == ["sale-2"]
    assert report.lines[0].running_balance == Decimal("60")
    assert report.summary.total_out == Decimal("5")
    assert report.summary.is_reconciled


def test_explicit_start_sums_earlier_movements(db, scope, counted, clock):
    process_sale(db, scope, 5, sale_id="sale-2", created_by="u1", occurred_at=_at(16), clock=clock)
    db.commit()
    clock.advance_to(_at(20))

    report = build_stock_history(db, scope, start=date(2026, 1, 11), clock=clock)
    assert report.opening_line.running_balance == Decimal("100")
    assert [line.type for line in report.lines] == ["sale", "adjustment", "sale"]
    assert report.summary.calculated_final_balance == Decimal("60")
    assert report.summary.net_change == Decimal("-40")
    assert report.summary.is_reconciled


def test_report_end_before_start_is_rejected(db, scope, clock):
    with pytest.raises(LedgerValidationError):
        build_stock_history(db, scope, start=date(2026, 1, 15), end=date(2026, 1, 10), clock=clock)


def test_unanchored_report_starts_from_first_movement(db, scope, clock):
    record_opening_stock(db, scope, 8, created_by="u1", occurred_at=_at(10), clock=clock)
    process_sale(db, scope, 3, sale_id="s-1", created_by="u1", occurred_at=_at(11), clock=clock)
    db.commit()

    report = build_stock_history(db, scope, clock=clock)
    assert not report.anchor.anchored
    assert report.opening_line.running_balance == Decimal("0")
    assert report.summary.transaction_count == 2
    assert report.summary.calculated_final_balance == Decimal("5")
    assert report.summary.is_reconciled


def test_bulk_approve_isolates_failures(db, scope_at, clock):
    first = scope_at(variation_id="var-a")
    second = scope_at(variation_id="var-b")
    record_opening_stock(db, first, 10, created_by="u1", clock=clock)
    record_opening_stock(db, second, 10, created_by="u1", clock=clock)
    one = create_correction(db, first, physical_count=9, reason="cycle_count", created_by="u2", clock=clock)
    two = create_correction(db, second, physical_count=12, reason="cycle_count", created_by="u2", clock=clock)
    db.commit()
    one_id, two_id = one.id, two.id

    outcomes = approve_corrections(
        db,
        business_id="biz-1",
        correction_ids=[one_id, "missing", two_id],
        approved_by="manager",
        clock=clock,
    )

    assert [outcome.success for outcome in outcomes] == [True, False, True]
    assert outcomes[1].error == "Inventory correction not found"
    assert get_current_stock(db, first) == Decimal("9")
    assert get_current_stock(db, second) == Decimal("12")

    total, rows = list_corrections(db, business_id="biz-1", status="approved")
    assert total == 2
    assert {row.id for row in rows} == {one_id, two_id}


def test_approval_note_fits_the_ledger_column(db, scope, clock):
    record_opening_stock(db, scope, 10, created_by="u1", clock=clock)
    correction = create_correction(
        db, scope, physical_count=9, reason="r" * 100, remarks="m" * 255, created_by="u2", clock=clock
    )
    approve_correction(db, business_id=scope.business_id, correction_id=correction.id, approved_by="m", clock=clock)
    db.commit()

    entry = db.get(StockLedgerEntry, correction.stock_entry_id)
    assert len(entry.note) == 255
    assert entry.note.startswith("Inventory correction: " + "r" * 100 + " - m")


def test_same_instant_movements_are_not_counted_twice(db, scope, clock):
    opening = record_opening_stock(db, scope, 10, created_by="u1", clock=clock)
    correction = create_correction(db, scope, physical_count=8, reason="cycle_count", created_by="u2", clock=clock)
    approve_correction(db, business_id=scope.business_id, correction_id=correction.id, approved_by="m", clock=clock)
    process_sale(db, scope, 1, sale_id="s-1", created_by="u1", clock=clock)
    db.commit()

    assert correction.baseline_entry_id == opening.entry.id
    anchor = get_correction_anchor(db, scope)
    assert anchor.baseline_entry_id == opening.entry.id
    assert anchor.start_at == clock.now()

    report = build_stock_history(db, scope, clock=clock)
    assert [line.reference_id for line in report.lines] == ["s-1"]
    assert report.opening_line.running_balance == Decimal("8")
    assert report.summary.calculated_final_balance == Decimal("7")
    assert report.summary.current_system_inventory == Decimal("7")
    assert report.summary.is_reconciled
