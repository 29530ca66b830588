"""
Inventory corrections, the correction anchor, and the anchored history report.

An approved correction is a trusted physical count. Reports that start from it
open with the counted quantity as an explicit baseline line, so movements
recorded before the count are summarized rather than dropped.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockledger.core.clock import (
    EPOCH,
    Clock,
    business_day,
    end_of_business_day,
    ensure_utc,
    normalize_cutoff,
    start_of_business_day,
    system_clock,
    to_storage,
)
from stockledger.core.config import settings
from stockledger.core.exceptions import CorrectionStateError, LedgerError, LedgerValidationError, RecordNotFoundError
from stockledger.core.observability import log_ledger_event
from stockledger.core.quantity import ZERO_QTY, parse_quantity, to_quantity, within_tolerance
from stockledger.core.scope import StockScope
from stockledger.db.session import apply_report_timeout
from stockledger.models.stock import CorrectionStatus, InventoryCorrection, LedgerEntryType, StockLedgerEntry
from stockledger.services.audit_service import log_audit_event
from stockledger.services.ledger_service import (
    NOTE_MAX_LENGTH,
    StockMovement,
    append_movement,
    get_current_stock,
    latest_entry,
)

CORRECTION_REFERENCE_TYPE = "inventory_correction"


@dataclass(frozen=True)
class CorrectionAnchor:
    start_at: datetime
    baseline_quantity: Decimal
    correction_id: str | None = None
    baseline_entry_id: int | None = None
    stock_entry_id: int | None = None
    description: str = "No correction found - starting from first transaction"

    @property
    def anchored(self) -> bool:
        return self.correction_id is not None


@dataclass(frozen=True)
class HistoryLine:
    entry_id: int | None
    occurred_at: datetime
    type: str
    description: str
    quantity_in: Decimal
    quantity_out: Decimal
    running_balance: Decimal
    created_by: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    reference_number: str | None = None


@dataclass(frozen=True)
class HistorySummary:
    opening_balance: Decimal
    total_in: Decimal
    total_out: Decimal
    net_change: Decimal
    calculated_final_balance: Decimal
    current_system_inventory: Decimal
    variance: Decimal
    is_reconciled: bool
    transaction_count: int


@dataclass(frozen=True)
class StockHistoryReport:
    scope: StockScope
    start_at: datetime
    end_at: datetime
    anchor: CorrectionAnchor
    opening_line: HistoryLine
    lines: list[HistoryLine] = field(default_factory=list)
    summary: HistorySummary | None = None


@dataclass(frozen=True)
class ApprovalOutcome:
    correction_id: str
    success: bool
    error: str | None = None
    stock_entry_id: int | None = None


def _get_correction(db: Session, *, business_id: str, correction_id: str) -> InventoryCorrection:
    correction = db.execute(
        select(InventoryCorrection)
        .where(
            InventoryCorrection.id == correction_id,
            InventoryCorrection.business_id == business_id,
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if correction is None:
        raise RecordNotFoundError("Inventory correction not found")
    return correction


def create_correction(
    db: Session,
    scope: StockScope,
    *,
    physical_count: Decimal | int | str,
    reason: str,
    created_by: str,
    remarks: str | None = None,
    clock: Clock = system_clock,
) -> InventoryCorrection:
    scope.validate()
    try:
        counted = parse_quantity(physical_count)
    except ValueError as exc:
        raise LedgerValidationError(str(exc)) from exc
    if counted < 0:
        raise LedgerValidationError("physical_count cannot be negative")
    if not (reason or "").strip():
        raise LedgerValidationError("reason is required")

    system_count = get_current_stock(db, scope)
    last = latest_entry(db, scope)
    correction = InventoryCorrection(
        id=str(uuid.uuid4()),
        business_id=scope.business_id,
        product_id=scope.product_id,
        variation_id=scope.variation_id,
        location_id=scope.location_id,
        system_count=system_count,
        physical_count=counted,
        difference=counted - system_count,
        baseline_entry_id=last.id if last is not None else None,
        reason=reason.strip(),
        remarks=remarks,
        status=CorrectionStatus.PENDING.value,
        created_by=created_by,
        created_at=to_storage(clock.now()),
    )
    db.add(correction)
    db.flush()
    return correction


def _approval_note(correction: InventoryCorrection) -> str:
    note = f"Inventory correction: {correction.reason}"
    if correction.remarks:
        note = f"{note} - {correction.remarks}"
    return note[:NOTE_MAX_LENGTH]


def approve_correction(
    db: Session,
    *,
    business_id: str,
    correction_id: str,
    approved_by: str,
    clock: Clock = system_clock,
) -> InventoryCorrection:
    """Approve a pending correction and book its difference as an adjustment. Does not commit."""
    correction = _get_correction(db, business_id=business_id, correction_id=correction_id)
    if correction.status != CorrectionStatus.PENDING.value:
        raise CorrectionStateError(f"Correction is already {correction.status}")

    approved_at = to_storage(clock.now())
    difference = to_quantity(correction.difference)
    scope = StockScope.of(correction)

    if difference != 0:
        result = append_movement(
            db,
            StockMovement(
                scope=scope,
                type=LedgerEntryType.ADJUSTMENT,
                quantity_delta=difference,
                reference_type=CORRECTION_REFERENCE_TYPE,
                reference_id=correction.id,
                reference_number=f"COR-{correction.id[:8]}",
                created_by=approved_by,
                note=_approval_note(correction),
                allow_negative=True,
            ),
            clock=clock,
        )
        correction.stock_entry_id = result.entry.id

    correction.status = CorrectionStatus.APPROVED.value
    correction.approved_by = approved_by
    correction.approved_at = approved_at

    log_audit_event(
        db,
        business_id=business_id,
        actor_id=approved_by,
        action="inventory_correction.approve",
        target_type="inventory_correction",
        target_id=correction.id,
        scope=scope,
        metadata_json={
            "system_count": str(correction.system_count),
            "physical_count": str(correction.physical_count),
            "difference": str(difference),
            "stock_entry_id": correction.stock_entry_id,
        },
        clock=clock,
    )
    db.flush()
    log_ledger_event(
        logging.INFO,
        "correction_approved",
        correction_id=correction.id,
        scope=scope.as_dict(),
        difference=str(difference),
    )
    return correction


def approve_corrections(
    db: Session,
    *,
    business_id: str,
    correction_ids: list[str],
    approved_by: str,
    clock: Clock = system_clock,
) -> list[ApprovalOutcome]:
    """Approve corrections one transaction at a time; a failure only rolls back its own correction."""
    outcomes: list[ApprovalOutcome] = []
    for correction_id in correction_ids:
        try:
            correction = approve_correction(
                db,
                business_id=business_id,
                correction_id=correction_id,
                approved_by=approved_by,
                clock=clock,
            )
            db.commit()
        except LedgerError as exc:
            db.rollback()
            outcomes.append(ApprovalOutcome(correction_id=correction_id, success=False, error=exc.message))
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            log_ledger_event(
                logging.ERROR,
                "correction_approval_failed",
                correction_id=correction_id,
                error=str(exc),
            )
            outcomes.append(ApprovalOutcome(correction_id=correction_id, success=False, error="Database error"))
            continue
        outcomes.append(
            ApprovalOutcome(
                correction_id=correction_id,
                success=True,
                stock_entry_id=correction.stock_entry_id,
            )
        )
    return outcomes


def list_corrections(
    db: Session,
    *,
    business_id: str,
    status: str | None = None,
    location_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[int, list[InventoryCorrection]]:
    filters = [InventoryCorrection.business_id == business_id]
    if status:
        filters.append(InventoryCorrection.status == status)
    if location_id:
        filters.append(InventoryCorrection.location_id == location_id)

    total = int(db.execute(select(func.count(InventoryCorrection.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(InventoryCorrection)
        .where(*filters)
        .order_by(InventoryCorrection.created_at.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return total, list(rows)


def get_correction_anchor(db: Session, scope: StockScope) -> CorrectionAnchor:
    scope.validate()
    correction = db.execute(
        select(InventoryCorrection)
        .where(
            *scope.correction_clauses(),
            InventoryCorrection.status == CorrectionStatus.APPROVED.value,
        )
        .order_by(InventoryCorrection.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if correction is None:
        return CorrectionAnchor(start_at=EPOCH, baseline_quantity=ZERO_QTY)
    return CorrectionAnchor(
        start_at=ensure_utc(correction.created_at),
        baseline_quantity=to_quantity(correction.physical_count),
        correction_id=correction.id,
        stock_entry_id=correction.stock_entry_id,
        baseline_entry_id=correction.baseline_entry_id,
        description=f"Last inventory correction ({correction.reason})",
    )


def _line_for(entry: StockLedgerEntry, running_balance: Decimal) -> HistoryLine:
    delta = to_quantity(entry.quantity_delta)
    return HistoryLine(
        entry_id=entry.id,
        occurred_at=ensure_utc(entry.created_at),
        type=entry.type,
        description=entry.note or entry.type,
        quantity_in=delta if delta > 0 else ZERO_QTY,
        quantity_out=-delta if delta < 0 else ZERO_QTY,
        running_balance=running_balance,
        created_by=entry.created_by,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        reference_number=entry.reference_number,
    )


def build_stock_history(
    db: Session,
    scope: StockScope,
    *,
    start: date | datetime | None = None,
    end: date | datetime | None = None,
    clock: Clock = system_clock,
) -> StockHistoryReport:
    """
    Transaction history for one scope with an opening line and a reconciliation summary.

    With an explicit ``start`` the opening balance is the sum of every movement
    before it. Otherwise the report starts at the correction anchor and opens
    with the counted quantity; the anchoring correction's own adjustment is
    left out because the count already includes it.
    """
    scope.validate()
    apply_report_timeout(db)

    anchor = get_correction_anchor(db, scope)
    end_at = normalize_cutoff(end) if end is not None else end_of_business_day(business_day(clock.now()))
    clauses = list(scope.ledger_clauses())

    if start is not None:
        start_at = normalize_cutoff(start) if isinstance(start, datetime) else start_of_business_day(start)
        opening = db.execute(
            select(func.coalesce(func.sum(StockLedgerEntry.quantity_delta), 0)).where(
                *clauses, StockLedgerEntry.created_at < start_at
            )
        ).scalar_one()
        opening_balance = to_quantity(opening)
        opening_description = "Opening balance from movements before the report start"
        window = [StockLedgerEntry.created_at >= start_at]
    else:
        start_at = anchor.start_at
        opening_balance = anchor.baseline_quantity
        opening_description = anchor.description
        window = [StockLedgerEntry.created_at >= start_at]
        if anchor.baseline_entry_id is not None:
            # Same-instant entries up to the baseline id are already counted.
            window = [
                or_(
                    StockLedgerEntry.created_at > start_at,
                    and_(
                        StockLedgerEntry.created_at == start_at,
                        StockLedgerEntry.id > anchor.baseline_entry_id,
                    ),
                )
            ]
        if anchor.stock_entry_id is not None:
            window.append(StockLedgerEntry.id != anchor.stock_entry_id)

    if end_at < start_at:
        raise LedgerValidationError("Report end precedes its start")

    entries = db.execute(
        select(StockLedgerEntry)
        .where(*clauses, *window, StockLedgerEntry.created_at <= end_at)
        .order_by(StockLedgerEntry.created_at.asc(), StockLedgerEntry.id.asc())
    ).scalars().all()

    opening_line = HistoryLine(
        entry_id=None,
        occurred_at=start_at,
        type="opening_balance",
        description=opening_description,
        quantity_in=opening_balance if opening_balance > 0 else ZERO_QTY,
        quantity_out=-opening_balance if opening_balance < 0 else ZERO_QTY,
        running_balance=opening_balance,
        reference_type=CORRECTION_REFERENCE_TYPE if start is None and anchor.anchored else None,
        reference_id=anchor.correction_id if start is None else None,
    )

    running = opening_balance
    lines: list[HistoryLine] = []
    for entry in entries:
        running = running + to_quantity(entry.quantity_delta)
        lines.append(_line_for(entry, running))

    total_in = sum((line.quantity_in for line in lines), ZERO_QTY)
    total_out = sum((line.quantity_out for line in lines), ZERO_QTY)
    current = get_current_stock(db, scope)
    variance = running - current

    summary = HistorySummary(
        opening_balance=opening_balance,
        total_in=total_in,
        total_out=total_out,
        net_change=total_in - total_out,
        calculated_final_balance=running,
        current_system_inventory=current,
        variance=variance,
        is_reconciled=within_tolerance(running, current, settings.reconciliation_tolerance),
        transaction_count=len(lines),
    )
    return StockHistoryReport(
        scope=scope,
        start_at=start_at,
        end_at=end_at,
        anchor=anchor,
        opening_line=opening_line,
        lines=lines,
        summary=summary,
    )
