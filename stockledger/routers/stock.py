import uuid
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.clock import Clock
from stockledger.core.deps import get_actor_id, get_business_id, get_clock, get_db
from stockledger.core.exceptions import LedgerError
from stockledger.core.id_utils import generate_reference_number
from stockledger.core.scope import StockScope
from stockledger.models.stock import StockLedgerEntry
from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.stock import (
    AnchorOut,
    AvailabilityIn,
    AvailabilityItemOut,
    AvailabilityOut,
    BalanceAsOfOut,
    HistoryLineOut,
    HistorySummaryOut,
    LedgerEntryOut,
    LedgerListOut,
    MovementBulkIn,
    MovementBulkOut,
    MovementIn,
    MovementOut,
    ScopeOut,
    StockHistoryOut,
    StockLevelOut,
    TransferIn,
    TransferOut,
)
from stockledger.services.correction_service import CorrectionAnchor, HistoryLine, build_stock_history, get_correction_anchor
from stockledger.services.ledger_service import (
    LedgerAppendResult,
    StockMovement,
    append_movement,
    append_movements,
    batch_check_stock_availability,
    get_current_stock,
    list_ledger_entries,
)
from stockledger.services.point_in_time_service import get_balance_as_of
from stockledger.services.stock_operations import transfer_stock

router = APIRouter(prefix="/stock", tags=["stock"])


def _scope(business_id: str, product_id: str, variation_id: str, location_id: str) -> StockScope:
    return StockScope(
        business_id=business_id,
        product_id=product_id,
        variation_id=variation_id,
        location_id=location_id,
    )


def _parse_when(value: str | None, *, field: str) -> date | datetime | None:
    if value is None:
        return None
    cleaned = value.strip()
    try:
        if len(cleaned) == 10:
            return date.fromisoformat(cleaned)
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=422, detail=f"{field} must be an ISO date or datetime") from None


def entry_out(entry: StockLedgerEntry) -> LedgerEntryOut:
    return LedgerEntryOut(
        id=entry.id,
        business_id=entry.business_id,
        product_id=entry.product_id,
        variation_id=entry.variation_id,
        location_id=entry.location_id,
        type=entry.type,
        quantity_delta=entry.quantity_delta,
        balance_after=entry.balance_after,
        unit_cost=entry.unit_cost,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        reference_number=entry.reference_number,
        note=entry.note,
        created_by=entry.created_by,
        created_at=entry.created_at,
    )


def _movement_out(result: LedgerAppendResult) -> MovementOut:
    return MovementOut(
        entry=entry_out(result.entry),
        previous_balance=result.previous_balance,
        new_balance=result.new_balance,
    )


def _movement(payload: MovementIn, *, business_id: str, actor_id: str) -> StockMovement:
    return StockMovement(
        scope=_scope(business_id, payload.product_id, payload.variation_id, payload.location_id),
        type=payload.type,
        quantity_delta=payload.quantity_delta,
        unit_cost=payload.unit_cost,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        reference_number=payload.reference_number,
        note=payload.note,
        occurred_at=payload.occurred_at,
        allow_negative=payload.allow_negative,
        created_by=actor_id,
    )


def _anchor_out(anchor: CorrectionAnchor) -> AnchorOut:
    return AnchorOut(
        start_at=anchor.start_at,
        baseline_quantity=anchor.baseline_quantity,
        correction_id=anchor.correction_id,
        stock_entry_id=anchor.stock_entry_id,
        baseline_entry_id=anchor.baseline_entry_id,
        description=anchor.description,
        anchored=anchor.anchored,
    )


def _line_out(line: HistoryLine) -> HistoryLineOut:
    return HistoryLineOut(
        entry_id=line.entry_id,
        occurred_at=line.occurred_at,
        type=line.type,
        description=line.description,
        quantity_in=line.quantity_in,
        quantity_out=line.quantity_out,
        running_balance=line.running_balance,
        created_by=line.created_by,
        reference_type=line.reference_type,
        reference_id=line.reference_id,
        reference_number=line.reference_number,
    )


@router.post(
    "/movements",
    response_model=MovementOut,
    summary="Record a stock movement",
    responses=error_responses(400, 409, 422, 500),
)
def record_movement(
    payload: MovementIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    try:
        result = append_movement(db, _movement(payload, business_id=business_id, actor_id=actor_id), clock=clock)
    except LedgerError:
        db.rollback()
        raise
    out = _movement_out(result)
    db.commit()
    return out


@router.post(
    "/movements/bulk",
    response_model=MovementBulkOut,
    summary="Record several stock movements atomically",
    responses=error_responses(400, 409, 422, 500),
)
def record_movements_bulk(
    payload: MovementBulkIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    movements = [_movement(item, business_id=business_id, actor_id=actor_id) for item in payload.items]
    try:
        results = append_movements(db, movements, clock=clock)
    except LedgerError:
        db.rollback()
        raise
    out = MovementBulkOut(items=[_movement_out(result) for result in results])
    db.commit()
    return out


@router.post(
    "/transfers",
    response_model=TransferOut,
    summary="Transfer stock between locations",
    responses=error_responses(400, 409, 422, 500),
)
def create_transfer(
    payload: TransferIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    transfer_id = payload.transfer_id or str(uuid.uuid4())
    try:
        result = transfer_stock(
            db,
            _scope(business_id, payload.product_id, payload.variation_id, payload.from_location_id),
            to_location_id=payload.to_location_id,
            quantity=payload.quantity,
            transfer_id=transfer_id,
            transfer_number=payload.transfer_number or generate_reference_number("TRF"),
            created_by=actor_id,
            clock=clock,
        )
    except LedgerError:
        db.rollback()
        raise
    out = TransferOut(
        transfer_id=transfer_id,
        transfer_out=_movement_out(result.transfer_out),
        transfer_in=_movement_out(result.transfer_in),
    )
    db.commit()
    return out


@router.get(
    "/level",
    response_model=StockLevelOut,
    summary="Current quantity on hand",
    responses=error_responses(400, 422, 500),
)
def get_stock_level(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    scope = _scope(business_id, product_id, variation_id, location_id)
    return StockLevelOut(**scope.as_dict(), qty_available=get_current_stock(db, scope))


@router.get(
    "/level/as-of",
    response_model=BalanceAsOfOut,
    summary="Quantity on hand at a past date or instant",
    responses=error_responses(400, 409, 422, 500),
)
def get_stock_level_as_of(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    as_of: str = Query(..., description="ISO date (end of business day) or ISO datetime"),
    policy: str | None = Query(default=None, description="Drift policy override: estimate or refuse"),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    clock: Clock = Depends(get_clock),
):
    scope = _scope(business_id, product_id, variation_id, location_id)
    balance = get_balance_as_of(db, scope, _parse_when(as_of, field="as_of"), policy=policy, clock=clock)
    return BalanceAsOfOut(
        **scope.as_dict(),
        as_of=balance.as_of,
        quantity=balance.quantity,
        raw_quantity=balance.raw_quantity,
        unit_cost=balance.unit_cost,
        source=balance.source.value,
        drift=balance.drift,
        clamped=balance.clamped,
    )


@router.get(
    "/ledger",
    response_model=LedgerListOut,
    summary="List ledger entries for a scope, newest first",
    responses=error_responses(400, 422, 500),
)
def get_ledger(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=200, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    scope = _scope(business_id, product_id, variation_id, location_id)
    total, rows = list_ledger_entries(db, scope, limit=limit, offset=offset)
    items = [entry_out(row) for row in rows]
    count = len(items)
    return LedgerListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
    )


@router.get(
    "/anchor",
    response_model=AnchorOut,
    summary="Latest approved correction used as a report baseline",
    responses=error_responses(400, 422, 500),
)
def get_anchor(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    return _anchor_out(get_correction_anchor(db, _scope(business_id, product_id, variation_id, location_id)))


@router.get(
    "/history",
    response_model=StockHistoryOut,
    summary="Stock history report with opening line and reconciliation summary",
    responses=error_responses(400, 422, 500),
)
def get_history(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    start: str | None = Query(default=None, description="Optional ISO date or datetime; defaults to the correction anchor"),
    end: str | None = Query(default=None, description="Optional ISO date (inclusive) or datetime; defaults to today"),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    clock: Clock = Depends(get_clock),
):
    scope = _scope(business_id, product_id, variation_id, location_id)
    report = build_stock_history(
        db,
        scope,
        start=_parse_when(start, field="start"),
        end=_parse_when(end, field="end"),
        clock=clock,
    )
    summary = report.summary
    return StockHistoryOut(
        scope=ScopeOut(**scope.as_dict()),
        start_at=report.start_at,
        end_at=report.end_at,
        anchor=_anchor_out(report.anchor),
        opening_line=_line_out(report.opening_line),
        lines=[_line_out(line) for line in report.lines],
        summary=HistorySummaryOut(
            opening_balance=summary.opening_balance,
            total_in=summary.total_in,
            total_out=summary.total_out,
            net_change=summary.net_change,
            calculated_final_balance=summary.calculated_final_balance,
            current_system_inventory=summary.current_system_inventory,
            variance=summary.variance,
            is_reconciled=summary.is_reconciled,
            transaction_count=summary.transaction_count,
        ),
    )


@router.post(
    "/availability",
    response_model=AvailabilityOut,
    summary="Check whether requested quantities are on hand at one location",
    responses=error_responses(400, 422, 500),
)
def check_availability(
    payload: AvailabilityIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    results = batch_check_stock_availability(
        db,
        location_id=payload.location_id,
        business_id=business_id,
        items=[(item.variation_id, item.quantity) for item in payload.items],
    )
    items = [
        AvailabilityItemOut(
            variation_id=item.variation_id,
            requested=item.quantity,
            available=results[item.variation_id].available,
            current_stock=results[item.variation_id].current_stock,
            shortage=results[item.variation_id].shortage,
        )
        for item in payload.items
    ]
    return AvailabilityOut(
        location_id=payload.location_id,
        all_available=all(item.available for item in items),
        items=items,
    )
