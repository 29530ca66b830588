"""
Stock ledger writer and current-balance reads.

Every inventory movement goes through ``append_movement``. The projection row
is bumped with a single atomic upsert before the ledger row is written, so the
projection row lock is held for the rest of the caller's transaction and two
appends against one scope can never compute from the same stale balance.

Nothing here commits. Callers own the transaction and must roll back when an
append raises.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from stockledger.core.clock import Clock, ensure_utc, system_clock, to_storage
from stockledger.core.config import settings
from stockledger.core.exceptions import InsufficientStockError, LedgerValidationError
from stockledger.core.observability import log_ledger_event
from stockledger.core.quantity import ZERO_QTY, parse_quantity, to_money, to_quantity, within_tolerance
from stockledger.core.scope import StockScope
from stockledger.models.stock import LedgerEntryType, StockLedgerEntry, StockProjection

CREATED_BY_MAX_LENGTH = 191
NOTE_MAX_LENGTH = 255

# +1 stock in, -1 stock out, 0 either direction.
ENTRY_SIGNS: dict[LedgerEntryType, int] = {
    LedgerEntryType.OPENING_STOCK: 1,
    LedgerEntryType.PURCHASE: 1,
    LedgerEntryType.SALE: -1,
    LedgerEntryType.TRANSFER_IN: 1,
    LedgerEntryType.TRANSFER_OUT: -1,
    LedgerEntryType.ADJUSTMENT: 0,
    LedgerEntryType.CUSTOMER_RETURN: 1,
    LedgerEntryType.SUPPLIER_RETURN: -1,
}


@dataclass(frozen=True)
class StockMovement:
    scope: StockScope
    type: LedgerEntryType | str
    quantity_delta: Decimal | int | str
    created_by: str
    unit_cost: Decimal | int | str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    reference_number: str | None = None
    note: str | None = None
    occurred_at: datetime | None = None
    allow_negative: bool | None = None


@dataclass(frozen=True)
class LedgerAppendResult:
    entry: StockLedgerEntry
    previous_balance: Decimal
    new_balance: Decimal


@dataclass(frozen=True)
class StockAvailability:
    available: bool
    current_stock: Decimal
    shortage: Decimal


def coerce_entry_type(value: LedgerEntryType | str) -> LedgerEntryType:
    if isinstance(value, LedgerEntryType):
        return value
    try:
        return LedgerEntryType(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in LedgerEntryType)
        raise LedgerValidationError(f"Unknown ledger entry type '{value}'. Allowed: {allowed}") from exc


def _validated(movement: StockMovement) -> tuple[LedgerEntryType, Decimal, Decimal | None, str]:
    movement.scope.validate()
    entry_type = coerce_entry_type(movement.type)

    try:
        delta = parse_quantity(movement.quantity_delta)
    except ValueError as exc:
        raise LedgerValidationError(str(exc)) from exc

    if delta == 0 and entry_type is not LedgerEntryType.OPENING_STOCK:
        raise LedgerValidationError(f"quantity_delta cannot be zero for {entry_type.value}")

    sign = ENTRY_SIGNS[entry_type]
    if sign > 0 and delta < 0:
        raise LedgerValidationError(f"{entry_type.value} must add stock; got {delta}")
    if sign < 0 and delta > 0:
        raise LedgerValidationError(f"{entry_type.value} must remove stock; got {delta}")

    unit_cost = None
    if movement.unit_cost is not None:
        try:
            unit_cost = parse_quantity(movement.unit_cost)
        except ValueError as exc:
            raise LedgerValidationError(f"Invalid unit_cost: {exc}") from exc
        if unit_cost < 0:
            raise LedgerValidationError("unit_cost cannot be negative")
        unit_cost = to_money(unit_cost)

    created_by = (movement.created_by or "").strip()
    if not created_by:
        raise LedgerValidationError("created_by is required")

    return entry_type, delta, unit_cost, created_by[:CREATED_BY_MAX_LENGTH]


def _insert_builder(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    return None


def _bump_projection(db: Session, scope: StockScope, delta: Decimal, at: datetime) -> Decimal:
    """Add ``delta`` to the projection row, creating it on first use. Returns the new quantity."""
    insert = _insert_builder(db)
    if insert is not None:
        stmt = insert(StockProjection).values(
            id=str(uuid.uuid4()),
            business_id=scope.business_id,
            product_id=scope.product_id,
            variation_id=scope.variation_id,
            location_id=scope.location_id,
            qty_available=delta,
            created_at=at,
            updated_at=at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["business_id", "variation_id", "location_id"],
            set_={
                "qty_available": StockProjection.qty_available + stmt.excluded.qty_available,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(StockProjection.qty_available)
        return to_quantity(db.execute(stmt).scalar_one())

    projection = db.execute(
        select(StockProjection)
        .where(*scope.projection_clauses())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if projection is None:
        projection = StockProjection(
            id=str(uuid.uuid4()),
            business_id=scope.business_id,
            product_id=scope.product_id,
            variation_id=scope.variation_id,
            location_id=scope.location_id,
            qty_available=delta,
            created_at=at,
            updated_at=at,
        )
        db.add(projection)
    else:
        projection.qty_available = to_quantity(projection.qty_available) + delta
        projection.updated_at = at
    db.flush()
    return to_quantity(projection.qty_available)


def latest_entry(db: Session, scope: StockScope) -> StockLedgerEntry | None:
    return db.execute(
        select(StockLedgerEntry)
        .where(*scope.ledger_clauses())
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def insert_ledger_row(
    db: Session,
    *,
    scope: StockScope,
    entry_type: LedgerEntryType,
    delta: Decimal,
    balance_after: Decimal,
    created_by: str,
    created_at: datetime,
    unit_cost: Decimal | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    reference_number: str | None = None,
    note: str | None = None,
) -> StockLedgerEntry:
    entry = StockLedgerEntry(
        business_id=scope.business_id,
        product_id=scope.product_id,
        variation_id=scope.variation_id,
        location_id=scope.location_id,
        type=entry_type.value,
        quantity_delta=delta,
        balance_after=balance_after,
        unit_cost=unit_cost,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_number=reference_number,
        note=note[:NOTE_MAX_LENGTH] if note else note,
        created_by=created_by,
        created_at=created_at,
    )
    db.add(entry)
    db.flush()
    return entry


def append_movement(
    db: Session,
    movement: StockMovement,
    *,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    entry_type, delta, unit_cost, created_by = _validated(movement)
    scope = movement.scope

    new_balance = _bump_projection(db, scope, delta, to_storage(clock.now()))
    previous_balance = new_balance - delta

    allow_negative = settings.allow_negative_stock if movement.allow_negative is None else movement.allow_negative
    if delta < 0 and new_balance < 0 and not allow_negative:
        raise InsufficientStockError(current=previous_balance, requested=-delta)

    # Read "now" only once the projection row is locked.
    created_at = to_storage(movement.occurred_at or clock.now())
    last = latest_entry(db, scope)
    if last is not None:
        last_at = ensure_utc(last.created_at)
        if created_at < last_at and movement.occurred_at is not None:
            raise LedgerValidationError(
                "occurred_at precedes the latest ledger entry for this scope",
                details={"occurred_at": created_at.isoformat(), "latest_entry_id": last.id},
            )
        created_at = max(created_at, last_at)
        ledger_balance = to_quantity(last.balance_after)
        if not within_tolerance(ledger_balance, previous_balance, settings.reconciliation_tolerance):
            log_ledger_event(
                logging.WARNING,
                "ledger_drift_on_append",
                scope=scope.as_dict(),
                ledger_balance=str(ledger_balance),
                projection_balance=str(previous_balance),
            )

    entry = insert_ledger_row(
        db,
        scope=scope,
        entry_type=entry_type,
        delta=delta,
        balance_after=new_balance,
        created_by=created_by,
        created_at=created_at,
        unit_cost=unit_cost,
        reference_type=movement.reference_type,
        reference_id=movement.reference_id,
        reference_number=movement.reference_number,
        note=movement.note or f"Stock {'added' if delta >= 0 else 'deducted'} - {entry_type.value}",
    )
    return LedgerAppendResult(entry=entry, previous_balance=previous_balance, new_balance=new_balance)


def append_movements(
    db: Session,
    movements: list[StockMovement],
    *,
    clock: Clock = system_clock,
) -> list[LedgerAppendResult]:
    """Apply movements in order inside the caller's transaction. The first failure aborts the batch."""
    return [append_movement(db, movement, clock=clock) for movement in movements]


def get_projection(db: Session, scope: StockScope) -> StockProjection | None:
    return db.execute(
        select(StockProjection)
        .where(*scope.projection_clauses())
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_current_stock(db: Session, scope: StockScope) -> Decimal:
    qty = db.execute(
        select(StockProjection.qty_available).where(*scope.projection_clauses())
    ).scalar_one_or_none()
    return to_quantity(qty) if qty is not None else ZERO_QTY


def _availability(current: Decimal, quantity: Decimal) -> StockAvailability:
    available = current >= quantity
    return StockAvailability(
        available=available,
        current_stock=current,
        shortage=ZERO_QTY if available else to_quantity(quantity - current),
    )


def check_stock_availability(db: Session, scope: StockScope, quantity: Decimal | int | str) -> StockAvailability:
    return _availability(get_current_stock(db, scope), to_quantity(quantity))


def batch_check_stock_availability(
    db: Session,
    *,
    business_id: str,
    location_id: str,
    items: list[tuple[str, Decimal | int | str]],
) -> dict[str, StockAvailability]:
    """
    Check several variations at one location with a single projection query.

    Lines repeating a variation are summed, so the result for that variation
    answers whether the combined quantity is on hand.
    """
    requested: dict[str, Decimal] = {}
    for variation_id, quantity in items:
        requested[variation_id] = requested.get(variation_id, ZERO_QTY) + to_quantity(quantity)

    rows = db.execute(
        select(StockProjection.variation_id, StockProjection.qty_available).where(
            StockProjection.business_id == business_id,
            StockProjection.location_id == location_id,
            StockProjection.variation_id.in_(list(requested)),
        )
    ).all()
    stock_by_variation = {variation_id: to_quantity(qty) for variation_id, qty in rows}

    return {
        variation_id: _availability(stock_by_variation.get(variation_id, ZERO_QTY), total)
        for variation_id, total in requested.items()
    }


def list_ledger_entries(
    db: Session,
    scope: StockScope,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[int, list[StockLedgerEntry]]:
    total = int(
        db.execute(select(func.count(StockLedgerEntry.id)).where(*scope.ledger_clauses())).scalar_one()
    )
    rows = db.execute(
        select(StockLedgerEntry)
        .where(*scope.ledger_clauses())
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return total, list(rows)
