from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from stockledger.core.clock import Clock, system_clock
from stockledger.core.exceptions import LedgerValidationError
from stockledger.core.quantity import parse_quantity
from stockledger.core.scope import StockScope
from stockledger.models.stock import LedgerEntryType
from stockledger.services.ledger_service import LedgerAppendResult, StockMovement, append_movement


@dataclass(frozen=True)
class TransferResult:
    transfer_out: LedgerAppendResult
    transfer_in: LedgerAppendResult


def _positive(quantity: Decimal | int | str, *, label: str = "quantity") -> Decimal:
    try:
        value = parse_quantity(quantity)
    except ValueError as exc:
        raise LedgerValidationError(str(exc)) from exc
    if value <= 0:
        raise LedgerValidationError(f"{label} must be greater than zero")
    return value


def record_opening_stock(
    db: Session,
    scope: StockScope,
    quantity: Decimal | int | str,
    *,
    created_by: str,
    unit_cost: Decimal | int | str | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    try:
        value = parse_quantity(quantity)
    except ValueError as exc:
        raise LedgerValidationError(str(exc)) from exc
    if value < 0:
        raise LedgerValidationError("Opening stock cannot be negative")

    return append_movement(
        db,
        StockMovement(
            scope=scope,
            type=LedgerEntryType.OPENING_STOCK,
            quantity_delta=value,
            unit_cost=unit_cost,
            reference_type="opening_stock",
            reference_id=scope.product_id,
            created_by=created_by,
            note="Opening stock",
            occurred_at=occurred_at,
        ),
        clock=clock,
    )


def process_purchase_receipt(
    db: Session,
    scope: StockScope,
    quantity: Decimal | int | str,
    *,
    unit_cost: Decimal | int | str,
    receipt_id: str,
    created_by: str,
    receipt_number: str | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    return append_movement(
        db,
        StockMovement(
            scope=scope,
            type=LedgerEntryType.PURCHASE,
            quantity_delta=_positive(quantity),
            unit_cost=unit_cost,
            reference_type="purchase_receipt",
            reference_id=receipt_id,
            reference_number=receipt_number,
            created_by=created_by,
            note=f"Purchase receipt {receipt_number or receipt_id}",
            occurred_at=occurred_at,
        ),
        clock=clock,
    )


def process_sale(
    db: Session,
    scope: StockScope,
    quantity: Decimal | int | str,
    *,
    sale_id: str,
    created_by: str,
    invoice_number: str | None = None,
    unit_cost: Decimal | int | str | None = None,
    allow_negative: bool | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    return append_movement(
        db,
        StockMovement(
            scope=scope,
            type=LedgerEntryType.SALE,
            quantity_delta=-_positive(quantity),
            unit_cost=unit_cost,
            reference_type="sale",
            reference_id=sale_id,
            reference_number=invoice_number,
            created_by=created_by,
            note=f"Sale - Invoice #{invoice_number}" if invoice_number else None,
            allow_negative=allow_negative,
            occurred_at=occurred_at,
        ),
        clock=clock,
    )


def process_customer_return(
    db: Session,
    scope: StockScope,
    quantity: Decimal | int | str,
    *,
    return_id: str,
    created_by: str,
    return_number: str | None = None,
    unit_cost: Decimal | int | str | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    return append_movement(
        db,
        StockMovement(
            scope=scope,
            type=LedgerEntryType.CUSTOMER_RETURN,
            quantity_delta=_positive(quantity),
            unit_cost=unit_cost,
            reference_type="customer_return",
            reference_id=return_id,
            reference_number=return_number,
            created_by=created_by,
            occurred_at=occurred_at,
        ),
        clock=clock,
    )


def process_supplier_return(
    db: Session,
    scope: StockScope,
    quantity: Decimal | int | str,
    *,
    return_id: str,
    created_by: str,
    return_number: str | None = None,
    unit_cost: Decimal | int | str | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    return append_movement(
        db,
        StockMovement(
            scope=scope,
            type=LedgerEntryType.SUPPLIER_RETURN,
            quantity_delta=-_positive(quantity),
            unit_cost=unit_cost,
            reference_type="supplier_return",
            reference_id=return_id,
            reference_number=return_number,
            created_by=created_by,
            occurred_at=occurred_at,
        ),
        clock=clock,
    )


def adjust_stock(
    db: Session,
    scope: StockScope,
    quantity_delta: Decimal | int | str,
    *,
    reason: str,
    created_by: str,
    note: str | None = None,
    unit_cost: Decimal | int | str | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> LedgerAppendResult:
    return append_movement(
        db,
        StockMovement(
            scope=scope,
            type=LedgerEntryType.ADJUSTMENT,
            quantity_delta=quantity_delta,
            unit_cost=unit_cost,
            reference_type="manual_adjustment",
            created_by=created_by,
            note=f"{reason}: {note}" if note else reason,
            occurred_at=occurred_at,
        ),
        clock=clock,
    )


def transfer_stock(
    db: Session,
    scope: StockScope,
    *,
    to_location_id: str,
    quantity: Decimal | int | str,
    transfer_id: str,
    created_by: str,
    transfer_number: str | None = None,
    occurred_at: datetime | None = None,
    clock: Clock = system_clock,
) -> TransferResult:
    """Move stock from ``scope.location_id`` to ``to_location_id``. Both legs share the caller's transaction."""
    if not (to_location_id or "").strip():
        raise LedgerValidationError("to_location_id is required")
    if to_location_id == scope.location_id:
        raise LedgerValidationError("Cannot transfer stock to the same location")

    value = _positive(quantity)
    destination = scope.with_location(to_location_id)

    outbound = StockMovement(
        scope=scope,
        type=LedgerEntryType.TRANSFER_OUT,
        quantity_delta=-value,
        reference_type="transfer",
        reference_id=transfer_id,
        reference_number=transfer_number,
        created_by=created_by,
        note=f"Transfer out to location {to_location_id}",
        occurred_at=occurred_at,
    )
    inbound = StockMovement(
        scope=destination,
        type=LedgerEntryType.TRANSFER_IN,
        quantity_delta=value,
        reference_type="transfer",
        reference_id=transfer_id,
        reference_number=transfer_number,
        created_by=created_by,
        note=f"Transfer in from location {scope.location_id}",
        occurred_at=occurred_at,
    )

    # Projection rows are always locked in location order.
    if scope.location_id <= to_location_id:
        transfer_out = append_movement(db, outbound, clock=clock)
        transfer_in = append_movement(db, inbound, clock=clock)
    else:
        transfer_in = append_movement(db, inbound, clock=clock)
        transfer_out = append_movement(db, outbound, clock=clock)
    return TransferResult(transfer_out=transfer_out, transfer_in=transfer_in)
