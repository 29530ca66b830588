from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stockledger.schemas.common import PaginationMeta


class ScopeIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36)
    variation_id: str = Field(min_length=1, max_length=36)
    location_id: str = Field(min_length=1, max_length=36)


class ScopeOut(BaseModel):
    business_id: str
    product_id: str
    variation_id: str
    location_id: str


class MovementIn(ScopeIn):
    type: str = Field(
        ...,
        description=(
            "One of opening_stock, purchase, sale, transfer_in, transfer_out, "
            "adjustment, customer_return, supplier_return."
        ),
    )
    quantity_delta: Decimal = Field(..., description="Signed change. Outbound types must be negative.")
    unit_cost: Decimal | None = Field(default=None, ge=0)
    reference_type: str | None = Field(default=None, max_length=50)
    reference_id: str | None = Field(default=None, max_length=36)
    reference_number: str | None = Field(default=None, max_length=100)
    note: str | None = Field(default=None, max_length=255)
    occurred_at: datetime | None = None
    allow_negative: bool | None = None

    @field_validator("type")
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip().lower()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id",
                "variation_id": "variation-id",
                "location_id": "location-id",
                "type": "sale",
                "quantity_delta": -2,
                "reference_type": "sale",
                "reference_id": "sale-id",
                "reference_number": "INV-0042",
                "note": "Walk-in purchase",
            }
        }
    )


class MovementBulkIn(BaseModel):
    items: list[MovementIn] = Field(min_length=1, max_length=500)


class TransferIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36)
    variation_id: str = Field(min_length=1, max_length=36)
    from_location_id: str = Field(min_length=1, max_length=36)
    to_location_id: str = Field(min_length=1, max_length=36)
    quantity: Decimal = Field(gt=0)
    transfer_id: str | None = Field(default=None, max_length=36)
    transfer_number: str | None = Field(default=None, max_length=100)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id",
                "variation_id": "variation-id",
                "from_location_id": "warehouse",
                "to_location_id": "shop-front",
                "quantity": 5,
                "transfer_number": "TRF-0007",
            }
        }
    )


class LedgerEntryOut(BaseModel):
    id: int
    business_id: str
    product_id: str
    variation_id: str
    location_id: str
    type: str
    quantity_delta: Decimal
    balance_after: Decimal
    unit_cost: Decimal | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    reference_number: str | None = None
    note: str | None = None
    created_by: str
    created_at: datetime


class MovementOut(BaseModel):
    entry: LedgerEntryOut
    previous_balance: Decimal
    new_balance: Decimal


class MovementBulkOut(BaseModel):
    items: list[MovementOut]


class TransferOut(BaseModel):
    transfer_id: str
    transfer_out: MovementOut
    transfer_in: MovementOut


class LedgerListOut(BaseModel):
    items: list[LedgerEntryOut]
    pagination: PaginationMeta


class StockLevelOut(ScopeOut):
    qty_available: Decimal


class BalanceAsOfOut(ScopeOut):
    as_of: datetime
    quantity: Decimal
    raw_quantity: Decimal
    unit_cost: Decimal | None = None
    source: str
    drift: Decimal | None = None
    clamped: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "business_id": "business-id",
                "product_id": "product-id",
                "variation_id": "variation-id",
                "location_id": "location-id",
                "as_of": "2026-01-14T23:59:59.999999Z",
                "quantity": "40.0000",
                "raw_quantity": "40.0000",
                "unit_cost": "45.00",
                "source": "ledger",
                "drift": "0.0000",
                "clamped": False,
            }
        }
    )


class AvailabilityItemIn(BaseModel):
    variation_id: str = Field(min_length=1, max_length=36)
    quantity: Decimal = Field(gt=0)


class AvailabilityIn(BaseModel):
    location_id: str = Field(min_length=1, max_length=36)
    items: list[AvailabilityItemIn] = Field(min_length=1, max_length=500)


class AvailabilityItemOut(BaseModel):
    variation_id: str
    requested: Decimal
    available: bool
    current_stock: Decimal
    shortage: Decimal


class AvailabilityOut(BaseModel):
    location_id: str
    all_available: bool
    items: list[AvailabilityItemOut]


class AnchorOut(BaseModel):
    start_at: datetime
    baseline_quantity: Decimal
    correction_id: str | None = None
    stock_entry_id: int | None = None
    baseline_entry_id: int | None = None
    description: str
    anchored: bool


class HistoryLineOut(BaseModel):
    entry_id: int | None = None
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


class HistorySummaryOut(BaseModel):
    opening_balance: Decimal
    total_in: Decimal
    total_out: Decimal
    net_change: Decimal
    calculated_final_balance: Decimal
    current_system_inventory: Decimal
    variance: Decimal
    is_reconciled: bool
    transaction_count: int


class StockHistoryOut(BaseModel):
    scope: ScopeOut
    start_at: datetime
    end_at: datetime
    anchor: AnchorOut
    opening_line: HistoryLineOut
    lines: list[HistoryLineOut]
    summary: HistorySummaryOut
