from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.stock import ScopeIn


class CorrectionCreateIn(ScopeIn):
    physical_count: Decimal = Field(ge=0)
    reason: str = Field(min_length=3, max_length=100)
    remarks: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id",
                "variation_id": "variation-id",
                "location_id": "location-id",
                "physical_count": 48,
                "reason": "cycle_count",
                "remarks": "Two units found damaged on shelf B",
            }
        }
    )


class CorrectionOut(BaseModel):
    id: str
    business_id: str
    product_id: str
    variation_id: str
    location_id: str
    system_count: Decimal
    physical_count: Decimal
    difference: Decimal
    reason: str
    remarks: str | None = None
    status: str
    baseline_entry_id: int | None = None
    stock_entry_id: int | None = None
    created_by: str
    created_at: datetime
    approved_by: str | None = None
    approved_at: datetime | None = None


class CorrectionListOut(BaseModel):
    items: list[CorrectionOut]
    pagination: PaginationMeta


class BulkApproveIn(BaseModel):
    correction_ids: list[str] = Field(min_length=1, max_length=100)

    model_config = ConfigDict(
        json_schema_extra={"example": {"correction_ids": ["correction-id-1", "correction-id-2"]}}
    )


class ApprovalOutcomeOut(BaseModel):
    correction_id: str
    success: bool
    error: str | None = None
    stock_entry_id: int | None = None


class BulkApproveOut(BaseModel):
    approved: int
    failed: int
    results: list[ApprovalOutcomeOut]
