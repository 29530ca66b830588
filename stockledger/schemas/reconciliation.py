from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from stockledger.schemas.stock import LedgerEntryOut, ScopeOut


class VarianceOut(ScopeOut):
    ledger_balance: Decimal
    system_balance: Decimal
    variance: Decimal
    variance_percentage: Decimal
    variance_type: str
    unit_cost: Decimal
    variance_value: Decimal
    requires_investigation: bool
    auto_fixable: bool
    total_transactions: int
    recent_transaction_count: int
    suspicious_activity: bool
    last_entry_type: str | None = None


class VarianceSummaryOut(BaseModel):
    total_variances: int
    auto_fixable: int
    requires_investigation: int
    suspicious: int
    total_variance_value: Decimal


class VarianceListOut(BaseModel):
    items: list[VarianceOut]
    summary: VarianceSummaryOut


class ReconciliationFixIn(BaseModel):
    location_id: str | None = Field(default=None, max_length=36)
    variation_ids: list[str] | None = Field(default=None, max_length=500)

    model_config = ConfigDict(
        json_schema_extra={"example": {"location_id": "location-id", "variation_ids": ["variation-id"]}}
    )


class ReconciliationFixOut(BaseModel):
    fixed: int
    errors: list[str]
    details: list[dict]


class ChainBreakOut(BaseModel):
    entry_id: int
    expected_balance: Decimal
    recorded_balance: Decimal


class ChainCheckOut(ScopeOut):
    entry_count: int
    replayed_balance: Decimal
    last_recorded_balance: Decimal | None = None
    projection_balance: Decimal
    telescopes: bool
    projection_agrees: bool
    breaks: list[ChainBreakOut]


class VarianceAnalysisOut(BaseModel):
    missing_entries: bool
    unusual_patterns: list[str]
    suspected_causes: list[str]
    recommendations: list[str]


class VarianceInvestigationOut(ScopeOut):
    variance: VarianceOut | None = None
    entries: list[LedgerEntryOut]
    analysis: VarianceAnalysisOut
