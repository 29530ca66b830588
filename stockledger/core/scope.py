from dataclasses import asdict, dataclass

from stockledger.core.exceptions import LedgerValidationError
from stockledger.models.stock import InventoryCorrection, StockLedgerEntry, StockProjection


@dataclass(frozen=True)
class StockScope:
    """The (business, product, variation, location) key shared by ledger, projection and corrections."""

    business_id: str
    product_id: str
    variation_id: str
    location_id: str

    def validate(self) -> "StockScope":
        missing = [name for name, value in asdict(self).items() if not str(value or "").strip()]
        if missing:
            raise LedgerValidationError(
                f"Stock scope is missing: {', '.join(missing)}",
                details={"missing": missing},
            )
        return self

    def ledger_clauses(self) -> tuple:
        return (
            StockLedgerEntry.business_id == self.business_id,
            StockLedgerEntry.variation_id == self.variation_id,
            StockLedgerEntry.location_id == self.location_id,
        )

    def projection_clauses(self) -> tuple:
        return (
            StockProjection.business_id == self.business_id,
            StockProjection.variation_id == self.variation_id,
            StockProjection.location_id == self.location_id,
        )

    def correction_clauses(self) -> tuple:
        return (
            InventoryCorrection.business_id == self.business_id,
            InventoryCorrection.product_id == self.product_id,
            InventoryCorrection.variation_id == self.variation_id,
            InventoryCorrection.location_id == self.location_id,
        )

    def with_location(self, location_id: str) -> "StockScope":
        return StockScope(
            business_id=self.business_id,
            product_id=self.product_id,
            variation_id=self.variation_id,
            location_id=location_id,
        )

    def as_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def of(cls, row) -> "StockScope":
        return cls(
            business_id=row.business_id,
            product_id=row.product_id,
            variation_id=row.variation_id,
            location_id=row.location_id,
        )
