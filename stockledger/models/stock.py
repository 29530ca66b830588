import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base

QTY_NUMERIC = Numeric(18, 4)
COST_NUMERIC = Numeric(12, 2)


class LedgerEntryType(str, enum.Enum):
    OPENING_STOCK = "opening_stock"
    PURCHASE = "purchase"
    SALE = "sale"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    ADJUSTMENT = "adjustment"
    CUSTOMER_RETURN = "customer_return"
    SUPPLIER_RETURN = "supplier_return"


class CorrectionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"


class StockLedgerEntry(Base):
    """
    One immutable row per stock movement. balance_after is the running balance of
    the (variation, location) scope right after this row was applied.
    """
    __tablename__ = "stock_ledger_entries"

    # Integer sequence doubles as the tie-break for equal created_at values.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    business_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    variation_id: Mapped[str] = mapped_column(String(36), nullable=False)
    location_id: Mapped[str] = mapped_column(String(36), nullable=False)

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    quantity_delta: Mapped[Decimal] = mapped_column(QTY_NUMERIC, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(QTY_NUMERIC, nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(COST_NUMERIC, nullable=True)

    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # e.g. "sale", "inventory_correction"
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_by: Mapped[str] = mapped_column(String(191), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "ix_stock_ledger_entries_scope_created_at",
            "business_id",
            "variation_id",
            "location_id",
            "created_at",
            "id",
        ),
        Index("ix_stock_ledger_entries_business_created_at", "business_id", "created_at"),
        Index("ix_stock_ledger_entries_reference", "reference_type", "reference_id"),
    )


class StockProjection(Base):
    __tablename__ = "stock_projections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    variation_id: Mapped[str] = mapped_column(String(36), nullable=False)
    location_id: Mapped[str] = mapped_column(String(36), nullable=False)
    qty_available: Mapped[Decimal] = mapped_column(QTY_NUMERIC, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "business_id",
            "variation_id",
            "location_id",
            name="uq_stock_projections_business_variation_location",
        ),
        Index("ix_stock_projections_business_location", "business_id", "location_id"),
    )


class InventoryCorrection(Base):
    __tablename__ = "inventory_corrections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    variation_id: Mapped[str] = mapped_column(String(36), nullable=False)
    location_id: Mapped[str] = mapped_column(String(36), nullable=False)

    system_count: Mapped[Decimal] = mapped_column(QTY_NUMERIC, nullable=False)
    physical_count: Mapped[Decimal] = mapped_column(QTY_NUMERIC, nullable=False)
    difference: Mapped[Decimal] = mapped_column(QTY_NUMERIC, nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CorrectionStatus.PENDING.value,
        server_default=CorrectionStatus.PENDING.value,
    )
    # Last ledger entry already reflected in system_count.
    baseline_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), nullable=True)
    stock_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), nullable=True)

    created_by: Mapped[str] = mapped_column(String(191), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(191), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index(
            "ix_inventory_corrections_scope_status_created_at",
            "business_id",
            "variation_id",
            "location_id",
            "status",
            "created_at",
        ),
    )
