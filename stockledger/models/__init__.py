from stockledger.models.audit_log import AuditLog
from stockledger.models.stock import (
    CorrectionStatus,
    InventoryCorrection,
    LedgerEntryType,
    StockLedgerEntry,
    StockProjection,
)
