from decimal import Decimal


class LedgerError(ValueError):
    """Base class for stock ledger failures surfaced to callers."""

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class LedgerValidationError(LedgerError):
    code = "validation_error"
    status_code = 422


class RecordNotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class InsufficientStockError(LedgerError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, *, current: Decimal, requested: Decimal):
        self.current = current
        self.requested = requested
        self.shortage = requested - current
        super().__init__(
            f"Insufficient stock. Current: {current}, Requested: {requested}, Shortage: {self.shortage}",
            details={
                "current": str(current),
                "requested": str(requested),
                "shortage": str(self.shortage),
            },
        )


class LedgerDriftError(LedgerError):
    code = "ledger_drift"
    status_code = 409

    def __init__(self, message: str, *, ledger_balance: Decimal | None, projection_balance: Decimal):
        self.ledger_balance = ledger_balance
        self.projection_balance = projection_balance
        super().__init__(
            message,
            details={
                "ledger_balance": str(ledger_balance) if ledger_balance is not None else None,
                "projection_balance": str(projection_balance),
            },
        )


class CorrectionStateError(LedgerError):
    code = "conflict"
    status_code = 409
