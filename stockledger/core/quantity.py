from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

QTY_QUANT = Decimal("0.0001")
ZERO_QTY = Decimal("0.0000")

MONEY_QUANT = Decimal("0.01")


def to_quantity(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(QTY_QUANT, rounding=ROUND_HALF_UP)


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def parse_quantity(value: object) -> Decimal:
    """Strict variant of ``to_quantity`` for untrusted input.

    Rejects booleans, NaN and infinities instead of letting them reach the ledger.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Quantity must be numeric, got {value!r}")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Quantity must be numeric, got {value!r}") from exc
    if not parsed.is_finite():
        raise ValueError(f"Quantity must be finite, got {value!r}")
    return parsed.quantize(QTY_QUANT, rounding=ROUND_HALF_UP)


def within_tolerance(left: Decimal, right: Decimal, tolerance: Decimal) -> bool:
    return abs(left - right) < tolerance
