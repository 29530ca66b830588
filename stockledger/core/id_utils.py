import shortuuid

_REFERENCE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"


def generate_reference_number(prefix: str, length: int = 8) -> str:
    """Human-readable document number such as ``TRF-7KQ2M9XA``."""
    return f"{prefix}-{shortuuid.ShortUUID(alphabet=_REFERENCE_ALPHABET).random(length=length)}"
