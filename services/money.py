from decimal import Decimal, InvalidOperation
from typing import Any, Optional

ZERO = Decimal("0.00")


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce a DB, JSON or form value to ``Decimal``; unparseable or empty gives ``default``."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
