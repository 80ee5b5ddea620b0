"""Money and time helpers shared by the pricing, credit and booking domains"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal]


def round_minor(value: Number) -> int:
    """Round to whole minor currency units, halves away from zero"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_rate(amount: int, rate: Number) -> int:
    """round(amount x rate) without float drift"""
    return round_minor(Decimal(amount) * Decimal(str(rate)))


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
