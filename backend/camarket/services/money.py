from decimal import ROUND_HALF_EVEN, Decimal
from typing import Optional, Union

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, str]


def round2(value: Amount) -> Decimal:
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_EVEN)


def money_text(value: Optional[Amount]) -> Optional[str]:
    if value is None:
        return None
    return str(round2(value))


def parse_money(value: Optional[str]) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return round2(value)
