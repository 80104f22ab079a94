# utils.py
import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Round a number or numeric string half-up to the cent."""
    try:
        return Decimal(str(value).replace(",", "").strip()).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return Decimal("0.00")


def round_money(value) -> float:
    return float(to_money(value))


def find_currency(text: str):
    m = re.search(r"(AED|USD|SGD|MYR|RM|EUR|\$|€|£|¥)", text or "", re.I)
    return m.group(0) if m else None
