# receipt_parser.py
"""
Heuristic receipt text parser.

Turns noisy OCR text into a ParsedReceipt: itemized lines plus tax, tip and
total. Never raises on malformed input; anything it cannot read is left at
its zero default.
"""
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

from utils import round_money

logger = logging.getLogger(__name__)

MAX_ITEM_PRICE = 1000

CURRENCY = r"(?:AED|USD|[$€£¥])"
PRICE_RE = re.compile(
    rf"{CURRENCY}\s?(\d+(?:\.\d+)?)|(?<![\d.])(\d+\.\d{{2}})(?!\d)",
    re.I,
)
QTY_ITEM_RE = re.compile(
    rf"^(\d+)\s?[xX*]?\s+(.+?)\s+{CURRENCY}?\s?(\d+(?:\.\d+)?)$",
    re.I,
)
LEADING_QTY_RE = re.compile(r"^\d+\s?[xX*]?\s+")

TOTAL_RE = re.compile(r"\b(?:total|amount due|grand total|balance|net amount|final|sum)\b", re.I)
TAX_RE = re.compile(r"\b(?:sales tax|tax|vat|gst|service tax)\b", re.I)
TIP_RE = re.compile(r"\b(?:tip|gratuity|service charge|service)\b", re.I)
EXCLUDE_RE = re.compile(
    r"\b(?:subtotal|sub total|discount|change|payment|due|charged|balance|thank|you|welcome"
    r"|receipt|store|date|time|hour|minute|cashier|register|phone|address)",
    re.I,
)


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int = 1
    price: float = 0.0

    @property
    def line_total(self) -> float:
        return round_money(self.price * self.quantity)


@dataclass(frozen=True)
class ParsedReceipt:
    total: float = 0.0
    tax: float = 0.0
    tip: float = 0.0
    items: Tuple[LineItem, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TotalCandidate:
    value: float
    line_index: int


def clean_ocr_text(text: str) -> str:
    # Column separators read as pipes
    text = text.replace("|", " ")

    # Collapse runs of spaces/tabs, keep newlines
    text = re.sub(r"[ \t]+", " ", text)

    # "1O.99" -> "10.99"
    text = re.sub(r"(?<=\d)[oO](?=\.\d)", "0", text)

    # The next two rules only fire at the start of a token, so "Total5.00"
    # keeps its "l" and "Vans5" keeps its "s"

    # Misread currency marks: "S12.00" -> "$12.00"
    text = re.sub(r"\b[sS](?=\d)", "$", text)

    # "l2.50" / "I2.50" -> "12.50"
    text = re.sub(r"\b[iIlL](?=\d)", "1", text)

    # Ghosted capitals: "TOTTAL" -> "TOTAL"
    text = re.sub(r"([A-Z])\1+", r"\1", text)

    # Letter-split abbreviations: "U S" -> "US"
    text = re.sub(r"(?<![A-Za-z])([A-Z]) ([A-Z])(?![A-Za-z])", r"\1\2", text)

    return text


def _last_price(line: str) -> Optional[re.Match]:
    last = None
    for last in PRICE_RE.finditer(line):
        pass
    return last


def _parse_item(line: str, last: re.Match, price: float) -> Optional[LineItem]:
    m = QTY_ITEM_RE.match(line)
    if m:
        quantity = int(m.group(1))
        description = m.group(2).strip()
        unit_price = round_money(m.group(3))
        if len(description) > 1 and quantity > 0 and 0 < unit_price < MAX_ITEM_PRICE:
            return LineItem(description=description, quantity=quantity, price=unit_price)

    if EXCLUDE_RE.search(line):
        return None

    description = LEADING_QTY_RE.sub("", line[:last.start()].strip(), count=1)
    description = description.strip(" :-")
    if len(description) >= 2 and 0 < price < MAX_ITEM_PRICE:
        return LineItem(description=description, quantity=1, price=price)
    return None


def resolve_total(candidates: List[TotalCandidate], prices: List[float]) -> float:
    """
    Prefer the last total-like line, unless an earlier candidate is larger.
    Without candidates, take the largest price if it dominates the sum of
    all prices, else the sum.
    """
    if candidates:
        chosen = max(candidates, key=lambda c: c.line_index).value
        largest = max(c.value for c in candidates)
        return largest if largest > chosen else chosen

    if not prices:
        return 0.0
    summed = round_money(sum(prices))
    max_price = max(prices)
    return max_price if max_price > summed * 0.5 else summed


def parse(raw_text: str) -> ParsedReceipt:
    text = clean_ocr_text(raw_text or "")
    lines = [ln.strip() for ln in text.split("\n") if ln.strip()]

    items = []
    candidates = []
    prices = []
    tax = None
    tip = None

    for index, line in enumerate(lines):
        last = _last_price(line)
        if last is None:
            continue
        price = round_money(last.group(1) or last.group(2))
        prices.append(price)

        if TOTAL_RE.search(line):
            candidates.append(TotalCandidate(value=price, line_index=index))
        elif TAX_RE.search(line):
            if tax is None:
                tax = price
        elif TIP_RE.search(line):
            if tip is None:
                tip = price
        else:
            item = _parse_item(line, last, price)
            if item:
                items.append(item)

    total = resolve_total(candidates, prices)
    logger.debug(
        "Parsed %d lines: %d items, %d total candidates, total=%.2f",
        len(lines), len(items), len(candidates), total,
    )
    return ParsedReceipt(
        total=total,
        tax=tax if tax is not None else 0.0,
        tip=tip if tip is not None else 0.0,
        items=tuple(items),
    )
