from decimal import Decimal, ROUND_HALF_UP

from receipt_parser import ParsedReceipt
from utils import to_money


def _q(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def items_subtotal(receipt: ParsedReceipt) -> Decimal:
    return sum((to_money(it.price) * it.quantity for it in receipt.items), Decimal("0"))


def has_detected_data(receipt: ParsedReceipt) -> bool:
    """False when OCR found neither items nor a total."""
    return bool(receipt.items) or receipt.total > 0


def tax_percent(receipt: ParsedReceipt) -> float:
    """Detected tax expressed as a percentage of the items subtotal."""
    subtotal = items_subtotal(receipt)
    if not subtotal or not receipt.tax:
        return 0.0
    return float(_q(to_money(receipt.tax) / subtotal * 100))


def compute_splits(receipt: ParsedReceipt, participants: list, assignments: dict = None, mode="even") -> dict:
    """
    Compute per-person splits.
    mode: "even" or "item" (per-assignment)
    assignments maps an item index to the participant names sharing it;
    unassigned items are shared by everyone.
    """
    n = max(1, len(participants))
    names = participants if participants else [f"P{i+1}" for i in range(n)]

    if mode == "even":
        total = to_money(receipt.total)
        if not total:
            total = items_subtotal(receipt) + to_money(receipt.tax) + to_money(receipt.tip)
        share = _q(total / n)
        return {p: float(share) for p in names}

    if mode != "item":
        raise ValueError(f"Unknown split mode: {mode}")

    # --- item-assignment mode ---
    assignments = assignments or {}
    subtotal_by_person = {p: Decimal("0") for p in names}
    for index, it in enumerate(receipt.items):
        line_total = to_money(it.price) * it.quantity
        assigned = [p for p in assignments.get(index, []) if p in subtotal_by_person] or names
        for p in assigned:
            subtotal_by_person[p] += line_total / len(assigned)

    subtotal_total = sum(subtotal_by_person.values(), Decimal("0"))
    tax = to_money(receipt.tax)
    tip = to_money(receipt.tip)

    splits = {}
    for p in names:
        items_total = _q(subtotal_by_person[p])
        proportion = (subtotal_by_person[p] / subtotal_total) if subtotal_total else Decimal(1) / n
        tax_share = _q(tax * proportion)
        tip_share = _q(tip * proportion)
        splits[p] = {
            "items_total": float(items_total),
            "tax_share": float(tax_share),
            "tip_share": float(tip_share),
            "grand_total": float(_q(items_total + tax_share + tip_share)),
        }
    return splits
