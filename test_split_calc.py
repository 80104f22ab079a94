import pytest

from receipt_parser import LineItem, ParsedReceipt, parse
from split_calc import compute_splits, has_detected_data, items_subtotal, tax_percent


def test_equal_split():
    parsed = ParsedReceipt(total=90, items=(LineItem("Total", 1, 90.0),))
    splits = compute_splits(parsed, ['A', 'B', 'C'])
    assert round(splits['A'], 2) == 30.00


def test_equal_split_rounds_half_up():
    splits = compute_splits(ParsedReceipt(total=10.00), ['A', 'B', 'C'])
    assert splits == {'A': 3.33, 'B': 3.33, 'C': 3.33}
    splits = compute_splits(ParsedReceipt(total=0.05), ['A', 'B'])
    assert splits == {'A': 0.03, 'B': 0.03}


def test_equal_split_without_total_uses_items_tax_and_tip():
    parsed = ParsedReceipt(tax=1.00, tip=3.00, items=(LineItem("Coffee", 2, 3.00),))
    assert compute_splits(parsed, ['A', 'B']) == {'A': 5.00, 'B': 5.00}


def test_equal_split_without_participants():
    assert compute_splits(ParsedReceipt(total=12.00), []) == {'P1': 12.00}


def test_item_split_with_proportional_tax_and_tip():
    parsed = ParsedReceipt(
        total=44.00, tax=4.00, tip=8.00,
        items=(LineItem("Steak", 1, 24.00), LineItem("Salad", 1, 8.00)),
    )
    splits = compute_splits(parsed, ['Ann', 'Bo'], assignments={0: ['Ann'], 1: ['Bo']}, mode="item")
    assert splits['Ann'] == {'items_total': 24.00, 'tax_share': 3.00, 'tip_share': 6.00, 'grand_total': 33.00}
    assert splits['Bo'] == {'items_total': 8.00, 'tax_share': 1.00, 'tip_share': 2.00, 'grand_total': 11.00}


def test_item_split_shared_and_unassigned_items():
    parsed = ParsedReceipt(items=(LineItem("Pizza", 1, 12.00), LineItem("Soda", 2, 1.50)))
    splits = compute_splits(parsed, ['A', 'B', 'C'], assignments={0: ['A', 'B']}, mode="item")
    # pizza split by A and B, the sodas by everyone
    assert splits['A']['items_total'] == 7.00
    assert splits['B']['items_total'] == 7.00
    assert splits['C']['items_total'] == 1.00


def test_item_split_ignores_unknown_names():
    parsed = ParsedReceipt(items=(LineItem("Pizza", 1, 12.00),))
    splits = compute_splits(parsed, ['A', 'B'], assignments={0: ['Zed']}, mode="item")
    assert splits['A']['items_total'] == 6.00


def test_unknown_mode():
    with pytest.raises(ValueError):
        compute_splits(ParsedReceipt(), ['A'], mode="weighted")


def test_tax_percent():
    parsed = ParsedReceipt(tax=1.50, items=(LineItem("Coffee", 2, 5.00), LineItem("Cake", 1, 10.00)))
    assert items_subtotal(parsed) == 20
    assert tax_percent(parsed) == 7.50
    assert tax_percent(ParsedReceipt(tax=1.00)) == 0.0


def test_has_detected_data():
    assert not has_detected_data(parse(""))
    assert has_detected_data(parse("Burger 12.50"))
    assert has_detected_data(parse("Total 9.00"))


def test_parsed_receipt_feeds_split():
    parsed = parse("2x Coffee 5.99\nBagel 3.25\nTax 1.52\nTip 2.00\nTotal 18.75")
    splits = compute_splits(parsed, ['A', 'B'], assignments={0: ['A'], 1: ['B']}, mode="item")
    assert splits['A']['items_total'] == 11.98
    assert splits['B']['items_total'] == 3.25
    assert round(sum(s['tax_share'] for s in splits.values()), 2) == 1.52
