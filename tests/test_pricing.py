from decimal import Decimal
from fractions import Fraction

import pytest

from pricing import (
    InvalidLineItem,
    InvalidTaxRate,
    LineItem,
    OrderTotals,
    compute_totals,
    format_cents,
    line_item_from_product,
    parse_tax_rate,
)

QC_TAX = 0.14975


def item(price, qty, product_id="p1", tier=None):
    return LineItem(
        product_id=product_id,
        name=f"Product {product_id}",
        unit_price_cents=price,
        quantity=qty,
        selected_tier=tier,
    )


def test_checkout_example_with_quebec_tax_and_delivery():
    totals = compute_totals([item(2000, 3)], QC_TAX, 1000)
    # 6000 * 0.14975 = 898.5, rounded half-up
    assert totals == OrderTotals(
        subtotal_cents=6000, tax_cents=899, delivery_fee_cents=1000, total_cents=7899
    )


def test_tax_can_include_the_delivery_fee():
    totals = compute_totals([item(2000, 3)], QC_TAX, 1000, tax_delivery_fee=True)
    # (6000 + 1000) * 0.14975 = 1048.25
    assert totals.tax_cents == 1048
    assert totals.total_cents == 6000 + 1048 + 1000


def test_subtotal_is_sum_of_line_totals_in_any_order():
    items = [item(1999, 2, "a"), item(550, 7, "b"), item(0, 1, "c"), item(12345, 1, "d")]
    forward = compute_totals(items, "0.05", 0)
    backward = compute_totals(list(reversed(items)), "0.05", 0)
    assert forward.subtotal_cents == 1999 * 2 + 550 * 7 + 12345
    assert forward == backward


@pytest.mark.parametrize(
    "prices,rate,fee",
    [
        ([(1, 1)], "0.5", 0),
        ([(333, 3), (1, 9)], "0.14975", 1600),
        ([(2500, 4)], Decimal("0.13"), 4500),
        ([(101, 1)], Fraction(1, 3), 0),
        ([(999, 1)], 0, 2200),
        ([(999, 1)], 1, 0),
    ],
)
def test_total_is_exact_sum_of_parts(prices, rate, fee):
    totals = compute_totals([item(p, q, str(i)) for i, (p, q) in enumerate(prices)], rate, fee)
    assert totals.total_cents == totals.subtotal_cents + totals.tax_cents + totals.delivery_fee_cents
    assert all(isinstance(v, int) for v in totals.to_document().values())


def test_half_cent_rounds_up():
    assert compute_totals([item(1, 1)], "0.5").tax_cents == 1
    assert compute_totals([item(3, 1)], "0.5").tax_cents == 2


def test_empty_cart_costs_only_delivery():
    totals = compute_totals([], QC_TAX, 1600)
    assert totals.subtotal_cents == 0
    assert totals.tax_cents == 0
    assert totals.total_cents == 1600


def test_zero_quantity_is_rejected():
    with pytest.raises(InvalidLineItem):
        item(2000, 0)


def test_negative_price_is_rejected():
    with pytest.raises(InvalidLineItem):
        item(-1, 1)


def test_fractional_cents_are_rejected():
    with pytest.raises(InvalidLineItem):
        item(19.99, 1)


def test_unknown_tier_is_rejected():
    with pytest.raises(InvalidLineItem):
        item(2000, 1, tier="platinum")


def test_compute_totals_rechecks_items():
    bad = item(2000, 1)
    object.__setattr__(bad, "quantity", 0)
    with pytest.raises(InvalidLineItem):
        compute_totals([bad], QC_TAX)


def test_negative_delivery_fee_is_rejected():
    with pytest.raises(InvalidLineItem):
        compute_totals([item(2000, 1)], QC_TAX, -100)


@pytest.mark.parametrize("rate", [-0.01, 1.01, "abc", None, True, float("nan")])
def test_tax_rate_outside_unit_interval(rate):
    with pytest.raises(InvalidTaxRate):
        compute_totals([item(2000, 1)], rate)


def test_parse_tax_rate_keeps_decimal_precision():
    assert parse_tax_rate(0.14975) == Decimal("0.14975")
    assert parse_tax_rate(Fraction(1, 4)) == Decimal("0.25")


def test_with_quantity_returns_updated_copy():
    original = item(2000, 1)
    updated = original.with_quantity(4)
    assert original.quantity == 1
    assert updated.line_total_cents == 8000


def test_line_item_document():
    document = item(3500, 2, tier="deluxe").to_document()
    assert document == {
        "productId": "p1",
        "name": "Product p1",
        "unitPriceCents": 3500,
        "quantity": 2,
        "lineTotalCents": 7000,
        "selectedTier": "deluxe",
    }


def test_line_item_from_tiered_product():
    product = {"_id": "abc", "name": "Roses", "price": {"standard": 2000, "deluxe": 3500}}
    assert line_item_from_product(product, 2).unit_price_cents == 2000
    deluxe = line_item_from_product(product, 1, "deluxe")
    assert deluxe.unit_price_cents == 3500
    assert deluxe.selected_tier == "deluxe"
    with pytest.raises(InvalidLineItem):
        line_item_from_product(product, 1, "premium")


def test_line_item_from_flat_priced_product():
    product = {"_id": "abc", "name": "Vase", "price": 1500.0}
    line = line_item_from_product(product, "3")
    assert line.unit_price_cents == 1500
    assert line.quantity == 3


def test_format_cents():
    assert format_cents(7899) == "78.99"
    assert format_cents(5) == "0.05"
    assert format_cents(0) == "0.00"
