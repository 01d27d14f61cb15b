"""Cart line items and order total computation.

All money is integer cents. The tax rate is the only fractional input; it is
converted to ``Decimal`` from its string form and the tax amount is rounded
half-up exactly once.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction
from typing import Dict, Iterable, Optional, Union

TIERS = ("standard", "deluxe", "premium")

TaxRate = Union[Decimal, Fraction, float, int, str]


class InvalidLineItem(ValueError):
    pass


class InvalidTaxRate(ValueError):
    pass


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class LineItem:
    product_id: str
    name: str
    unit_price_cents: int
    quantity: int
    selected_tier: Optional[str] = None

    def __post_init__(self):
        if not _is_int(self.unit_price_cents) or self.unit_price_cents < 0:
            raise InvalidLineItem(
                f"Price for {self.name or self.product_id} must be a non-negative integer amount of cents"
            )
        if not _is_int(self.quantity) or self.quantity < 1:
            raise InvalidLineItem(
                f"Quantity for {self.name or self.product_id} must be at least 1"
            )
        if self.selected_tier is not None and self.selected_tier not in TIERS:
            raise InvalidLineItem(f"Unknown tier: {self.selected_tier}")

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def with_quantity(self, quantity: int) -> "LineItem":
        return LineItem(
            product_id=self.product_id,
            name=self.name,
            unit_price_cents=self.unit_price_cents,
            quantity=quantity,
            selected_tier=self.selected_tier,
        )

    def to_document(self) -> Dict[str, object]:
        document: Dict[str, object] = {
            "productId": self.product_id,
            "name": self.name,
            "unitPriceCents": self.unit_price_cents,
            "quantity": self.quantity,
            "lineTotalCents": self.line_total_cents,
        }
        if self.selected_tier:
            document["selectedTier"] = self.selected_tier
        return document


@dataclass(frozen=True)
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    total_cents: int

    def to_document(self) -> Dict[str, int]:
        return {
            "subtotalCents": self.subtotal_cents,
            "taxCents": self.tax_cents,
            "deliveryFeeCents": self.delivery_fee_cents,
            "totalCents": self.total_cents,
        }


def parse_tax_rate(tax_rate: TaxRate) -> Decimal:
    if isinstance(tax_rate, bool):
        raise InvalidTaxRate("Tax rate must be a number")
    try:
        if isinstance(tax_rate, Fraction):
            rate = Decimal(tax_rate.numerator) / Decimal(tax_rate.denominator)
        else:
            rate = Decimal(str(tax_rate).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidTaxRate(f"Tax rate is not a number: {tax_rate!r}")
    if not rate.is_finite() or rate < 0 or rate > 1:
        raise InvalidTaxRate(f"Tax rate must be between 0 and 1, got {tax_rate!r}")
    return rate


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _check_line_item(item) -> LineItem:
    if not isinstance(item, LineItem):
        raise InvalidLineItem(f"Expected a LineItem, got {type(item).__name__}")
    if not _is_int(item.unit_price_cents) or item.unit_price_cents < 0:
        raise InvalidLineItem(f"Negative price for {item.product_id}")
    if not _is_int(item.quantity) or item.quantity < 1:
        raise InvalidLineItem(f"Quantity below 1 for {item.product_id}")
    return item


def compute_totals(
    line_items: Iterable[LineItem],
    tax_rate: TaxRate,
    delivery_fee_cents: int = 0,
    *,
    tax_delivery_fee: bool = False,
) -> OrderTotals:
    """Aggregate line items into subtotal, tax, delivery fee and total.

    Tax is charged on the subtotal. With ``tax_delivery_fee`` the delivery
    fee joins the taxable base.
    """
    rate = parse_tax_rate(tax_rate)
    if not _is_int(delivery_fee_cents) or delivery_fee_cents < 0:
        raise InvalidLineItem("Delivery fee must be a non-negative integer amount of cents")

    subtotal = sum(_check_line_item(item).line_total_cents for item in line_items)
    taxable = subtotal + delivery_fee_cents if tax_delivery_fee else subtotal
    tax = round_half_up(Decimal(taxable) * rate)

    return OrderTotals(
        subtotal_cents=subtotal,
        tax_cents=tax,
        delivery_fee_cents=delivery_fee_cents,
        total_cents=subtotal + tax + delivery_fee_cents,
    )


def format_cents(amount_cents: int) -> str:
    """Render cents as a dollar string, e.g. 7899 -> "78.99"."""
    sign = "-" if amount_cents < 0 else ""
    dollars, cents = divmod(abs(int(amount_cents)), 100)
    return f"{sign}{dollars}.{cents:02d}"


def line_item_from_product(product_document: Dict, quantity, selected_tier: Optional[str] = None) -> LineItem:
    """Snapshot a product document's price for the chosen tier into a line item.

    Product prices are stored either as a flat integer of cents or as a
    ``{"standard": ..., "deluxe": ..., "premium": ...}`` mapping.
    """
    product_id = str(product_document.get("_id") or product_document.get("id") or "")
    name = str(product_document.get("name") or "").strip() or "Item"
    price = product_document.get("price")

    if isinstance(price, dict):
        tier = selected_tier or next((t for t in TIERS if price.get(t)), None)
        if tier not in TIERS:
            raise InvalidLineItem(f"Unknown tier: {selected_tier}")
        unit_price = price.get(tier)
        if unit_price is None:
            raise InvalidLineItem(f"{name} is not offered in the {tier} tier")
    else:
        tier = selected_tier
        unit_price = price

    if isinstance(unit_price, float) and math.isfinite(unit_price) and unit_price.is_integer():
        unit_price = int(unit_price)
    if isinstance(quantity, str) and quantity.strip().isdigit():
        quantity = int(quantity.strip())

    return LineItem(
        product_id=product_id,
        name=name,
        unit_price_cents=unit_price,
        quantity=quantity,
        selected_tier=tier,
    )
