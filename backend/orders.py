"""Order records: persistence shape, status lifecycle and API serialization."""

import secrets
import string
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId

from fulfillment import DeliveryInfo, Recipient
from pricing import LineItem, OrderTotals, format_cents

PENDING = "pending"
CONFIRMED = "confirmed"
PREPARING = "preparing"
READY = "ready"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"

ORDER_STATUSES = (PENDING, CONFIRMED, PREPARING, READY, SHIPPED, DELIVERED, CANCELLED)
TERMINAL_STATUSES = frozenset({DELIVERED, CANCELLED})

STATUS_TRANSITIONS: Dict[str, frozenset] = {
    PENDING: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({PREPARING, CANCELLED}),
    PREPARING: frozenset({READY, SHIPPED, CANCELLED}),
    READY: frozenset({DELIVERED, CANCELLED}),
    SHIPPED: frozenset({DELIVERED, CANCELLED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
}

STATUS_LABELS = {
    PENDING: "Pending",
    CONFIRMED: "Confirmed",
    PREPARING: "Preparing",
    READY: "Ready for Pickup",
    SHIPPED: "Out for Delivery",
    DELIVERED: "Delivered",
    CANCELLED: "Cancelled",
}

PAYMENT_PENDING = "pending"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"
PAYMENT_EXPIRED = "expired"
PAYMENT_REFUNDED = "refunded"
PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    PAYMENT_EXPIRED,
    PAYMENT_REFUNDED,
)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


class InvalidStatusTransition(ValueError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move an order from {current} to {requested}")


def can_transition(current: str, requested: str) -> bool:
    return requested in STATUS_TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def status_update(current: str, requested: str, now: Optional[datetime] = None) -> Dict[str, object]:
    """Return the ``$set`` fields that move an order from ``current`` to ``requested``.

    Raises InvalidStatusTransition for anything the lifecycle does not allow,
    including any move out of delivered or cancelled.
    """
    if requested not in ORDER_STATUSES or not can_transition(current, requested):
        raise InvalidStatusTransition(current, requested)
    now = now or datetime.utcnow()
    return {
        "status": requested,
        f"{requested}At": now,
        "updatedAt": now,
    }


def history_entry(status: str, now: datetime, note: str = "") -> Dict[str, object]:
    entry: Dict[str, object] = {"status": status, "at": now}
    if note:
        entry["note"] = note
    return entry


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{now.strftime('%y%m%d')}-{suffix}"


def build_order_document(
    *,
    customer_id: str,
    shop_id,
    line_items: Iterable[LineItem],
    totals: OrderTotals,
    delivery: DeliveryInfo,
    recipient: Recipient,
    currency: str,
    notes: str = "",
    card_message: str = "",
    occasion: str = "",
    order_number: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Assemble the document stored for a priced, validated order.

    The order starts out ``pending`` with a pending payment; the Stripe
    webhook confirms it later.
    """
    now = now or datetime.utcnow()
    return {
        "orderNumber": order_number or generate_order_number(now),
        "customerId": str(customer_id),
        "shopId": shop_id,
        "items": [item.to_document() for item in line_items],
        "totals": totals.to_document(),
        "currency": currency.lower(),
        "status": PENDING,
        "statusHistory": [history_entry(PENDING, now)],
        "delivery": delivery.to_document(),
        "recipient": recipient.to_document(),
        "notes": notes,
        "cardMessage": card_message,
        "occasion": occasion,
        "payment": {
            "sessionId": None,
            "intentId": None,
            "status": PAYMENT_PENDING,
            "paidAt": None,
        },
        "createdAt": now,
        "updatedAt": now,
    }


def _iso(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"


def _id_text(value) -> str:
    if isinstance(value, ObjectId):
        return str(value)
    return str(value or "").strip()


def serialize_order(order_document, include_customer: bool = True):
    if not order_document:
        return None

    totals = order_document.get("totals") or {}
    status = str(order_document.get("status") or PENDING)
    payment = order_document.get("payment") or {}

    delivery = dict(order_document.get("delivery") or {})
    if "scheduledFor" in delivery:
        delivery["scheduledFor"] = _iso(delivery.get("scheduledFor"))

    items: List[Dict[str, object]] = []
    for entry in order_document.get("items") or []:
        if not isinstance(entry, dict):
            continue
        items.append(
            {
                "productId": _id_text(entry.get("productId")),
                "name": str(entry.get("name") or "").strip() or "Item",
                "unitPriceCents": int(entry.get("unitPriceCents") or 0),
                "quantity": int(entry.get("quantity") or 0),
                "lineTotalCents": int(entry.get("lineTotalCents") or 0),
                "selectedTier": entry.get("selectedTier"),
            }
        )

    serialized = {
        "id": _id_text(order_document.get("_id")),
        "orderNumber": order_document.get("orderNumber") or "",
        "shopId": _id_text(order_document.get("shopId")),
        "items": items,
        "itemCount": sum(item["quantity"] for item in items),
        "totals": {
            "subtotalCents": int(totals.get("subtotalCents") or 0),
            "taxCents": int(totals.get("taxCents") or 0),
            "deliveryFeeCents": int(totals.get("deliveryFeeCents") or 0),
            "totalCents": int(totals.get("totalCents") or 0),
        },
        "formattedTotal": format_cents(int(totals.get("totalCents") or 0)),
        "currency": str(order_document.get("currency") or "").upper(),
        "status": status,
        "statusDisplay": STATUS_LABELS.get(status, status),
        "isCompleted": is_terminal(status),
        "delivery": delivery,
        "paymentStatus": payment.get("status") or PAYMENT_PENDING,
        "paidAt": _iso(payment.get("paidAt")),
        "createdAt": _iso(order_document.get("createdAt")),
        "updatedAt": _iso(order_document.get("updatedAt")),
    }
    if include_customer:
        serialized["customerId"] = _id_text(order_document.get("customerId"))
        serialized["recipient"] = order_document.get("recipient") or {}
        serialized["notes"] = order_document.get("notes") or ""
        serialized["cardMessage"] = order_document.get("cardMessage") or ""
    else:
        serialized["delivery"] = {"method": delivery.get("method")}
    return serialized
