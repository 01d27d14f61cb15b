"""Stripe Checkout integration for priced orders."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import stripe
from bson import ObjectId
from pymongo import ReturnDocument

from orders import (
    CANCELLED,
    CONFIRMED,
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    PENDING,
    history_entry,
    is_terminal,
)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"


class PaymentConfigurationError(RuntimeError):
    pass


def build_line_items(order_document: Dict, currency: str) -> List[Dict[str, object]]:
    """Stripe line items for an order. Their amounts add up to the order total."""
    currency_code = currency.lower()
    line_items: List[Dict[str, object]] = []
    for item in order_document.get("items") or []:
        unit_amount = int(item.get("unitPriceCents") or 0)
        if unit_amount <= 0:
            continue
        name = item.get("name") or "Item"
        if item.get("selectedTier"):
            name = f"{name} ({item['selectedTier'].title()})"
        line_items.append(
            {
                "price_data": {
                    "currency": currency_code,
                    "product_data": {"name": name},
                    "unit_amount": unit_amount,
                },
                "quantity": int(item.get("quantity") or 1),
            }
        )

    totals = order_document.get("totals") or {}
    for label, key in (("Sales tax", "taxCents"), ("Delivery fee", "deliveryFeeCents")):
        amount = int(totals.get(key) or 0)
        if amount > 0:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency_code,
                        "product_data": {"name": label},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            )
    return line_items


def create_checkout_session(
    order_document: Dict,
    *,
    api_key: Optional[str],
    app_base_url: str,
    currency: str,
):
    if not api_key:
        raise PaymentConfigurationError("Stripe is not configured.")

    order_id = str(order_document.get("_id"))
    base_url = app_base_url.rstrip("/")
    delivery = order_document.get("delivery") or {}
    session_config: Dict[str, object] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": build_line_items(order_document, currency),
        "success_url": f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}&order_id={order_id}",
        "cancel_url": f"{base_url}/checkout/cancel?order_id={order_id}",
        "customer_email": delivery.get("contactEmail")
        or (order_document.get("recipient") or {}).get("email"),
        "billing_address_collection": "required",
        "payment_intent_data": {"metadata": {"orderId": order_id}},
        "metadata": {
            "orderId": order_id,
            "orderNumber": order_document.get("orderNumber") or "",
            "shopId": str(order_document.get("shopId") or ""),
            "customerId": str(order_document.get("customerId") or ""),
        },
    }
    return stripe.checkout.Session.create(api_key=api_key, **session_config)


def retrieve_checkout_session(session_id: str, *, api_key: Optional[str]):
    if not api_key:
        raise PaymentConfigurationError("Stripe is not configured.")
    return stripe.checkout.Session.retrieve(session_id, api_key=api_key)


def construct_webhook_event(payload: bytes, signature: str, webhook_secrets: Iterable[Optional[str]]):
    """Verify a webhook against every configured secret (test and live)."""
    candidates = [secret for secret in webhook_secrets if secret]
    if not candidates:
        raise PaymentConfigurationError("No Stripe webhook secret is configured.")

    failures = []
    for secret in candidates:
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            failures.append(str(exc))
    raise stripe.SignatureVerificationError(
        "Webhook signature verification failed for all configured secrets: "
        + " | ".join(failures),
        signature,
    )


def apply_checkout_completed(db, session, now: Optional[datetime] = None) -> Tuple[Optional[Dict], bool]:
    """Confirm the order paid through ``session``.

    Returns ``(order_document, changed)``. Redelivered events find the payment
    already succeeded and change nothing, so stock is decremented once.
    """
    now = now or datetime.utcnow()
    session_id = session.get("id")
    order_document = db.orders.find_one({"payment.sessionId": session_id})
    if not order_document:
        return None, False
    if (order_document.get("payment") or {}).get("status") == PAYMENT_SUCCEEDED:
        return order_document, False

    updated = db.orders.find_one_and_update(
        {
            "_id": order_document["_id"],
            "payment.status": {"$ne": PAYMENT_SUCCEEDED},
            "status": PENDING,
        },
        {
            "$set": {
                "status": CONFIRMED,
                "confirmedAt": now,
                "updatedAt": now,
                "payment.status": PAYMENT_SUCCEEDED,
                "payment.intentId": session.get("payment_intent"),
                "payment.paidAt": now,
                "payment.amountReceivedCents": session.get("amount_total"),
                "payment.failureReason": None,
            },
            "$push": {"statusHistory": history_entry(CONFIRMED, now, "Payment received")},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        return db.orders.find_one({"_id": order_document["_id"]}), False

    for item in updated.get("items") or []:
        product_id = str(item.get("productId") or "")
        db.products.update_one(
            {"_id": ObjectId(product_id) if ObjectId.is_valid(product_id) else product_id},
            {"$inc": {"stock": -int(item.get("quantity") or 0)}},
        )

    db.payments.insert_one(
        {
            "orderId": updated["_id"],
            "customerId": updated.get("customerId"),
            "stripeSessionId": session_id,
            "stripePaymentIntentId": session.get("payment_intent"),
            "amountCents": session.get("amount_total"),
            "currency": session.get("currency"),
            "status": PAYMENT_SUCCEEDED,
            "paidAt": now,
            "createdAt": now,
        }
    )
    return updated, True


def apply_payment_succeeded(db, payment_intent, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    result = db.payments.update_one(
        {"stripePaymentIntentId": payment_intent.get("id")},
        {"$set": {"status": PAYMENT_SUCCEEDED, "paidAt": now}},
    )
    return bool(result.modified_count)


def _order_for_intent(db, payment_intent) -> Optional[Dict]:
    order_id = (payment_intent.get("metadata") or {}).get("orderId")
    if order_id and ObjectId.is_valid(order_id):
        order_document = db.orders.find_one({"_id": ObjectId(order_id)})
        if order_document:
            return order_document
    return db.orders.find_one({"payment.intentId": payment_intent.get("id")})


def apply_payment_failed(db, payment_intent, now: Optional[datetime] = None) -> Optional[Dict]:
    """Record a declined attempt on the order behind ``payment_intent``.

    The order stays pending: Stripe Checkout keeps the session open after a
    decline and the customer may still pay with another card. Unpaid orders
    are cancelled when their session expires.
    """
    now = now or datetime.utcnow()
    error = payment_intent.get("last_payment_error") or {}
    reason = error.get("message") or "Payment failed"

    order_document = _order_for_intent(db, payment_intent)
    if not order_document:
        return None
    if is_terminal(order_document.get("status")) or (
        (order_document.get("payment") or {}).get("status") == PAYMENT_SUCCEEDED
    ):
        return order_document

    updated = db.orders.find_one_and_update(
        {
            "_id": order_document["_id"],
            "status": PENDING,
            "payment.status": {"$ne": PAYMENT_SUCCEEDED},
        },
        {
            "$set": {
                "updatedAt": now,
                "payment.status": PAYMENT_FAILED,
                "payment.intentId": payment_intent.get("id"),
                "payment.failureReason": reason,
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    return updated or db.orders.find_one({"_id": order_document["_id"]})


def apply_checkout_expired(db, session, now: Optional[datetime] = None) -> Tuple[Optional[Dict], bool]:
    """Cancel the order whose checkout session expired without payment."""
    now = now or datetime.utcnow()
    order_document = db.orders.find_one({"payment.sessionId": session.get("id")})
    if not order_document:
        return None, False

    payment = order_document.get("payment") or {}
    note = "Checkout session expired"
    if payment.get("failureReason"):
        note = f"{note}: {payment['failureReason']}"

    updated = db.orders.find_one_and_update(
        {
            "_id": order_document["_id"],
            "status": PENDING,
            "payment.status": {"$ne": PAYMENT_SUCCEEDED},
        },
        {
            "$set": {
                "status": CANCELLED,
                "cancelledAt": now,
                "updatedAt": now,
                "payment.status": PAYMENT_EXPIRED,
            },
            "$push": {"statusHistory": history_entry(CANCELLED, now, note)},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        return order_document, False
    return updated, True
