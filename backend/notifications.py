"""Order confirmation email (Resend) and fulfillment ticket printing (PrintNode)."""

import base64
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import requests
import resend

from pricing import format_cents

PRINTNODE_API_URL = "https://api.printnode.com"
PRINTNODE_TIMEOUT_SECONDS = 30


def send_email_via_resend(payload: Dict[str, object], api_key: str) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def _item_lines(order_document: Dict) -> List[str]:
    lines = []
    for item in order_document.get("items") or []:
        tier = f" ({item['selectedTier']})" if item.get("selectedTier") else ""
        lines.append(
            f"{item.get('name') or 'Item'}{tier} x{item.get('quantity') or 1}"
            f"  {format_cents(int(item.get('lineTotalCents') or 0))}"
        )
    return lines


def _schedule_text(delivery: Dict) -> str:
    scheduled_for = delivery.get("scheduledFor")
    if isinstance(scheduled_for, datetime):
        return scheduled_for.strftime("%Y-%m-%d %H:%M")
    return str(scheduled_for or "")


def build_confirmation_text(order_document: Dict, shop_name: str) -> str:
    totals = order_document.get("totals") or {}
    currency = str(order_document.get("currency") or "").upper()
    delivery = order_document.get("delivery") or {}
    method = "Delivery" if delivery.get("method") == "delivery" else "Pickup"
    return "\n".join(
        [
            f"Thank you for your order {order_document.get('orderNumber')}!",
            f"{method} scheduled for {_schedule_text(delivery)}.",
            "",
            *_item_lines(order_document),
            "",
            f"Subtotal: {currency} {format_cents(int(totals.get('subtotalCents') or 0))}",
            f"Tax: {currency} {format_cents(int(totals.get('taxCents') or 0))}",
            f"Delivery: {currency} {format_cents(int(totals.get('deliveryFeeCents') or 0))}",
            f"Total: {currency} {format_cents(int(totals.get('totalCents') or 0))}",
            "",
            shop_name,
        ]
    )


def send_order_confirmation_email(
    order_document: Dict, *, api_key: str, sender_email: str, shop_name: str
) -> Tuple[bool, Optional[str]]:
    delivery = order_document.get("delivery") or {}
    recipient_email = str(
        delivery.get("contactEmail") or (order_document.get("recipient") or {}).get("email") or ""
    ).strip().lower()
    if not recipient_email:
        return False, "Missing customer email for the order receipt."

    payload: Dict[str, object] = {
        "from": f"{shop_name} <{sender_email}>",
        "to": [recipient_email],
        "subject": f"Your order {order_document.get('orderNumber')} is confirmed",
        "text": build_confirmation_text(order_document, shop_name),
    }
    return send_email_via_resend(payload, api_key)


def build_print_ticket(order_document: Dict) -> str:
    """Plain-text ticket the shop prints to prepare an order."""
    delivery = order_document.get("delivery") or {}
    recipient = order_document.get("recipient") or {}
    lines = [
        f"ORDER {order_document.get('orderNumber')}",
        "=" * 32,
        f"Recipient: {recipient.get('name', '')}",
        f"Phone: {delivery.get('contactPhone') or recipient.get('phone', '')}",
    ]
    if delivery.get("method") == "delivery":
        address = delivery.get("address") or {}
        lines += [
            "DELIVERY",
            address.get("street", ""),
            f"{address.get('city', '')}, {address.get('province', '')} {address.get('postalCode', '')}",
        ]
    else:
        lines += ["PICKUP", f"Location: {delivery.get('pickupLocationId', '')}"]
    lines.append(f"When: {_schedule_text(delivery)}")
    if delivery.get("instructions"):
        lines.append(f"Instructions: {delivery['instructions']}")
    lines += ["-" * 32, *_item_lines(order_document)]
    if order_document.get("cardMessage"):
        lines += ["-" * 32, "Card message:", order_document["cardMessage"]]
    return "\n".join(lines) + "\n"


def submit_print_job(order_document: Dict, *, api_key: str, printer_id) -> int:
    """Send the order ticket to PrintNode and return the print job id."""
    if not api_key or not printer_id:
        raise ValueError("PrintNode is not configured.")

    content = base64.b64encode(build_print_ticket(order_document).encode("utf-8"))
    response = requests.post(
        f"{PRINTNODE_API_URL}/printjobs",
        json={
            "printerId": int(printer_id),
            "title": f"Order {order_document.get('orderNumber')}",
            "contentType": "raw_base64",
            "content": content.decode("ascii"),
            "source": "petal-shop",
        },
        auth=(api_key, ""),
        timeout=PRINTNODE_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json()
