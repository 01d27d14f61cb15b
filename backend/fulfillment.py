"""Delivery and pickup details for checkout, and the checkout validator.

A checkout payload carries a ``delivery`` block whose ``method`` decides which
fields are required, plus a ``recipient`` block::

    {
        "delivery": {
            "method": "delivery",
            "address": {"street": ..., "city": ..., "province": ...,
                        "postalCode": ..., "country": "Canada"},
            "date": "2026-10-21", "time": "14:30",
            "contactPhone": "514-555-0123", "contactEmail": "a@b.ca",
        },
        "recipient": {"name": ..., "phone": ..., "email": ...},
    }

Pickup replaces ``address`` with ``pickupLocationId``.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

DELIVERY = "delivery"
PICKUP = "pickup"
FULFILLMENT_METHODS = (DELIVERY, PICKUP)

ADDRESS_FIELD_LABELS = {
    "street": "Street address",
    "city": "City",
    "province": "Province",
    "postalCode": "Postal code",
}
DEFAULT_COUNTRY = "Canada"

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
phone_regex = re.compile(r"^\+?[\d\s().-]+$")
postal_code_regex = re.compile(r"^[A-Za-z]\d[A-Za-z] ?\d[A-Za-z]\d$")
MIN_PHONE_DIGITS = 10


class ValidationFailed(ValueError):
    def __init__(self, fields: Dict[str, str]):
        self.fields = dict(fields)
        super().__init__("Validation failed: " + ", ".join(sorted(self.fields)))


@dataclass(frozen=True)
class Address:
    street: str
    city: str
    province: str
    postal_code: str
    country: str = DEFAULT_COUNTRY

    def to_document(self) -> Dict[str, str]:
        return {
            "street": self.street,
            "city": self.city,
            "province": self.province,
            "postalCode": self.postal_code,
            "country": self.country,
        }


@dataclass(frozen=True)
class Recipient:
    name: str
    phone: str
    email: str

    def to_document(self) -> Dict[str, str]:
        return {"name": self.name, "phone": self.phone, "email": self.email}


@dataclass(frozen=True)
class DeliveryDetails:
    address: Address
    scheduled_for: datetime
    contact_phone: str
    contact_email: str
    instructions: str = ""
    method: str = DELIVERY

    def to_document(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "address": self.address.to_document(),
            "scheduledFor": self.scheduled_for,
            "contactPhone": self.contact_phone,
            "contactEmail": self.contact_email,
            "instructions": self.instructions,
        }


@dataclass(frozen=True)
class PickupDetails:
    pickup_location_id: str
    scheduled_for: datetime
    contact_phone: str
    contact_email: str
    instructions: str = ""
    method: str = PICKUP

    def to_document(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "pickupLocationId": self.pickup_location_id,
            "scheduledFor": self.scheduled_for,
            "contactPhone": self.contact_phone,
            "contactEmail": self.contact_email,
            "instructions": self.instructions,
        }


DeliveryInfo = Union[DeliveryDetails, PickupDetails]


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _block(payload, key: str) -> Dict:
    value = payload.get(key) if isinstance(payload, dict) else None
    return value if isinstance(value, dict) else {}


def is_valid_email(value: Optional[str]) -> bool:
    normalized = _text(value).lower()
    return bool(normalized and email_regex.match(normalized))


def is_valid_phone(value: Optional[str]) -> bool:
    candidate = _text(value)
    if not candidate or not phone_regex.match(candidate):
        return False
    return sum(ch.isdigit() for ch in candidate) >= MIN_PHONE_DIGITS


def is_valid_postal_code(value: Optional[str]) -> bool:
    return bool(postal_code_regex.match(_text(value)))


def parse_schedule(date_value, time_value=None) -> Optional[datetime]:
    """Combine a ``YYYY-MM-DD`` date and ``HH:MM`` time into a datetime.

    A date that already carries a time ("2026-10-21T14:30") is accepted on
    its own. Returns ``None`` when the values do not form a valid moment.
    """
    date_text = _text(date_value)
    time_text = _text(time_value)
    if not date_text:
        return None
    if "T" in date_text:
        candidate = date_text
    elif time_text:
        candidate = f"{date_text}T{time_text}"
    else:
        return None
    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        return None


def _is_future(moment: datetime, now: datetime) -> bool:
    if moment.tzinfo is not None and now.tzinfo is None:
        now = now.astimezone()
    elif moment.tzinfo is None and now.tzinfo is not None:
        moment = moment.replace(tzinfo=now.tzinfo)
    return moment > now


def _schedule_fields(delivery: Dict):
    # The storefront form posts a combined datetime-local value under
    # deliveryTime/pickupTime; API clients send date + time.
    date_value = delivery.get("date")
    time_value = delivery.get("time")
    if not _text(date_value):
        date_value = delivery.get("deliveryTime") or delivery.get("pickupTime")
    return date_value, time_value


def validate_checkout(payload: Optional[Dict], now: Optional[datetime] = None) -> Dict[str, str]:
    """Collect every violated checkout field.

    Returns a mapping of field name to message; an empty mapping means the
    payload is valid.
    """
    now = now or datetime.now()
    delivery = _block(payload, "delivery")
    recipient = _block(payload, "recipient")
    errors: Dict[str, str] = {}

    if not _text(recipient.get("name")):
        errors["recipientName"] = "Recipient name is required"

    contact_phone = delivery.get("contactPhone") or recipient.get("phone")
    if not _text(contact_phone):
        errors["contactPhone"] = "Contact phone is required"
    elif not is_valid_phone(contact_phone):
        errors["contactPhone"] = "Contact phone must contain at least 10 digits"

    contact_email = delivery.get("contactEmail") or recipient.get("email")
    if not _text(contact_email):
        errors["contactEmail"] = "Contact email is required"
    elif not is_valid_email(contact_email):
        errors["contactEmail"] = "Contact email is not a valid email address"

    method = _text(delivery.get("method")).lower()
    if method not in FULFILLMENT_METHODS:
        errors["method"] = "Delivery method must be delivery or pickup"
        label = "Scheduled"
    elif method == DELIVERY:
        address = _block(delivery, "address")
        for field, field_label in ADDRESS_FIELD_LABELS.items():
            if not _text(address.get(field)):
                errors[field] = f"{field_label} is required"
        postal_code = _text(address.get("postalCode"))
        if postal_code and not is_valid_postal_code(postal_code):
            errors["postalCode"] = "Postal code must look like A1A 1A1"
        label = "Delivery"
    else:
        if not _text(delivery.get("pickupLocationId")):
            errors["pickupLocationId"] = "Pickup location is required"
        label = "Pickup"

    date_value, time_value = _schedule_fields(delivery)
    if not _text(date_value):
        errors["date"] = f"{label} date is required"
    elif "T" not in _text(date_value) and not _text(time_value):
        errors["time"] = f"{label} time is required"
    else:
        scheduled_for = parse_schedule(date_value, time_value)
        if scheduled_for is None:
            errors["date"] = f"{label} date and time are not valid"
        elif not _is_future(scheduled_for, now):
            errors["date"] = f"{label} date must be in the future"

    return errors


def ensure_valid_checkout(payload: Optional[Dict], now: Optional[datetime] = None):
    errors = validate_checkout(payload, now=now)
    if errors:
        raise ValidationFailed(errors)


def parse_recipient(payload: Dict) -> Recipient:
    delivery = _block(payload, "delivery")
    recipient = _block(payload, "recipient")
    return Recipient(
        name=_text(recipient.get("name")),
        phone=_text(recipient.get("phone") or delivery.get("contactPhone")),
        email=_text(recipient.get("email") or delivery.get("contactEmail")).lower(),
    )


def parse_delivery_info(payload: Dict, now: Optional[datetime] = None) -> DeliveryInfo:
    """Validate a checkout payload and build the matching delivery variant."""
    ensure_valid_checkout(payload, now=now)
    delivery = _block(payload, "delivery")
    recipient = _block(payload, "recipient")
    date_value, time_value = _schedule_fields(delivery)
    scheduled_for = parse_schedule(date_value, time_value)
    contact_phone = _text(delivery.get("contactPhone") or recipient.get("phone"))
    contact_email = _text(delivery.get("contactEmail") or recipient.get("email")).lower()
    instructions = _text(delivery.get("instructions") or delivery.get("specialInstructions"))

    if _text(delivery.get("method")).lower() == DELIVERY:
        address = _block(delivery, "address")
        return DeliveryDetails(
            address=Address(
                street=_text(address.get("street")),
                city=_text(address.get("city")),
                province=_text(address.get("province")),
                postal_code=_text(address.get("postalCode")).upper(),
                country=_text(address.get("country")) or DEFAULT_COUNTRY,
            ),
            scheduled_for=scheduled_for,
            contact_phone=contact_phone,
            contact_email=contact_email,
            instructions=instructions,
        )

    return PickupDetails(
        pickup_location_id=_text(delivery.get("pickupLocationId")),
        scheduled_for=scheduled_for,
        contact_phone=contact_phone,
        contact_email=contact_email,
        instructions=instructions,
    )
