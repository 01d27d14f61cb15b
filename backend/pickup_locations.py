"""Store pickup locations: business hours, time slots and slot checks.

Location documents live in the ``pickup_locations`` collection::

    {
        "name": "Plateau store", "shopId": ObjectId(...),
        "address": {...},
        "businessHours": {"monday": {"open": "09:00", "close": "18:00", "isOpen": True}, ...},
        "settings": {"minNoticeHours": 2, "maxAdvanceDays": 30,
                     "timeSlotInterval": 30, "isActive": True},
    }

Missing days and settings fall back to the defaults below.
"""

from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from bson import ObjectId

from fulfillment import ADDRESS_FIELD_LABELS, DEFAULT_COUNTRY

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DEFAULT_BUSINESS_HOURS = {
    "monday": {"open": "09:00", "close": "18:00", "isOpen": True},
    "tuesday": {"open": "09:00", "close": "18:00", "isOpen": True},
    "wednesday": {"open": "09:00", "close": "18:00", "isOpen": True},
    "thursday": {"open": "09:00", "close": "18:00", "isOpen": True},
    "friday": {"open": "09:00", "close": "18:00", "isOpen": True},
    "saturday": {"open": "09:00", "close": "17:00", "isOpen": True},
    "sunday": {"open": "10:00", "close": "16:00", "isOpen": False},
}

DEFAULT_SETTINGS = {
    "minNoticeHours": 2,
    "maxAdvanceDays": 30,
    "timeSlotInterval": 30,
    "isActive": True,
}
MIN_SLOT_INTERVAL_MINUTES = 15


def _parse_clock(value) -> Optional[time]:
    try:
        return datetime.strptime(str(value or "").strip(), "%H:%M").time()
    except ValueError:
        return None


def _local_naive(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


def business_hours(location: Dict) -> Dict[str, Dict[str, object]]:
    configured = location.get("businessHours") or {}
    hours = {}
    for day in DAYS:
        merged = dict(DEFAULT_BUSINESS_HOURS[day])
        merged.update(configured.get(day) or {})
        hours[day] = merged
    return hours


def pickup_settings(location: Dict) -> Dict[str, object]:
    settings = dict(DEFAULT_SETTINGS)
    settings.update(location.get("settings") or {})
    return settings


def is_active(location: Dict) -> bool:
    return pickup_settings(location).get("isActive") is not False


def opening_window(location: Dict, day: date):
    """``(open, close)`` times for ``day``, or ``None`` when closed."""
    hours = business_hours(location)[DAYS[day.weekday()]]
    if not hours.get("isOpen"):
        return None
    opens_at = _parse_clock(hours.get("open"))
    closes_at = _parse_clock(hours.get("close"))
    if opens_at is None or closes_at is None or closes_at <= opens_at:
        return None
    return opens_at, closes_at


def available_time_slots(location: Dict, day: date) -> List[str]:
    """``HH:MM`` slot starts from opening time, every ``timeSlotInterval`` minutes."""
    window = opening_window(location, day)
    if window is None:
        return []
    interval = max(
        MIN_SLOT_INTERVAL_MINUTES,
        int(pickup_settings(location).get("timeSlotInterval") or MIN_SLOT_INTERVAL_MINUTES),
    )
    opens_at, closes_at = window
    current = datetime.combine(day, opens_at)
    closing = datetime.combine(day, closes_at)
    slots = []
    while current < closing:
        slots.append(current.strftime("%H:%M"))
        current += timedelta(minutes=interval)
    return slots


def is_open_at(location: Dict, moment: datetime) -> bool:
    moment = _local_naive(moment)
    window = opening_window(location, moment.date())
    if window is None:
        return False
    opens_at, closes_at = window
    return opens_at <= moment.time() <= closes_at


def next_available_time(location: Dict, now: datetime) -> datetime:
    return now + timedelta(hours=float(pickup_settings(location).get("minNoticeHours") or 0))


def check_pickup_slot(location: Dict, scheduled_for: datetime, now: datetime) -> Optional[str]:
    """Return why ``scheduled_for`` cannot be booked at ``location``, or ``None``."""
    if not is_active(location):
        return "This pickup location is not accepting pickups"

    moment = _local_naive(scheduled_for)
    now = _local_naive(now)
    settings = pickup_settings(location)

    if moment < next_available_time(location, now):
        return f"Pickup needs at least {settings['minNoticeHours']} hours notice"
    if moment.date() > (now + timedelta(days=int(settings["maxAdvanceDays"]))).date():
        return f"Pickup can be booked at most {settings['maxAdvanceDays']} days ahead"

    window = opening_window(location, moment.date())
    if window is None:
        return "The pickup location is closed on that day"
    opens_at, closes_at = window
    if not opens_at <= moment.time() < closes_at:
        return (
            f"Pickup time must be between {opens_at.strftime('%H:%M')}"
            f" and {closes_at.strftime('%H:%M')}"
        )
    return None


def serialize_pickup_location(location: Dict, now: Optional[datetime] = None) -> Optional[Dict]:
    if not location:
        return None
    now = now or datetime.now()
    shop_id = location.get("shopId")
    return {
        "id": str(location.get("_id") or ""),
        "name": location.get("name") or "",
        "shopId": str(shop_id) if isinstance(shop_id, ObjectId) else shop_id,
        "address": location.get("address") or {},
        "phone": location.get("phone") or "",
        "email": location.get("email") or "",
        "businessHours": business_hours(location),
        "settings": pickup_settings(location),
        "description": location.get("description") or "",
        "pickupInstructions": location.get("pickupInstructions") or "",
        "isOpenNow": is_open_at(location, now),
    }


def _text(value) -> str:
    return "" if value is None else str(value).strip()


def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


SETTING_MINIMUMS = {"minNoticeHours": 0, "maxAdvanceDays": 1, "timeSlotInterval": MIN_SLOT_INTERVAL_MINUTES}
TEXT_LIMITS = {"name": 100, "description": 500, "pickupInstructions": 1000}


def location_fields(payload: Dict, partial: bool = False):
    """Validate a create (or, with ``partial``, update) payload.

    Returns ``(fields, errors)``; ``errors`` maps field paths to messages.
    """
    fields: Dict[str, object] = {}
    errors: Dict[str, str] = {}

    for key, limit in TEXT_LIMITS.items():
        if key not in payload and (partial or key != "name"):
            continue
        value = _text(payload.get(key))
        if key == "name" and not value:
            errors["name"] = "Location name is required"
        elif len(value) > limit:
            errors[key] = f"{key} cannot exceed {limit} characters"
        else:
            fields[key] = value

    if "address" in payload or not partial:
        address = payload.get("address") if isinstance(payload.get("address"), dict) else {}
        cleaned_address = {}
        for key, label in ADDRESS_FIELD_LABELS.items():
            value = _text(address.get(key))
            if not value:
                errors[f"address.{key}"] = f"{label} is required"
            cleaned_address[key] = value
        cleaned_address["postalCode"] = cleaned_address["postalCode"].upper()
        cleaned_address["country"] = _text(address.get("country")) or DEFAULT_COUNTRY
        fields["address"] = cleaned_address

    if "phone" in payload:
        fields["phone"] = _text(payload.get("phone"))
    if "email" in payload:
        fields["email"] = _text(payload.get("email")).lower()

    if "businessHours" in payload:
        hours = payload.get("businessHours")
        if not isinstance(hours, dict):
            errors["businessHours"] = "Business hours must be an object keyed by day"
        else:
            cleaned_hours = {}
            for day, entry in hours.items():
                if day not in DAYS or not isinstance(entry, dict):
                    errors[f"businessHours.{day}"] = "Business hours must be given per weekday"
                    continue
                cleaned_entry: Dict[str, object] = {}
                for bound in ("open", "close"):
                    if bound not in entry:
                        continue
                    if _parse_clock(entry[bound]) is None:
                        errors[f"businessHours.{day}.{bound}"] = "Time must use HH:MM"
                    else:
                        cleaned_entry[bound] = _text(entry[bound])
                if "isOpen" in entry:
                    cleaned_entry["isOpen"] = bool(entry["isOpen"])
                cleaned_hours[day] = cleaned_entry
            fields["businessHours"] = cleaned_hours

    if "settings" in payload:
        settings = payload.get("settings")
        if not isinstance(settings, dict):
            errors["settings"] = "Settings must be an object"
        else:
            cleaned_settings: Dict[str, object] = {}
            for key, minimum in SETTING_MINIMUMS.items():
                if key not in settings:
                    continue
                value = _number(settings[key])
                if value is None or value < minimum:
                    errors[f"settings.{key}"] = f"{key} must be a number of at least {minimum}"
                else:
                    cleaned_settings[key] = value
            if "isActive" in settings:
                cleaned_settings["isActive"] = bool(settings["isActive"])
            fields["settings"] = cleaned_settings

    return fields, errors
