from datetime import datetime, timedelta, timezone

import pytest

from fulfillment import (
    DeliveryDetails,
    PickupDetails,
    ValidationFailed,
    ensure_valid_checkout,
    is_valid_phone,
    is_valid_postal_code,
    parse_delivery_info,
    parse_recipient,
    parse_schedule,
    validate_checkout,
)

NOW = datetime(2026, 10, 19, 12, 0)


def checkout(delivery, recipient=None):
    return {
        "delivery": delivery,
        "recipient": recipient if recipient is not None else {"name": "Sam Tremblay"},
    }


@pytest.fixture
def delivery():
    return {
        "method": "delivery",
        "address": {
            "street": "1234 Rue Saint-Denis",
            "city": "Montreal",
            "province": "QC",
            "postalCode": "h2x 2c9",
        },
        "date": "2026-10-21",
        "time": "14:30",
        "contactPhone": "514-555-0123",
        "contactEmail": "jo@example.com",
    }


@pytest.fixture
def pickup():
    return {
        "method": "pickup",
        "pickupLocationId": "plateau-store",
        "date": "2026-10-20",
        "time": "09:00",
        "contactPhone": "+1 (514) 555 0199",
        "contactEmail": "jo@example.com",
    }


def test_valid_delivery_has_no_errors(delivery):
    assert validate_checkout(checkout(delivery), now=NOW) == {}


def test_valid_pickup_has_no_errors(pickup):
    assert validate_checkout(checkout(pickup), now=NOW) == {}


def test_pickup_without_location_reports_only_that_field(pickup):
    del pickup["pickupLocationId"]
    errors = validate_checkout(checkout(pickup), now=NOW)
    assert list(errors) == ["pickupLocationId"]


def test_pickup_does_not_require_an_address(pickup):
    errors = validate_checkout(checkout(pickup), now=NOW)
    for field in ("street", "city", "province", "postalCode"):
        assert field not in errors


def test_delivery_does_not_require_a_pickup_location(delivery):
    assert "pickupLocationId" not in validate_checkout(checkout(delivery), now=NOW)


def test_delivery_in_the_past(delivery):
    delivery["date"] = "2026-10-18"
    errors = validate_checkout(checkout(delivery), now=NOW)
    assert errors == {"date": "Delivery date must be in the future"}


def test_pickup_in_the_past(pickup):
    pickup["date"] = "2026-10-19"
    pickup["time"] = "11:59"
    errors = validate_checkout(checkout(pickup), now=NOW)
    assert errors["date"] == "Pickup date must be in the future"


def test_all_violations_are_collected(delivery):
    delivery["address"] = {"postalCode": "12345"}
    delivery["contactPhone"] = "555-0123"
    delivery["contactEmail"] = "not-an-email"
    delivery["date"] = "2020-01-01"
    errors = validate_checkout(checkout(delivery, recipient={}), now=NOW)
    assert set(errors) == {
        "recipientName",
        "contactPhone",
        "contactEmail",
        "street",
        "city",
        "province",
        "postalCode",
        "date",
    }
    assert errors["postalCode"] == "Postal code must look like A1A 1A1"


def test_missing_time_is_reported(delivery):
    del delivery["time"]
    assert validate_checkout(checkout(delivery), now=NOW) == {"time": "Delivery time is required"}


def test_unparseable_date(delivery):
    delivery["date"] = "next tuesday"
    assert "date" in validate_checkout(checkout(delivery), now=NOW)


def test_combined_datetime_local_value_is_accepted(pickup):
    del pickup["date"]
    del pickup["time"]
    pickup["pickupTime"] = "2026-10-20T10:00"
    assert validate_checkout(checkout(pickup), now=NOW) == {}


def test_unknown_method_skips_variant_checks(delivery):
    delivery["method"] = "drone"
    errors = validate_checkout(checkout(delivery), now=NOW)
    assert errors == {"method": "Delivery method must be delivery or pickup"}


def test_unknown_method_still_checks_the_schedule(delivery):
    delivery["method"] = "drone"
    delivery["date"] = "2026-10-18"
    errors = validate_checkout(checkout(delivery), now=NOW)
    assert errors == {
        "method": "Delivery method must be delivery or pickup",
        "date": "Scheduled date must be in the future",
    }

    del delivery["time"]
    assert "time" in validate_checkout(checkout(delivery), now=NOW)


def test_contact_can_come_from_recipient(pickup):
    del pickup["contactPhone"]
    del pickup["contactEmail"]
    payload = checkout(
        pickup, recipient={"name": "Sam", "phone": "514.555.0123", "email": "sam@example.com"}
    )
    assert validate_checkout(payload, now=NOW) == {}


def test_empty_payload():
    errors = validate_checkout(None, now=NOW)
    assert set(errors) == {"recipientName", "contactPhone", "contactEmail", "method", "date"}
    assert errors["date"] == "Scheduled date is required"


def test_timezone_aware_schedule(pickup):
    del pickup["date"]
    del pickup["time"]
    pickup["pickupTime"] = "2026-10-20T10:00:00Z"
    aware_now = datetime(2026, 10, 20, 10, 30, tzinfo=timezone.utc)
    assert "date" in validate_checkout(checkout(pickup), now=aware_now)
    assert validate_checkout(checkout(pickup), now=aware_now - timedelta(hours=1)) == {}


@pytest.mark.parametrize(
    "phone,valid",
    [
        ("514-555-0123", True),
        ("(514) 555-0123", True),
        ("+1 514 555 0123", True),
        ("5145550123", True),
        ("555-0123", False),
        ("514-555-012a", False),
        ("", False),
    ],
)
def test_phone_pattern(phone, valid):
    assert is_valid_phone(phone) is valid


@pytest.mark.parametrize(
    "code,valid",
    [("H2X 2C9", True), ("h2x2c9", True), ("H2X  2C9", False), ("12345", False), ("HH2 2C9", False)],
)
def test_postal_code_shape(code, valid):
    assert is_valid_postal_code(code) is valid


def test_parse_schedule():
    assert parse_schedule("2026-10-21", "14:30") == datetime(2026, 10, 21, 14, 30)
    assert parse_schedule("2026-10-21") is None
    assert parse_schedule("", "14:30") is None


def test_ensure_valid_raises_with_fields(pickup):
    pickup["pickupLocationId"] = " "
    with pytest.raises(ValidationFailed) as excinfo:
        ensure_valid_checkout(checkout(pickup), now=NOW)
    assert excinfo.value.fields == {"pickupLocationId": "Pickup location is required"}


def test_parse_delivery_variant(delivery):
    info = parse_delivery_info(checkout(delivery), now=NOW)
    assert isinstance(info, DeliveryDetails)
    assert info.address.postal_code == "H2X 2C9"
    assert info.address.country == "Canada"
    assert info.scheduled_for == datetime(2026, 10, 21, 14, 30)
    document = info.to_document()
    assert document["method"] == "delivery"
    assert "pickupLocationId" not in document


def test_parse_pickup_variant(pickup):
    info = parse_delivery_info(checkout(pickup), now=NOW)
    assert isinstance(info, PickupDetails)
    assert info.pickup_location_id == "plateau-store"
    assert "address" not in info.to_document()


def test_parse_recipient_falls_back_to_contact(pickup):
    recipient = parse_recipient(checkout(pickup, recipient={"name": "Sam"}))
    assert recipient.phone == "+1 (514) 555 0199"
    assert recipient.email == "jo@example.com"
