# tests/conftest.py
# Put backend/ on sys.path so the flat modules import the same way app.py does.
import copy
import re
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from bson import ObjectId

BACKEND = Path(__file__).resolve().parents[1] / "backend"
backend_str = str(BACKEND)
if backend_str not in sys.path:
    sys.path.insert(0, backend_str)

from flask_jwt_extended import create_access_token  # noqa: E402

from app import create_app  # noqa: E402


# --- In-memory stand-in for the handful of pymongo calls the app makes ---

_MISSING = object()

_COMPARISONS = {
    "$gt": lambda value, operand: value > operand,
    "$gte": lambda value, operand: value >= operand,
    "$lt": lambda value, operand: value < operand,
    "$lte": lambda value, operand: value <= operand,
}


def _lookup(document, path):
    value = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(document, query):
    for key, condition in query.items():
        if key == "$or":
            if not any(_matches(document, sub) for sub in condition):
                return False
            continue
        value = _lookup(document, key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for operator, operand in condition.items():
                if operator == "$ne" and value == operand:
                    return False
                if operator == "$in" and value not in operand:
                    return False
                if operator in _COMPARISONS and (
                    value is _MISSING or not _COMPARISONS[operator](value, operand)
                ):
                    return False
                if operator == "$regex":
                    flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                    if not isinstance(value, str) or not re.search(operand, value, flags):
                        return False
        elif value is _MISSING or value != condition:
            return False
    return True


def _set_path(document, path, value):
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


class UpdateResult:
    def __init__(self, matched_count, modified_count):
        self.matched_count = matched_count
        self.modified_count = modified_count


class InsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class FakeCursor:
    def __init__(self, documents):
        self._documents = documents

    def sort(self, keys):
        for field, direction in reversed(keys):
            self._documents.sort(
                key=lambda doc: (_lookup(doc, field) is _MISSING, str(_lookup(doc, field))),
                reverse=direction < 0,
            )
        return self

    def skip(self, count):
        self._documents = self._documents[count:]
        return self

    def limit(self, count):
        self._documents = self._documents[:count]
        return self

    def __iter__(self):
        return iter(self._documents)


class FakeCollection:
    def __init__(self):
        self.documents = []

    def insert_one(self, document):
        document.setdefault("_id", ObjectId())
        self.documents.append(copy.deepcopy(document))
        return InsertResult(document["_id"])

    def find_one(self, query=None):
        for document in self.documents:
            if _matches(document, query or {}):
                return copy.deepcopy(document)
        return None

    def find(self, query=None):
        return FakeCursor(
            [copy.deepcopy(doc) for doc in self.documents if _matches(doc, query or {})]
        )

    def count_documents(self, query):
        return sum(1 for doc in self.documents if _matches(doc, query))

    def _apply(self, document, update):
        for path, value in update.get("$set", {}).items():
            _set_path(document, path, copy.deepcopy(value))
        for path, amount in update.get("$inc", {}).items():
            current = _lookup(document, path)
            _set_path(document, path, (0 if current is _MISSING else current) + amount)
        for path, value in update.get("$push", {}).items():
            current = _lookup(document, path)
            items = [] if current is _MISSING else current
            items.append(copy.deepcopy(value))
            _set_path(document, path, items)

    def update_one(self, query, update):
        for document in self.documents:
            if _matches(document, query):
                self._apply(document, update)
                return UpdateResult(1, 1)
        return UpdateResult(0, 0)

    def find_one_and_update(self, query, update, return_document=None):
        for document in self.documents:
            if _matches(document, query):
                self._apply(document, update)
                return copy.deepcopy(document)
        return None


class FakeDatabase:
    def __init__(self):
        self.shops = FakeCollection()
        self.products = FakeCollection()
        self.orders = FakeCollection()
        self.payments = FakeCollection()
        self.pickup_locations = FakeCollection()


# --- Fixtures ---

@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def app(db):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_WEBHOOK_SECRETS": ["whsec_test"],
            "RESEND_NEW_ORDER_PLACED": "",
            "PRINTNODE_API_KEY": None,
            "DEFAULT_TAX_RATE": "0.14975",
            "TAX_INCLUDES_DELIVERY_FEE": False,
        },
        database=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_token(app):
    def _make(user_id="customer-1", role="customer", email="jo@example.com"):
        with app.app_context():
            token = create_access_token(
                identity=user_id, additional_claims={"role": role, "email": email}
            )
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def shop(db):
    document = {
        "_id": ObjectId(),
        "name": "Petal Shop Plateau",
        "ownerId": "owner-1",
        "isActive": True,
        "currency": "cad",
        "taxRate": 0.14975,
        "deliveryOptions": {"pickup": True, "delivery": True},
    }
    db.shops.insert_one(document)
    return document


@pytest.fixture
def bouquet(db, shop):
    document = {
        "_id": ObjectId(),
        "shopId": shop["_id"],
        "name": "Spring Bouquet",
        "price": {"standard": 2000, "deluxe": 3500, "premium": 5000},
        "stock": 10,
        "isActive": True,
    }
    db.products.insert_one(document)
    return document


def future_slot(days=2):
    moment = datetime.now() + timedelta(days=days)
    return moment.strftime("%Y-%m-%d"), "14:30"


@pytest.fixture
def delivery_payload():
    date, time = future_slot()
    return {
        "method": "delivery",
        "address": {
            "street": "1234 Rue Saint-Denis",
            "city": "Montreal",
            "province": "QC",
            "postalCode": "H2X 2C9",
            "country": "Canada",
        },
        "date": date,
        "time": time,
        "contactPhone": "514-555-0123",
        "contactEmail": "jo@example.com",
    }


@pytest.fixture
def pickup_location(db, shop):
    document = {
        "_id": ObjectId(),
        "shopId": shop["_id"],
        "name": "Plateau store",
        "address": {
            "street": "4321 Avenue du Mont-Royal",
            "city": "Montreal",
            "province": "QC",
            "postalCode": "H2J 1W1",
            "country": "Canada",
        },
        "businessHours": {
            day: {"open": "08:00", "close": "20:00", "isOpen": True}
            for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
        },
        "settings": {"minNoticeHours": 2, "maxAdvanceDays": 30, "timeSlotInterval": 30, "isActive": True},
    }
    db.pickup_locations.insert_one(document)
    return document


@pytest.fixture
def pickup_payload(pickup_location):
    date, time = future_slot()
    return {
        "method": "pickup",
        "pickupLocationId": str(pickup_location["_id"]),
        "date": date,
        "time": time,
        "contactPhone": "(514) 555-0199",
        "contactEmail": "jo@example.com",
    }


@pytest.fixture
def recipient():
    return {"name": "Sam Tremblay", "phone": "514-555-0123", "email": "sam@example.com"}
