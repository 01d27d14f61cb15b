import json
import logging
import os
import re
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import stripe
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from requests import RequestException
from werkzeug.middleware.proxy_fix import ProxyFix

from delivery_fees import (
    NotServiceable,
    delivery_fee_stats,
    find_fee,
    format_postal_code,
    list_delivery_fees,
    resolve_fee,
    search_postal_codes,
)
from fulfillment import (
    DELIVERY,
    PICKUP,
    ValidationFailed,
    parse_delivery_info,
    parse_recipient,
    validate_checkout,
)
from notifications import send_order_confirmation_email, submit_print_job
from orders import (
    CANCELLED,
    InvalidStatusTransition,
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    PAYMENT_SUCCEEDED,
    build_order_document,
    history_entry,
    serialize_order,
    status_update,
)
from pickup_locations import (
    available_time_slots,
    check_pickup_slot,
    is_active,
    is_open_at,
    location_fields,
    next_available_time,
    serialize_pickup_location,
)
from payments import (
    CHECKOUT_COMPLETED,
    CHECKOUT_EXPIRED,
    PAYMENT_INTENT_FAILED,
    PAYMENT_INTENT_SUCCEEDED,
    PaymentConfigurationError,
    apply_checkout_completed,
    apply_checkout_expired,
    apply_payment_failed,
    apply_payment_succeeded,
    construct_webhook_event,
    create_checkout_session,
    retrieve_checkout_session,
)
from pricing import (
    TIERS,
    InvalidLineItem,
    InvalidTaxRate,
    compute_totals,
    format_cents,
    line_item_from_product,
)

load_dotenv()

ALLOWED_USER_ROLES = {"admin", "shop_owner", "customer"}
MAX_PAGE_SIZE = 100


def env_flag(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def parse_timestamp(raw_value: str) -> datetime:
    """Parse an ISO date or datetime into naive UTC, as stored in MongoDB."""
    value = datetime.fromisoformat(str(raw_value).strip().replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so generated checkout links keep the public HTTPS origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_HOURS", "1"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/petalshop"
    )
    app.config["SHOP_NAME"] = os.getenv("SHOP_NAME", "Petal Shop")
    app.config["STORE_CURRENCY"] = os.getenv("STORE_CURRENCY", "cad").strip().lower()
    app.config["DEFAULT_TAX_RATE"] = os.getenv("DEFAULT_TAX_RATE", "0.14975")
    app.config["TAX_INCLUDES_DELIVERY_FEE"] = env_flag("TAX_INCLUDES_DELIVERY_FEE")
    app.config["APP_BASE_URL"] = os.getenv("APP_BASE_URL", "http://localhost:3000")
    app.config["STRIPE_SECRET_KEY"] = os.getenv("STRIPE_SECRET_KEY")
    app.config["STRIPE_WEBHOOK_SECRETS"] = [
        os.getenv("STRIPE_WEBHOOK_SECRET"),
        os.getenv("STRIPE_WEBHOOK_SECRET_TEST"),
        os.getenv("STRIPE_WEBHOOK_SECRET_LIVE"),
    ]
    app.config["RESEND_NEW_ORDER_PLACED"] = (os.getenv("RESEND_NEW_ORDER_PLACED") or "").strip()
    app.config["ORDER_SENDER_EMAIL"] = os.getenv(
        "ORDER_SENDER_EMAIL", "orders@petalshop.ca"
    )
    app.config["PRINTNODE_API_KEY"] = os.getenv("PRINTNODE_API_KEY")
    app.config["PRINTNODE_PRINTER_ID"] = os.getenv("PRINTNODE_PRINTER_ID")
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, app.config["LOG_LEVEL"], logging.INFO))

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        os.getenv("FRONTEND_URL", "").strip(),
        os.getenv("APP_BASE_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "customer"

    def current_principal() -> Dict[str, str]:
        claims = get_jwt() or {}
        return {
            "id": str(get_jwt_identity() or ""),
            "email": normalize_email(claims.get("email")),
            "role": normalize_role(claims.get("role")),
        }

    def require_role(*roles: str):
        allowed = {normalize_role(role) for role in roles if role}
        principal = current_principal()

        if principal["role"] == "admin" or not allowed or principal["role"] in allowed:
            return principal, None

        return (
            None,
            (
                jsonify(
                    {
                        "success": False,
                        "error": "You need additional permissions to perform this action.",
                    }
                ),
                403,
            ),
        )

    def normalize_object_id_value(value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value or "").strip())
        except (InvalidId, TypeError):
            return None

    def owned_shop_ids(principal) -> List[ObjectId]:
        return [
            shop["_id"]
            for shop in db.shops.find({"ownerId": principal["id"]})
        ]

    def find_pickup_location(location_id, shop_id=None):
        object_id = normalize_object_id_value(location_id)
        if object_id is None:
            return None
        query: Dict[str, object] = {"_id": object_id}
        if shop_id is not None:
            query["shopId"] = shop_id
        return db.pickup_locations.find_one(query)

    def parse_date_arg(name: str) -> Tuple[Optional[datetime], bool]:
        raw_value = str(request.args.get(name) or "").strip()
        if not raw_value:
            return None, True
        try:
            return parse_timestamp(raw_value), True
        except ValueError:
            return None, False

    def order_page_response(query: Dict[str, object]):
        status_filter = str(request.args.get("status") or "").strip().lower()
        if status_filter:
            if status_filter not in ORDER_STATUSES:
                return error_response("Invalid status filter")
            query["status"] = status_filter

        try:
            page = max(1, int(request.args.get("page", 1)))
            limit = min(MAX_PAGE_SIZE, max(1, int(request.args.get("limit", 20))))
        except (TypeError, ValueError):
            return error_response("page and limit must be whole numbers")

        total = db.orders.count_documents(query)
        cursor = (
            db.orders.find(query)
            .sort([("createdAt", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [serialize_order(document) for document in cursor]
        return jsonify(
            {
                "success": True,
                "data": orders,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            }
        )

    def can_view_order(order_document, principal) -> bool:
        if principal["role"] == "admin":
            return True
        if principal["role"] == "shop_owner":
            return order_document.get("shopId") in owned_shop_ids(principal)
        return str(order_document.get("customerId") or "") == principal["id"]

    def parse_requested_items(raw_items) -> Tuple[List[Dict], Dict[str, str]]:
        requested: List[Dict] = []
        errors: Dict[str, str] = {}
        for index, entry in enumerate(raw_items):
            if not isinstance(entry, dict):
                errors[f"items[{index}]"] = "Item must be an object"
                continue
            product_id = normalize_object_id_value(entry.get("productId"))
            if product_id is None:
                errors[f"items[{index}].productId"] = "Product identifier is not valid"
            quantity = entry.get("quantity", 1)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                errors[f"items[{index}].quantity"] = "Quantity must be a whole number of at least 1"
            tier = entry.get("selectedTier") or None
            if tier is not None and tier not in TIERS:
                errors[f"items[{index}].selectedTier"] = (
                    "Tier must be one of " + ", ".join(TIERS)
                )
            requested.append(
                {"productId": product_id, "quantity": quantity, "selectedTier": tier}
            )
        return requested, errors

    def error_response(message: str, status: int = 400, **extra):
        body = {"success": False, "error": message}
        body.update(extra)
        return jsonify(body), status

    def json_object_body():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}, None
        if not isinstance(payload, dict):
            return None, error_response("Request body must be a JSON object")
        return payload, None

    def prepare_order(payload: Dict, principal: Dict):
        """Validate, price and persist a pending order from a checkout payload."""
        shop_identifier = payload.get("shopId")
        raw_items = payload.get("items")
        if not shop_identifier or not isinstance(raw_items, list) or not raw_items or not isinstance(
            payload.get("delivery"), dict
        ):
            return None, error_response(
                "Shop ID, items, and delivery information are required"
            )

        now = datetime.now()
        errors = validate_checkout(payload, now=now)
        requested_items, item_errors = parse_requested_items(raw_items)
        errors.update(item_errors)
        if errors:
            raise ValidationFailed(errors)

        shop_id = normalize_object_id_value(shop_identifier)
        shop = db.shops.find_one({"_id": shop_id}) if shop_id else None
        if not shop or shop.get("isActive") is False:
            return None, error_response("Shop not found or inactive")

        line_items = []
        for requested in requested_items:
            product = db.products.find_one({"_id": requested["productId"]})
            if (
                not product
                or product.get("isActive") is False
                or product.get("shopId") != shop_id
            ):
                return None, error_response(
                    f"Product {requested['productId']} not found or not available from this shop"
                )
            stock = product.get("stock")
            if isinstance(stock, int) and stock < requested["quantity"]:
                return None, error_response(
                    f"Insufficient stock for {product.get('name')}. Available: {stock}"
                )
            line_items.append(
                line_item_from_product(
                    product, requested["quantity"], requested["selectedTier"]
                )
            )

        delivery_info = parse_delivery_info(payload, now=now)
        delivery_options = shop.get("deliveryOptions") or {}
        if delivery_options.get(delivery_info.method) is False:
            raise ValidationFailed(
                {"method": f"This shop does not offer {delivery_info.method}"}
            )

        if delivery_info.method == PICKUP:
            location = find_pickup_location(delivery_info.pickup_location_id, shop_id)
            if not location:
                raise ValidationFailed(
                    {"pickupLocationId": "Pickup location not found for this shop"}
                )
            if not is_active(location):
                raise ValidationFailed(
                    {"pickupLocationId": "This pickup location is not accepting pickups"}
                )
            slot_error = check_pickup_slot(location, delivery_info.scheduled_for, now)
            if slot_error:
                raise ValidationFailed({"time": slot_error})

        delivery_fee_cents = 0
        if delivery_info.method == DELIVERY:
            try:
                delivery_fee_cents = resolve_fee(delivery_info.address.postal_code).fee_cents
            except NotServiceable as exc:
                raise ValidationFailed(
                    {"postalCode": f"We do not deliver to {exc.postal_code} yet"}
                )

        tax_rate = shop.get("taxRate")
        if tax_rate is None:
            tax_rate = app.config["DEFAULT_TAX_RATE"]
        totals = compute_totals(
            line_items,
            tax_rate,
            delivery_fee_cents,
            tax_delivery_fee=app.config["TAX_INCLUDES_DELIVERY_FEE"],
        )

        order_document = build_order_document(
            customer_id=principal["id"],
            shop_id=shop_id,
            line_items=line_items,
            totals=totals,
            delivery=delivery_info,
            recipient=parse_recipient(payload),
            currency=shop.get("currency") or app.config["STORE_CURRENCY"],
            notes=str(payload.get("notes") or "").strip()[:500],
            card_message=str(payload.get("cardMessage") or "").strip(),
            occasion=str(payload.get("occasion") or "").strip(),
        )
        insert_result = db.orders.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id
        app.logger.info(
            "Created order %s for customer %s (total %s cents)",
            order_document["orderNumber"],
            principal["id"],
            totals.total_cents,
        )
        return order_document, None

    def notify_order_confirmed(order_document):
        api_key = app.config["RESEND_NEW_ORDER_PLACED"]
        if api_key:
            email_sent, email_error = send_order_confirmation_email(
                order_document,
                api_key=api_key,
                sender_email=app.config["ORDER_SENDER_EMAIL"],
                shop_name=app.config["SHOP_NAME"],
            )
            if not email_sent:
                app.logger.warning(
                    "Order confirmation email failed for %s: %s",
                    order_document.get("orderNumber"),
                    email_error,
                )

        if app.config["PRINTNODE_API_KEY"] and app.config["PRINTNODE_PRINTER_ID"]:
            try:
                job_id = submit_print_job(
                    order_document,
                    api_key=app.config["PRINTNODE_API_KEY"],
                    printer_id=app.config["PRINTNODE_PRINTER_ID"],
                )
                app.logger.info(
                    "Print job %s queued for order %s", job_id, order_document.get("orderNumber")
                )
            except (RequestException, ValueError) as exc:
                app.logger.warning(
                    "Unable to print ticket for order %s: %s",
                    order_document.get("orderNumber"),
                    exc,
                )

    # --- Error handlers ---

    @app.errorhandler(ValidationFailed)
    def handle_validation_failed(exc: ValidationFailed):
        return error_response("Validation failed", 400, fields=exc.fields)

    @app.errorhandler(InvalidStatusTransition)
    def handle_invalid_transition(exc: InvalidStatusTransition):
        return error_response(str(exc), 409)

    @app.errorhandler(InvalidLineItem)
    @app.errorhandler(InvalidTaxRate)
    def handle_pricing_error(exc):
        app.logger.error("Pricing failed: %s", exc)
        return error_response("Unable to price this order", 500)

    @app.errorhandler(PaymentConfigurationError)
    def handle_payment_configuration(exc):
        app.logger.error("Payment configuration error: %s", exc)
        return error_response("Payments are not available right now", 500)

    # --- Routes ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/delivery/calculate-fee", methods=["POST"])
    def calculate_delivery_fee():
        payload, body_error = json_object_body()
        if body_error:
            return body_error
        postal_code = str(payload.get("postalCode") or "").strip()
        if not postal_code:
            return error_response("Postal code is required")

        try:
            quote = resolve_fee(postal_code)
        except NotServiceable as exc:
            return error_response(
                "Postal code not found in delivery area",
                404,
                data={"postalCode": exc.postal_code, "feeCents": None},
            )

        return jsonify(
            {
                "success": True,
                "data": {
                    "postalCode": quote.postal_code,
                    "feeCents": quote.fee_cents,
                    "fee": format_cents(quote.fee_cents),
                    "matchType": quote.match_type,
                    "matchedPrefix": quote.matched_key if quote.match_type == "partial" else None,
                },
            }
        )

    @app.route("/api/delivery/check-area/<postal_code>", methods=["GET"])
    def check_delivery_area(postal_code: str):
        quote = find_fee(postal_code)
        return jsonify(
            {
                "success": True,
                "data": {
                    "postalCode": quote.postal_code if quote else format_postal_code(postal_code),
                    "inDeliveryArea": quote is not None,
                    "feeCents": quote.fee_cents if quote else None,
                    "matchType": quote.match_type if quote else None,
                },
            }
        )

    @app.route("/api/delivery/fees", methods=["GET"])
    def get_delivery_fees():
        fees = list_delivery_fees()
        return jsonify({"success": True, "data": {"fees": fees, "count": len(fees)}})

    @app.route("/api/delivery/stats", methods=["GET"])
    def get_delivery_stats():
        return jsonify({"success": True, "data": delivery_fee_stats()})

    @app.route("/api/delivery/search/<prefix>", methods=["GET"])
    def search_delivery_codes(prefix: str):
        try:
            results = search_postal_codes(prefix)
        except ValueError as exc:
            return error_response(str(exc))
        return jsonify(
            {
                "success": True,
                "data": {
                    "prefix": prefix.strip().upper(),
                    "results": results,
                    "count": len(results),
                },
            }
        )

    @app.route("/api/pickup-locations", methods=["GET"])
    def list_pickup_locations():
        query: Dict[str, object] = {}
        if str(request.args.get("isActive", "true")).strip().lower() == "false":
            query["settings.isActive"] = False
        else:
            query["settings.isActive"] = {"$ne": False}

        if request.args.get("shopId"):
            shop_object_id = normalize_object_id_value(request.args.get("shopId"))
            if shop_object_id is None:
                return error_response("Invalid shop ID format")
            query["shopId"] = shop_object_id

        city = str(request.args.get("city") or "").strip()
        if city:
            query["address.city"] = {"$regex": re.escape(city), "$options": "i"}

        locations = [
            serialize_pickup_location(location)
            for location in db.pickup_locations.find(query).sort([("name", 1)])
        ]
        return jsonify({"success": True, "data": locations, "count": len(locations)})

    @app.route("/api/pickup-locations/<location_id>", methods=["GET"])
    def get_pickup_location(location_id: str):
        if normalize_object_id_value(location_id) is None:
            return error_response("Invalid pickup location ID format")
        location = find_pickup_location(location_id)
        if not location:
            return error_response("Pickup location not found", 404)
        return jsonify({"success": True, "data": serialize_pickup_location(location)})

    @app.route("/api/pickup-locations/<location_id>/time-slots", methods=["GET"])
    def get_pickup_time_slots(location_id: str):
        raw_date = str(request.args.get("date") or "").strip()
        if not raw_date:
            return error_response("Date parameter is required")
        try:
            day = date.fromisoformat(raw_date)
        except ValueError:
            return error_response("Date must use YYYY-MM-DD")

        if normalize_object_id_value(location_id) is None:
            return error_response("Invalid pickup location ID format")
        location = find_pickup_location(location_id)
        if not location:
            return error_response("Pickup location not found", 404)

        slots = available_time_slots(location, day)
        return jsonify(
            {
                "success": True,
                "data": {
                    "pickupLocationId": location_id,
                    "date": day.isoformat(),
                    "timeSlots": slots,
                    "count": len(slots),
                },
            }
        )

    @app.route("/api/pickup-locations/<location_id>/availability", methods=["GET"])
    def get_pickup_availability(location_id: str):
        if normalize_object_id_value(location_id) is None:
            return error_response("Invalid pickup location ID format")
        location = find_pickup_location(location_id)
        if not location:
            return error_response("Pickup location not found", 404)

        now = datetime.now()
        serialized = serialize_pickup_location(location, now)
        return jsonify(
            {
                "success": True,
                "data": {
                    "isActive": is_active(location),
                    "isOpenNow": is_open_at(location, now),
                    "businessHours": serialized["businessHours"],
                    "nextAvailableTime": next_available_time(location, now).isoformat(
                        timespec="minutes"
                    ),
                },
            }
        )

    @app.route("/api/pickup-locations", methods=["POST"])
    @jwt_required()
    def create_pickup_location():
        principal, role_error = require_role("shop_owner", "admin")
        if role_error:
            return role_error
        payload, body_error = json_object_body()
        if body_error:
            return body_error

        shop_object_id = normalize_object_id_value(payload.get("shopId"))
        if shop_object_id is None:
            return error_response("A valid shopId is required")
        if not db.shops.find_one({"_id": shop_object_id}):
            return error_response("Shop not found", 404)
        if principal["role"] != "admin" and shop_object_id not in owned_shop_ids(principal):
            return error_response(
                "Access denied: You can only manage pickup locations of your shops", 403
            )

        fields, errors = location_fields(payload)
        if errors:
            raise ValidationFailed(errors)

        now = datetime.utcnow()
        location = dict(fields, shopId=shop_object_id, createdAt=now, updatedAt=now)
        location["_id"] = db.pickup_locations.insert_one(location).inserted_id
        app.logger.info(
            "Pickup location %s created for shop %s by %s",
            location["_id"],
            shop_object_id,
            principal["id"],
        )
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Pickup location created successfully",
                    "data": serialize_pickup_location(location),
                }
            ),
            201,
        )

    @app.route("/api/pickup-locations/<location_id>", methods=["PUT"])
    @jwt_required()
    def update_pickup_location(location_id: str):
        principal, role_error = require_role("shop_owner", "admin")
        if role_error:
            return role_error
        if normalize_object_id_value(location_id) is None:
            return error_response("Invalid pickup location ID format")
        location = find_pickup_location(location_id)
        if not location:
            return error_response("Pickup location not found", 404)
        if principal["role"] != "admin" and location.get("shopId") not in owned_shop_ids(principal):
            return error_response(
                "Access denied: You can only manage pickup locations of your shops", 403
            )

        payload, body_error = json_object_body()
        if body_error:
            return body_error
        fields, errors = location_fields(payload, partial=True)
        if errors:
            raise ValidationFailed(errors)
        if not fields:
            return error_response("Nothing to update")

        # Hours and settings are merged per day and per key.
        update_fields: Dict[str, object] = {"updatedAt": datetime.utcnow()}
        for key, value in fields.items():
            if key == "businessHours":
                for day, entry in value.items():
                    for bound, bound_value in entry.items():
                        update_fields[f"businessHours.{day}.{bound}"] = bound_value
            elif key == "settings":
                for setting, setting_value in value.items():
                    update_fields[f"settings.{setting}"] = setting_value
            else:
                update_fields[key] = value

        updated = db.pickup_locations.find_one_and_update(
            {"_id": location["_id"]},
            {"$set": update_fields},
            return_document=ReturnDocument.AFTER,
        )
        app.logger.info("Pickup location %s updated by %s", location["_id"], principal["id"])
        return jsonify(
            {
                "success": True,
                "message": "Pickup location updated successfully",
                "data": serialize_pickup_location(updated),
            }
        )

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        principal, role_error = require_role("customer")
        if role_error:
            return role_error
        payload, body_error = json_object_body()
        if body_error:
            return body_error
        order_document, error = prepare_order(payload, principal)
        if error:
            return error
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Order created successfully",
                    "data": serialize_order(order_document),
                }
            ),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        principal = current_principal()
        query: Dict[str, object] = {}
        if principal["role"] == "customer":
            query["customerId"] = principal["id"]
        elif principal["role"] == "shop_owner":
            query["shopId"] = {"$in": owned_shop_ids(principal)}

        return order_page_response(query)

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        object_id = normalize_object_id_value(order_id)
        if object_id is None:
            return error_response("Invalid order ID format")
        order_document = db.orders.find_one({"_id": object_id})
        if not order_document:
            return error_response("Order not found", 404)
        if not can_view_order(order_document, current_principal()):
            return error_response("Access denied: You can only view your own orders", 403)
        return jsonify({"success": True, "data": serialize_order(order_document)})

    @app.route("/api/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        principal, role_error = require_role("shop_owner", "admin")
        if role_error:
            return role_error

        object_id = normalize_object_id_value(order_id)
        if object_id is None:
            return error_response("Invalid order ID format")
        order_document = db.orders.find_one({"_id": object_id})
        if not order_document:
            return error_response("Order not found", 404)
        if not can_view_order(order_document, principal):
            return error_response(
                "Access denied: You can only update orders from your shops", 403
            )

        payload, body_error = json_object_body()
        if body_error:
            return body_error
        requested_status = str(payload.get("status") or "").strip().lower()
        if requested_status not in ORDER_STATUSES:
            return error_response("Invalid status")

        now = datetime.utcnow()
        update_fields = status_update(order_document.get("status"), requested_status, now)
        updated = db.orders.find_one_and_update(
            {"_id": object_id, "status": order_document.get("status")},
            {
                "$set": update_fields,
                "$push": {
                    "statusHistory": history_entry(
                        requested_status, now, str(payload.get("note") or "").strip()
                    )
                },
            },
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return error_response(
                "Order status changed while updating; reload the order and try again", 409
            )
        app.logger.info(
            "Order %s moved to %s by %s",
            order_document.get("orderNumber"),
            requested_status,
            principal["id"],
        )
        return jsonify(
            {
                "success": True,
                "message": "Order status updated successfully",
                "data": serialize_order(updated),
            }
        )

    @app.route("/api/orders/<order_id>/payment", methods=["PUT"])
    @jwt_required()
    def update_order_payment(order_id: str):
        principal, role_error = require_role("shop_owner", "admin")
        if role_error:
            return role_error

        object_id = normalize_object_id_value(order_id)
        if object_id is None:
            return error_response("Invalid order ID format")
        order_document = db.orders.find_one({"_id": object_id})
        if not order_document:
            return error_response("Order not found", 404)
        if not can_view_order(order_document, principal):
            return error_response(
                "Access denied: You can only update orders from your shops", 403
            )

        payload, body_error = json_object_body()
        if body_error:
            return body_error

        now = datetime.utcnow()
        update_fields: Dict[str, object] = {}
        payment_status = str(payload.get("paymentStatus") or "").strip().lower()
        if payment_status:
            if payment_status not in PAYMENT_STATUSES:
                return error_response(
                    "Payment status must be one of " + ", ".join(PAYMENT_STATUSES)
                )
            update_fields["payment.status"] = payment_status

        payment_method = str(payload.get("paymentMethod") or "").strip()
        if payment_method:
            update_fields["payment.method"] = payment_method[:50]

        if payload.get("paidAt"):
            try:
                update_fields["payment.paidAt"] = parse_timestamp(payload["paidAt"])
            except (TypeError, ValueError):
                return error_response("paidAt must be an ISO date")
        elif payment_status == PAYMENT_SUCCEEDED and not (
            order_document.get("payment") or {}
        ).get("paidAt"):
            update_fields["payment.paidAt"] = now

        if not update_fields:
            return error_response("Provide paymentStatus, paymentMethod or paidAt")
        update_fields["updatedAt"] = now

        updated = db.orders.find_one_and_update(
            {"_id": object_id},
            {"$set": update_fields},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return error_response("Order not found", 404)
        app.logger.info(
            "Payment of order %s updated by %s: %s",
            order_document.get("orderNumber"),
            principal["id"],
            sorted(update_fields),
        )
        return jsonify(
            {
                "success": True,
                "message": "Payment information updated successfully",
                "data": serialize_order(updated),
            }
        )

    @app.route("/api/orders/shop/<shop_id>", methods=["GET"])
    @jwt_required()
    def list_shop_orders(shop_id: str):
        principal, role_error = require_role("shop_owner", "admin")
        if role_error:
            return role_error

        shop_object_id = normalize_object_id_value(shop_id)
        if shop_object_id is None:
            return error_response("Invalid shop ID format")
        if principal["role"] != "admin" and shop_object_id not in owned_shop_ids(principal):
            return error_response(
                "Access denied: You can only view orders from your shops", 403
            )

        start_date, start_ok = parse_date_arg("startDate")
        end_date, end_ok = parse_date_arg("endDate")
        if not start_ok or not end_ok:
            return error_response("startDate and endDate must be ISO dates")

        query: Dict[str, object] = {"shopId": shop_object_id}
        created_range: Dict[str, datetime] = {}
        if start_date:
            created_range["$gte"] = start_date
        if end_date and "T" not in str(request.args.get("endDate")):
            # A bare date covers that whole day.
            created_range["$lt"] = end_date + timedelta(days=1)
        elif end_date:
            created_range["$lte"] = end_date
        if created_range:
            query["createdAt"] = created_range
        return order_page_response(query)

    @app.route("/api/stripe/create-checkout-session", methods=["POST"])
    @jwt_required()
    def stripe_create_checkout_session():
        principal, role_error = require_role("customer")
        if role_error:
            return role_error
        if not app.config["STRIPE_SECRET_KEY"]:
            raise PaymentConfigurationError("STRIPE_SECRET_KEY is not configured")

        payload, body_error = json_object_body()
        if body_error:
            return body_error
        order_document, error = prepare_order(payload, principal)
        if error:
            return error

        try:
            session = create_checkout_session(
                order_document,
                api_key=app.config["STRIPE_SECRET_KEY"],
                app_base_url=app.config["APP_BASE_URL"],
                currency=order_document["currency"],
            )
        except stripe.StripeError as exc:
            app.logger.error(
                "Stripe checkout failed for order %s: %s",
                order_document["orderNumber"],
                exc,
            )
            now = datetime.utcnow()
            db.orders.update_one(
                {"_id": order_document["_id"]},
                {
                    "$set": status_update(order_document["status"], CANCELLED, now),
                    "$push": {
                        "statusHistory": history_entry(
                            CANCELLED, now, "Checkout session could not be created"
                        )
                    },
                },
            )
            return error_response("Failed to create checkout session", 502)

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"payment.sessionId": session.id}},
        )
        app.logger.info(
            "Stripe session %s created for order %s", session.id, order_document["orderNumber"]
        )
        return jsonify(
            {
                "success": True,
                "sessionId": session.id,
                "url": session.url,
                "orderId": str(order_document["_id"]),
                "totals": order_document["totals"],
            }
        )

    @app.route("/api/stripe/checkout-session/<session_id>", methods=["GET"])
    @jwt_required()
    def stripe_get_checkout_session(session_id: str):
        order_document = db.orders.find_one({"payment.sessionId": session_id})
        if not order_document:
            return error_response("Order not found for this session", 404)
        if not can_view_order(order_document, current_principal()):
            return error_response("Access denied: You can only view your own orders", 403)

        try:
            session = retrieve_checkout_session(
                session_id, api_key=app.config["STRIPE_SECRET_KEY"]
            )
        except stripe.StripeError as exc:
            app.logger.error("Unable to retrieve Stripe session %s: %s", session_id, exc)
            return error_response("Failed to retrieve checkout session", 502)

        return jsonify(
            {
                "success": True,
                "session": {
                    "id": session.id,
                    "paymentStatus": session.payment_status,
                    "amountTotal": session.amount_total,
                    "currency": session.currency,
                    "customerEmail": session.customer_email,
                },
                "order": serialize_order(order_document),
            }
        )

    @app.route("/api/stripe/webhook", methods=["POST"])
    def stripe_webhook():
        payload = request.get_data()
        signature = request.headers.get("Stripe-Signature", "")
        try:
            construct_webhook_event(payload, signature, app.config["STRIPE_WEBHOOK_SECRETS"])
        except stripe.SignatureVerificationError as exc:
            app.logger.warning("Stripe webhook signature failure: %s", exc)
            return error_response(f"Webhook Error: {exc}", 400)

        try:
            event = json.loads(payload)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            return error_response("Webhook Error: payload is not a JSON object", 400)
        event_type = event.get("type")
        data_object = (event.get("data") or {}).get("object") or {}

        if event_type == CHECKOUT_COMPLETED:
            order_document, changed = apply_checkout_completed(db, data_object)
            if order_document is None:
                app.logger.warning(
                    "Stripe webhook: no order for session %s", data_object.get("id")
                )
            elif changed:
                app.logger.info(
                    "Order %s confirmed by Stripe session %s",
                    order_document.get("orderNumber"),
                    data_object.get("id"),
                )
                notify_order_confirmed(order_document)
            else:
                app.logger.info(
                    "Stripe webhook: order %s already processed",
                    order_document.get("orderNumber"),
                )
        elif event_type == CHECKOUT_EXPIRED:
            order_document, changed = apply_checkout_expired(db, data_object)
            if changed:
                app.logger.info(
                    "Order %s cancelled: Stripe session %s expired",
                    order_document.get("orderNumber"),
                    data_object.get("id"),
                )
        elif event_type == PAYMENT_INTENT_SUCCEEDED:
            apply_payment_succeeded(db, data_object)
        elif event_type == PAYMENT_INTENT_FAILED:
            order_document = apply_payment_failed(db, data_object)
            if order_document:
                app.logger.info(
                    "Payment attempt failed for order %s: %s",
                    order_document.get("orderNumber"),
                    (order_document.get("payment") or {}).get("failureReason"),
                )
        else:
            app.logger.info("Unhandled Stripe event type: %s", event_type)

        return jsonify({"received": True})

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
