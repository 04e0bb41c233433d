"""Checkout endpoints: e-transfer order placement and card payment creation."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.services.errors import CheckoutError, RateLimited
from ..common.services.validation import CheckoutRequest
from ..services.idempotency import resolve_key
from ..services.rate_limiter import CHECKOUT_LIMIT

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("storefront_checkout", __name__, url_prefix="/api")

GENERIC_ERROR = "Something went wrong. Please try again."


def _components() -> Dict[str, Any]:
    return current_app.extensions["storefront_components"]


def _guard_rate() -> None:
    decision = _components()["rate_limiter"].check("checkout", request.remote_addr or "", CHECKOUT_LIMIT)
    if not decision.allowed:
        raise RateLimited()


def _submit(operation: str):
    try:
        _guard_rate()
        payload = request.get_json(silent=True)
        req = CheckoutRequest.from_payload(payload)
        key = resolve_key(request.headers, payload)
        checkout = _components()["checkout"]
        if operation == "etransfer":
            result = checkout.place_etransfer_order(req, key)
        else:
            result = checkout.create_card_payment(req, key)
    except CheckoutError as exc:
        return jsonify({"ok": False, "error": exc.message}), exc.status
    except Exception:
        logger.exception("Unhandled error in %s checkout", operation)
        return jsonify({"ok": False, "error": GENERIC_ERROR}), 500
    return jsonify({"ok": True, **result})


@checkout_bp.post("/orders")
def place_order():
    return _submit("etransfer")


@checkout_bp.post("/gateway/create")
def create_card_payment():
    return _submit("card")


@checkout_bp.get("/orders")
def list_orders():
    """Machine access to the order list with ``X-API-Key`` or a bearer token."""
    expected = current_app.config["STOREFRONT_CONFIG"].orders_api_key
    provided = request.headers.get("X-API-Key") or ""
    if not provided:
        auth = request.headers.get("Authorization") or ""
        if auth.lower().startswith("bearer "):
            provided = auth[7:].strip()
    if not expected or not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        return jsonify({"ok": False, "error": "Unauthorized."}), 401
    return jsonify({"ok": True, "orders": _components()["order_store"].list_orders()})
