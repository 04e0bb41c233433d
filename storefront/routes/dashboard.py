"""Internal dashboard API behind a signed session cookie."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.services.catalog_service import CatalogError, validate_promo_items, validate_stock_items
from ..services.dashboard_auth import COOKIE_NAME, MAX_AGE_SECONDS

logger = logging.getLogger(__name__)

dashboard_bp = Blueprint("storefront_dashboard", __name__, url_prefix="/api/dashboard")

PUBLIC_ENDPOINTS = {
    "storefront_dashboard.create_session",
    "storefront_dashboard.sign_out",
}


def _components() -> Dict[str, Any]:
    return current_app.extensions["storefront_components"]


def _catalog_error(action: str):
    logger.exception("Dashboard catalog %s failed", action)
    return jsonify({"ok": False, "error": f"Failed to {action}."}), 500


@dashboard_bp.before_request
def require_session():
    if request.endpoint in PUBLIC_ENDPOINTS:
        return None
    if not _components()["dashboard_auth"].verify(request.cookies.get(COOKIE_NAME)):
        return jsonify({"ok": False, "error": "Unauthorized."}), 401
    return None


@dashboard_bp.post("/session")
def create_session():
    auth = _components()["dashboard_auth"]
    if not auth.is_configured:
        return (
            jsonify({"ok": False, "error": "Dashboard is not configured. Set DASHBOARD_SECRET in the environment to enable."}),
            503,
        )
    payload = request.get_json(silent=True) or {}
    secret = payload.get("secret") if isinstance(payload, dict) else None
    if not isinstance(secret, str) or not secret.strip():
        return jsonify({"ok": False, "error": "Missing secret."}), 400
    if not auth.check_secret(secret):
        return jsonify({"ok": False, "error": "Invalid secret."}), 401
    response = jsonify({"ok": True})
    response.set_cookie(
        COOKIE_NAME,
        auth.issue(),
        max_age=MAX_AGE_SECONDS,
        path="/",
        httponly=True,
        samesite="Strict",
        secure=request.is_secure,
    )
    return response


@dashboard_bp.post("/signout")
def sign_out():
    response = jsonify({"ok": True})
    response.delete_cookie(COOKIE_NAME, path="/", httponly=True, samesite="Strict")
    return response


@dashboard_bp.get("/orders")
def list_orders():
    return jsonify({"ok": True, "orders": _components()["order_store"].list_orders()})


@dashboard_bp.get("/stock")
def read_stock():
    try:
        products = _components()["catalog"].read_products()
    except CatalogError:
        return _catalog_error("read stock")
    return jsonify({"ok": True, "products": [p.to_dict() for p in products]})


@dashboard_bp.post("/stock")
def write_stock():
    payload = request.get_json(silent=True) or {}
    try:
        products = validate_stock_items(payload.get("items") if isinstance(payload, dict) else None)
    except ValueError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    try:
        _components()["catalog"].write_products(products)
    except CatalogError:
        return _catalog_error("update stock")
    return jsonify({"ok": True, "count": len(products)})


@dashboard_bp.post("/stock/alert")
def send_stock_alert():
    components = _components()
    try:
        products = components["catalog"].read_products()
    except CatalogError:
        return _catalog_error("read stock")
    threshold = current_app.config["STOREFRONT_CONFIG"].low_stock_threshold
    low_stock = [p for p in products if p.stock <= threshold]
    count = components["fulfillment"].notify_low_stock(low_stock, force=True)
    return jsonify({"ok": True, "count": count})


@dashboard_bp.get("/promo")
def read_promo_codes():
    try:
        codes = _components()["catalog"].read_promo_codes()
    except CatalogError:
        return _catalog_error("read promo codes")
    return jsonify({"ok": True, "codes": [asdict(c) for c in codes]})


@dashboard_bp.post("/promo")
def write_promo_codes():
    payload = request.get_json(silent=True) or {}
    try:
        codes = validate_promo_items(payload.get("codes") if isinstance(payload, dict) else None)
    except ValueError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    try:
        _components()["catalog"].write_promo_codes(codes)
    except CatalogError:
        return _catalog_error("update promo codes")
    return jsonify({"ok": True, "count": len(codes)})


@dashboard_bp.get("/clients")
def read_clients():
    try:
        clients = _components()["catalog"].read_clients()
    except CatalogError:
        return _catalog_error("read clients")
    return jsonify({"ok": True, "clients": [asdict(c) for c in clients]})
