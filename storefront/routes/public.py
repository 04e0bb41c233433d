"""Public endpoints outside checkout: promo lookup, contact form, health."""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.services.catalog_service import CatalogError, find_promo
from ..common.services.mail_service import OutgoingEmail
from ..common.services.order_email import build_contact_email
from ..common.services.validation import EMAIL_RE
from ..services.rate_limiter import CONTACT_LIMIT, PROMO_VERIFY_LIMIT

logger = logging.getLogger(__name__)

public_bp = Blueprint("storefront_public", __name__, url_prefix="/api")

TOO_MANY = "Too many requests. Please try again later."


def _components() -> Dict[str, Any]:
    return current_app.extensions["storefront_components"]


def _config():
    return current_app.config["STOREFRONT_CONFIG"]


def _allowed(scope: str, limit: int) -> bool:
    return _components()["rate_limiter"].check(scope, request.remote_addr or "", limit).allowed


@public_bp.get("/health")
def health():
    return jsonify({"ok": True})


@public_bp.post("/promo/verify")
def verify_promo():
    if not _allowed("promo-verify", PROMO_VERIFY_LIMIT):
        return jsonify({"ok": False, "error": TOO_MANY}), 429
    payload = request.get_json(silent=True) or {}
    code = payload.get("code") if isinstance(payload, dict) else None
    if not isinstance(code, str) or not code.strip():
        return jsonify({"ok": False, "error": "Code is required"}), 400
    try:
        promo = find_promo(_components()["catalog"].read_promo_codes(), code)
    except CatalogError:
        logger.exception("Promo code lookup failed")
        return jsonify({"ok": False, "error": "Unable to verify promo code. Please try again later."}), 500
    if promo is None:
        return jsonify({"ok": False, "error": "Invalid or expired promo code"}), 404
    return jsonify({"ok": True, "discount": promo.discount})


@public_bp.post("/contact")
def contact():
    if not _allowed("contact", CONTACT_LIMIT):
        return jsonify({"ok": False, "error": TOO_MANY}), 429
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"ok": False, "error": "Invalid request."}), 400
    honeypot = payload.get("company")
    if isinstance(honeypot, str) and honeypot.strip():
        return jsonify({"ok": False, "error": "Invalid request."}), 400

    fields = {k: payload.get(k) for k in ("name", "email", "message")}
    name, email, message = (v.strip() if isinstance(v, str) else "" for v in fields.values())
    if not name or not email or not message:
        return jsonify({"ok": False, "error": "Missing required fields."}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"ok": False, "error": "Invalid email address."}), 400

    config = _config()
    smtp = config.smtp_for("CONTACT")
    if smtp is None:
        return jsonify({"ok": False, "error": "Email service is not configured."}), 500
    content = build_contact_email(name, email, message)
    recipients = ", ".join(dict.fromkeys([config.contact_email, config.order_notification_email]))
    status = _components()["mailer"].send(
        OutgoingEmail(to=recipients, subject=content.subject, text=content.text, reply_to=f"{name} <{email}>"),
        smtp,
    )
    if not status.sent:
        return jsonify({"ok": False, "error": "Failed to send message."}), 500
    return jsonify({"ok": True})
