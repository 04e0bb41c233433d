"""Inbound payment gateway postback."""

from __future__ import annotations

import logging

from flask import Blueprint, Response, current_app, request

from ..common.services.gateway_service import CODE_PROCESSING_FAILED, xml_response

logger = logging.getLogger(__name__)

gateway_bp = Blueprint("storefront_gateway", __name__, url_prefix="/api/gateway")

XML_CONTENT_TYPE = "application/xml; charset=utf-8"


@gateway_bp.post("/postback")
def postback():
    """Always HTTP 200; the outcome is carried by the envelope's ``stat``."""
    handler = current_app.extensions["storefront_components"]["postback"]
    ip = request.remote_addr or ""
    try:
        body = handler.handle(request.get_data(cache=False), request.headers, ip).to_xml()
    except Exception:
        logger.exception("Unhandled error processing gateway postback from %s", ip)
        body = xml_response(False, CODE_PROCESSING_FAILED, "Internal processing error")
    return Response(body, status=200, content_type=XML_CONTENT_TYPE)
