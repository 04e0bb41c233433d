"""Storefront checkout and payment Flask application."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .common.config import validate_env
from .common.services.catalog_service import build_catalog
from .common.services.checkout_service import CheckoutService
from .common.services.fulfillment_service import FulfillmentService
from .common.services.gateway_service import PostbackVerifier
from .common.services.logging import configure_logging, log_event
from .common.services.mail_service import Mailer
from .common.services.order_service import OrderStore
from .common.services.postback_service import PostbackHandler
from .common.services.task_service import TaskTracker
from .config import StorefrontConfig
from .routes import checkout, dashboard, gateway, public
from .services import DashboardAuth, IdempotencyCache, RateLimiter

logger = logging.getLogger(__name__)


def build_components(config: StorefrontConfig, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Wire the shared collaborators; entries in ``overrides`` replace the defaults."""
    c: Dict[str, Any] = dict(overrides or {})
    if "order_store" not in c:
        c["order_store"] = OrderStore(config.database_url, config.legacy_orders_file)
    if "catalog" not in c:
        c["catalog"] = build_catalog(config)
    if "mailer" not in c:
        c["mailer"] = Mailer(config.smtp_timeout_seconds)
    if "tasks" not in c:
        c["tasks"] = TaskTracker(config.tasks)
    if "idempotency" not in c:
        c["idempotency"] = IdempotencyCache()
    if "rate_limiter" not in c:
        c["rate_limiter"] = RateLimiter()
    if "dashboard_auth" not in c:
        c["dashboard_auth"] = DashboardAuth(config.dashboard_secret)
    if "fulfillment" not in c:
        c["fulfillment"] = FulfillmentService(c["order_store"], c["catalog"], c["mailer"], c["tasks"], config)
    if "checkout" not in c:
        c["checkout"] = CheckoutService(c["order_store"], c["catalog"], c["fulfillment"], c["idempotency"], config)
    if "postback" not in c:
        verifier = PostbackVerifier(config.gateway.allowed_ips, config.gateway.hmac_secret)
        c["postback"] = PostbackHandler(verifier, c["order_store"], c["fulfillment"])
    return c


def _register_cli(app: Flask) -> None:
    @app.cli.command("retry-sweep")
    def retry_sweep():
        """Re-run fulfillment for due payment retry jobs."""
        summary = app.extensions["storefront_components"]["fulfillment"].sweep_retry_jobs()
        click.echo(json.dumps(summary))

    @app.cli.command("check-env")
    def check_env():
        """Report deployment settings that are missing."""
        errors = validate_env()
        if not errors:
            click.echo("Environment OK")
            return
        for error in errors:
            click.echo(error, err=True)
        raise SystemExit(1)


def create_app(config: Optional[StorefrontConfig] = None, components: Optional[Dict[str, Any]] = None) -> Flask:
    config = config or StorefrontConfig.load()
    configure_logging(config.log_level)

    app = Flask(__name__)
    if config.trusted_proxy_hops:
        # only the last N X-Forwarded-For entries, appended by our own proxies, are trusted
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=config.trusted_proxy_hops)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["STOREFRONT_CONFIG"] = config
    app.extensions["storefront_components"] = build_components(config, components)

    app.register_blueprint(checkout.checkout_bp)
    app.register_blueprint(gateway.gateway_bp)
    app.register_blueprint(public.public_bp)
    app.register_blueprint(dashboard.dashboard_bp)

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception("Unhandled error")
        return jsonify({"ok": False, "error": "Internal server error."}), 500

    _register_cli(app)
    log_event("info", "app.started", gateway_configured=config.gateway.is_configured)
    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=3000, debug=False)


if __name__ == "__main__":
    main()
