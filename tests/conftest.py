"""Shared fixtures: an isolated storefront per test on a temp SQLite file.

External collaborators (SMTP, task tracker) are replaced with recording
fakes; the catalog is the real JSON-file repository seeded under tmp_path.
"""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from storefront.app import create_app
from storefront.common.config import SmtpConfig
from storefront.common.services.catalog_service import CatalogError, JsonCatalogRepository
from storefront.common.services.fulfillment_service import FulfillmentService
from storefront.common.services.mail_service import EmailStatus
from storefront.common.services.order_service import OrderStore
from storefront.config import GatewayConfig, StorefrontConfig

GATEWAY_IP = "185.240.29.227"
ENCRYPTION_KEY = "test-encryption-key"

PRODUCTS = [
    {"id": "bpc-157", "slug": "bpc-157", "name": "BPC-157 10mg", "price": 70.99, "stock": 20},
    {"id": "tb-500", "slug": "tb-500", "name": "TB-500 5mg", "price": 100.00, "stock": 50},
    {"id": "ghk-cu", "slug": "ghk-cu", "name": "GHK-Cu 50mg", "price": 50.00, "stock": 6},
    {"id": "draft-1", "slug": "draft-peptide", "name": "Draft Peptide", "price": 10.00, "stock": 10, "status": "draft"},
]

PROMO_CODES = [
    {"code": "SAVE10", "discount": 10, "active": True},
    {"code": "OLD20", "discount": 20, "active": False},
]


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMailer:
    """Stands in for Mailer; records every send and its SMTP category config."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, email, config):
        self.sent.append((email, config))
        if config is None:
            return EmailStatus.skipped_unconfigured()
        if self.fail:
            return EmailStatus(sent=False, error="connection refused")
        return EmailStatus(sent=True)

    def subjects(self):
        return [email.subject for email, _ in self.sent]


class RecordingTasks:
    def __init__(self):
        self.order_tasks = []
        self.stock_alerts = []

    def create_order_task(self, order):
        self.order_tasks.append(order["orderNumber"])
        return {"id": f"task-{order['orderNumber']}"}

    def create_stock_alert_task(self, items, threshold):
        self.stock_alerts.append([p.id for p in items])
        return {"id": "task-stock"}


class FlakyCatalog(JsonCatalogRepository):
    """JSON catalog whose reads and writes can be switched to fail or stall."""

    fail_writes = False
    fail_reads = False
    read_delay = 0.0

    def read_products(self):
        if self.fail_reads:
            raise CatalogError("Catalog request timed out: GET /products")
        if self.read_delay:
            time.sleep(self.read_delay)
        return super().read_products()

    def write_products(self, products):
        if self.fail_writes:
            raise CatalogError("Catalog request failed: PUT /products: 503")
        super().write_products(products)


def smtp_config(label):
    return SmtpConfig(
        host="smtp.test",
        port=587,
        user="mailer",
        password="secret",
        from_address=f"{label} <{label.lower()}@puretide.ca>",
        secure=False,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config(tmp_path):
    return StorefrontConfig(
        secret_key="test",
        database_url=f"sqlite:///{tmp_path / 'orders.sqlite'}",
        data_dir=tmp_path,
        dashboard_secret="dashboard-secret",
        orders_api_key="orders-api-key",
        gateway=GatewayConfig(
            site_id="4321",
            encryption_key=ENCRYPTION_KEY,
            postback_url="https://shop.test/api/gateway/postback",
            tcomplete_base="https://shop.test/",
            allowed_ips=(GATEWAY_IP,),
        ),
        smtp={
            "ORDER": smtp_config("Orders"),
            "CONTACT": smtp_config("Contact"),
            "LOW_STOCK": smtp_config("Alerts"),
        },
    )


@pytest.fixture
def catalog(config):
    repo = FlakyCatalog(config.catalog_dir)
    (config.catalog_dir / "products.json").write_text(json.dumps(PRODUCTS), encoding="utf-8")
    (config.catalog_dir / "promo_codes.json").write_text(json.dumps(PROMO_CODES), encoding="utf-8")
    return repo


@pytest.fixture
def store(config):
    order_store = OrderStore(config.database_url, config.legacy_orders_file)
    yield order_store
    order_store.close()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def tasks():
    return RecordingTasks()


@pytest.fixture
def fulfillment(store, catalog, mailer, tasks, config, clock):
    return FulfillmentService(store, catalog, mailer, tasks, config, clock=clock)


@pytest.fixture
def app(config, store, catalog, mailer, tasks):
    flask_app = create_app(
        config,
        components={"order_store": store, "catalog": catalog, "mailer": mailer, "tasks": tasks},
    )
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def customer(**overrides):
    data = {
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "phone": "416-555-0101",
        "address": "1 King St W",
        "city": "Toronto",
        "province": "ON",
        "zipCode": "M5V 2T6",
        "country": "CA",
    }
    data.update(overrides)
    return data


def checkout_payload(cart, total, payment_method="etransfer", **extra):
    payload = {
        "customer": customer(),
        "cartItems": [{"id": ref, "name": ref, "quantity": qty} for ref, qty in cart],
        "paymentMethod": payment_method,
        "shippingMethod": "express",
        "total": total,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def make_payload():
    return checkout_payload
