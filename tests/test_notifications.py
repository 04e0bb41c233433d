import smtplib

import pytest

from storefront.common.config import SmtpConfig, resolve_smtp_configs, validate_env
from storefront.common.services import mail_service
from storefront.common.services.catalog_service import Product
from storefront.common.services.mail_service import Mailer, OutgoingEmail, build_message, format_from
from storefront.common.services.order_email import (
    build_contact_email,
    build_low_stock_alert,
    build_order_emails,
    format_date,
    format_money,
)

ORDER = {
    "id": "order_abc123",
    "orderNumber": "abc123",
    "createdAt": "2026-10-18T14:30:00.000Z",
    "paymentMethod": "etransfer",
    "customer": {
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "address": "1 King St W",
        "city": "Toronto",
        "province": "ON",
        "zipCode": "M5V 2T6",
        "country": "CA",
        "orderNotes": "Leave at <door>",
    },
    "shippingMethod": "express",
    "shippingCost": 35.0,
    "subtotal": 200.0,
    "discountAmount": 20.0,
    "promoCode": "SAVE10",
    "cardFee": 0.0,
    "total": 215.0,
    "cartItems": [{"productRef": "tb-500", "name": "TB-500 5mg", "price": 100.0, "quantity": 2}],
}

SMTP = SmtpConfig(
    host="smtp.test",
    port=465,
    user="mailer",
    password="secret",
    from_address="Pure Tide <orders@puretide.ca>",
    secure=True,
    reply_to="support@puretide.ca",
    bcc="archive@puretide.ca",
)


def test_format_helpers():
    assert format_money(1234.5) == "$1,234.50"
    assert format_money("0") == "$0.00"
    assert format_date("2026-10-18T14:30:00.000Z") == "October 18, 2026"
    assert format_date("not a date") == "not a date"


class TestOrderEmails:
    def test_etransfer_subjects_and_instructions(self):
        emails = build_order_emails(ORDER, "Pure Tide")
        assert emails.customer.subject == "Order #abc123 - Interac e-Transfer instructions"
        assert emails.admin.subject == "New order #abc123"
        assert "Recipient Email: orders@puretide.ca" in emails.customer.text
        assert "Discount (SAVE10): -$20.00" in emails.customer.text
        assert "- TB-500 5mg x2 ($200.00)" in emails.customer.text
        assert "Total: $215.00" in emails.admin.text

    def test_card_confirmation_has_fee_and_no_instructions(self):
        card = {**ORDER, "paymentMethod": "creditcard", "cardFee": 9.0, "total": 224.0}
        emails = build_order_emails(card)
        assert emails.customer.subject == "Order #abc123 - Order confirmation"
        assert "Card processing fee: $9.00" in emails.customer.text
        assert "Interac e-Transfer Instructions" not in emails.customer.text

    def test_html_is_escaped(self):
        emails = build_order_emails(ORDER)
        assert "Leave at &lt;door&gt;" in emails.admin.html
        assert "Leave at <door>" in emails.admin.text

    def test_low_stock_and_contact(self):
        alert = build_low_stock_alert([Product(id="x", slug="ghk-cu", name="GHK-Cu", price=1, stock=3)], 5)
        assert alert.subject == "Low stock alert"
        assert "GHK-Cu (ghk-cu): 3" in alert.text

        contact = build_contact_email("Sam", "sam@example.com", "Hello there")
        assert contact.subject == "New contact message from Sam"
        assert "Email: sam@example.com" in contact.text


class TestMessages:
    def test_defaults_come_from_config(self):
        message = build_message(OutgoingEmail(to="a@example.com", subject="Hi", text="Body"), SMTP)
        assert message["From"] == "Pure Tide <orders@puretide.ca>"
        assert message["Reply-To"] == "support@puretide.ca"
        assert message["Bcc"] == "archive@puretide.ca"

    def test_empty_bcc_disables_config_bcc(self):
        email = OutgoingEmail(to="a@example.com", subject="Hi", text="Body", html="<p>Body</p>", bcc="")
        message = build_message(email, SMTP)
        assert message["Bcc"] is None
        assert message.is_multipart()

    def test_format_from_replaces_display_name(self):
        assert format_from("Pure Tide <orders@puretide.ca>", "Pure Tide Order Confirmation") == (
            "Pure Tide Order Confirmation <orders@puretide.ca>"
        )
        assert format_from("orders@puretide.ca", "Store") == "Store <orders@puretide.ca>"


class TestMailer:
    def test_unconfigured_is_skipped(self):
        status = Mailer().send(OutgoingEmail(to="a@example.com", subject="Hi", text="Body"), None)
        assert status.to_dict() == {"sent": False, "skipped": True, "error": "SMTP not configured"}

    def test_transport_error_is_reported(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "busy")

        monkeypatch.setattr(mail_service.smtplib, "SMTP_SSL", refuse)
        status = Mailer().send(OutgoingEmail(to="a@example.com", subject="Hi", text="Body"), SMTP)
        assert status.sent is False
        assert "busy" in status.error

    def test_sends_over_ssl(self, monkeypatch):
        delivered = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None, context=None):
                self.host, self.port = host, port

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def login(self, user, password):
                delivered.append(("login", user))

            def send_message(self, message):
                delivered.append(("send", message["To"]))

        monkeypatch.setattr(mail_service.smtplib, "SMTP_SSL", FakeSMTP)
        status = Mailer().send(OutgoingEmail(to="a@example.com", subject="Hi", text="Body"), SMTP)
        assert status.sent is True
        assert delivered == [("login", "mailer"), ("send", "a@example.com")]


class TestSmtpResolution:
    BASE = {
        "SMTP_HOST": "smtp.test",
        "SMTP_PORT": "587",
        "SMTP_USER": "mailer",
        "SMTP_PASS": "secret",
        "SMTP_FROM": "Pure Tide <info@puretide.ca>",
    }

    def test_generic_settings(self):
        config = SmtpConfig.resolve("CONTACT", self.BASE)
        assert config.host == "smtp.test"
        assert config.port == 587
        assert config.secure is False

    def test_category_overrides_win(self):
        env = {**self.BASE, "ORDER_SMTP_HOST": "orders.smtp.test", "ORDER_FROM": "orders@puretide.ca", "ORDER_SMTP_SECURE": "true"}
        config = SmtpConfig.resolve("ORDER", env)
        assert config.host == "orders.smtp.test"
        assert config.from_address == "orders@puretide.ca"
        assert config.secure is True
        assert SmtpConfig.resolve("CONTACT", env).host == "smtp.test"

    @pytest.mark.parametrize("missing", ["SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_FROM"])
    def test_incomplete_settings_resolve_to_none(self, missing):
        env = {k: v for k, v in self.BASE.items() if k != missing}
        assert SmtpConfig.resolve("ORDER", env) is None

    def test_resolves_every_category(self):
        assert set(resolve_smtp_configs(self.BASE)) == {"ORDER", "CONTACT", "LOW_STOCK"}

    def test_validate_env_lists_missing_keys(self):
        errors = validate_env({"DIGIPAY_SITE_ID": "1"})
        assert not any(e.startswith("DIGIPAY_SITE_ID") for e in errors)
        assert any(e.startswith("SMTP_HOST is missing") for e in errors)
