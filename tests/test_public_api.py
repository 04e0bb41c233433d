from storefront.app import build_components
from storefront.common.services.catalog_service import PromoCode
from storefront.common.services.checkout_service import CheckoutService
from storefront.common.services.mail_service import Mailer


def test_health(client):
    assert client.get("/api/health").get_json() == {"ok": True}


class TestPromoVerify:
    def test_valid_code_is_case_insensitive(self, client):
        response = client.post("/api/promo/verify", json={"code": " save10 "})
        assert response.get_json() == {"ok": True, "discount": 10.0}

    def test_inactive_or_unknown(self, client):
        for code in ("OLD20", "NOPE"):
            response = client.post("/api/promo/verify", json={"code": code})
            assert response.status_code == 404
            assert response.get_json()["error"] == "Invalid or expired promo code"

    def test_zero_discount_code_is_rejected(self, client, catalog):
        catalog.write_promo_codes(catalog.read_promo_codes() + [PromoCode(code="FREE0", discount=0.0)])
        assert client.post("/api/promo/verify", json={"code": "FREE0"}).status_code == 404

    def test_code_required(self, client):
        assert client.post("/api/promo/verify", json={}).status_code == 400

    def test_rate_limited(self, client):
        headers = {"X-Forwarded-For": "203.0.113.20"}
        codes = [client.post("/api/promo/verify", json={"code": "NOPE"}, headers=headers).status_code for _ in range(21)]
        assert codes[-1] == 429
        assert 429 not in codes[:-1]


class TestContact:
    MESSAGE = {"name": "Sam Lee", "email": "sam@example.com", "message": "Do you ship to PEI?"}

    def test_sends_to_both_inboxes(self, client, mailer, config):
        response = client.post("/api/contact", json=self.MESSAGE)
        assert response.get_json() == {"ok": True}

        email, smtp = mailer.sent[0]
        assert smtp is config.smtp_for("CONTACT")
        assert email.to == "info@puretide.ca, orders@puretide.ca"
        assert email.reply_to == "Sam Lee <sam@example.com>"
        assert email.subject == "New contact message from Sam Lee"
        assert "Do you ship to PEI?" in email.text

    def test_validation(self, client, mailer):
        missing = client.post("/api/contact", json={**self.MESSAGE, "message": "  "})
        assert missing.get_json()["error"] == "Missing required fields."
        bad_email = client.post("/api/contact", json={**self.MESSAGE, "email": "sam"})
        assert bad_email.get_json()["error"] == "Invalid email address."
        bot = client.post("/api/contact", json={**self.MESSAGE, "company": "Spam Co"})
        assert bot.status_code == 400
        assert mailer.sent == []

    def test_unconfigured_smtp(self, client, config):
        config.smtp["CONTACT"] = None
        response = client.post("/api/contact", json=self.MESSAGE)
        assert response.status_code == 500
        assert response.get_json()["error"] == "Email service is not configured."

    def test_send_failure(self, client, mailer):
        mailer.fail = True
        response = client.post("/api/contact", json=self.MESSAGE)
        assert response.status_code == 500
        assert response.get_json()["error"] == "Failed to send message."

    def test_rate_limited(self, client):
        headers = {"X-Forwarded-For": "203.0.113.30"}
        codes = [client.post("/api/contact", json={}, headers=headers).status_code for _ in range(6)]
        assert codes == [400] * 5 + [429]


def test_build_components_wires_defaults(config, store, catalog):
    components = build_components(config, {"order_store": store, "catalog": catalog})
    assert isinstance(components["mailer"], Mailer)
    assert isinstance(components["checkout"], CheckoutService)
    assert components["fulfillment"] is not None


def test_cli_check_env_reports_missing(app, monkeypatch):
    for key in ("DIGIPAY_SITE_ID", "SMTP_HOST", "CATALOG_SERVICE_URL"):
        monkeypatch.delenv(key, raising=False)
    result = app.test_cli_runner().invoke(args=["check-env"])
    assert result.exit_code == 1
    assert "SMTP_HOST is missing" in result.output


def test_cli_retry_sweep(app):
    result = app.test_cli_runner().invoke(args=["retry-sweep"])
    assert result.exit_code == 0
    assert '"processed": 0' in result.output
