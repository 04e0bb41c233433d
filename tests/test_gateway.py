import base64
import hashlib
import hmac
import json
from decimal import Decimal
from urllib.parse import parse_qs, unquote, urlsplit

import pytest

from storefront.common.services.gateway_service import (
    CODE_BAD_REQUEST,
    CODE_BAD_SIGNATURE,
    CODE_UNAUTHORIZED_IP,
    GATEWAY_BASE_URL,
    PBKDF2_ITERATIONS,
    GatewayError,
    PaymentParams,
    PostbackVerifier,
    amounts_match,
    build_payment_query,
    build_payment_redirect_url,
    decrypt,
    encrypt,
    escape_xml,
    is_approved,
    parse_amount,
    parse_postback_body,
    xml_response,
)

KEY = "gateway-key"
BODY = b'{"session":"abc123","status":"approved","amount":"105.99"}'


def params(**overrides):
    values = dict(
        site_id="4321",
        charge_amount=Decimal("105.9"),
        order_description="  Order #abc123  ",
        session="abc123",
        pburl="https://shop.test/api/gateway/postback",
        tcomplete="https://shop.test/order-confirmation?orderNumber=abc123",
        first_name="Jane",
        email="jane@example.com",
        zip="M5V 2T6",
        country="ca",
    )
    values.update(overrides)
    return PaymentParams(**values)


class TestEncryption:
    def test_round_trip(self):
        token = encrypt("https://example.test/?a=1&b=two", KEY)
        assert decrypt(token, KEY) == "https://example.test/?a=1&b=two"

    def test_envelope_shape(self):
        envelope = json.loads(base64.b64decode(encrypt("payload", KEY)))
        assert set(envelope) == {"ciphertext", "iv", "salt", "iterations"}
        assert envelope["iterations"] == PBKDF2_ITERATIONS
        assert len(bytes.fromhex(envelope["iv"])) == 16
        assert len(bytes.fromhex(envelope["salt"])) == 256

    def test_fresh_salt_and_iv_each_call(self):
        assert encrypt("payload", KEY) != encrypt("payload", KEY)

    def test_missing_key(self):
        with pytest.raises(ValueError):
            encrypt("payload", "")


class TestPaymentUrl:
    def test_query_fields(self):
        query = parse_qs(build_payment_query(params()))
        assert query["site_id"] == ["4321"]
        assert query["charge_amount"] == ["105.90"]
        assert query["type"] == ["purchase"]
        assert query["order_description"] == ["Order #abc123"]
        assert query["encrypt"] == ["1"]
        assert query["shipped"] == ["1"]
        assert query["zip"] == ["M5V2T6"]
        assert query["country"] == ["CA"]
        assert "last_name" not in query

    def test_description_truncated(self):
        query = parse_qs(build_payment_query(params(order_description="x" * 300)))
        assert len(query["order_description"][0]) == 255

    def test_redirect_wraps_encrypted_url(self):
        url = build_payment_redirect_url(params(), KEY)
        assert url.startswith(f"{GATEWAY_BASE_URL}?param=")
        token = unquote(url.split("param=", 1)[1])
        inner = urlsplit(decrypt(token, KEY))
        assert f"{inner.scheme}://{inner.netloc}{inner.path}" == GATEWAY_BASE_URL
        assert parse_qs(inner.query)["session"] == ["abc123"]


class TestVerifier:
    def sign(self, secret, body=BODY):
        return hmac.new(secret.encode(), body, hashlib.sha256).digest()

    def test_rejects_unlisted_ip(self):
        verifier = PostbackVerifier(["185.240.29.227"])
        with pytest.raises(GatewayError) as exc:
            verifier.verify(BODY, {}, "10.0.0.1")
        assert exc.value.code == CODE_UNAUTHORIZED_IP

    def test_no_secret_skips_signature(self):
        verifier = PostbackVerifier(["185.240.29.227"])
        assert verifier.verify(BODY, {}, "185.240.29.227")["session"] == "abc123"

    @pytest.mark.parametrize("encode", ["hex", "b64", "prefixed"])
    def test_accepts_signature_encodings(self, encode):
        digest = self.sign("s3cret")
        value = {
            "hex": digest.hex(),
            "b64": base64.b64encode(digest).decode(),
            "prefixed": f"sha256={digest.hex()}",
        }[encode]
        verifier = PostbackVerifier(["185.240.29.227"], "s3cret")
        data = verifier.verify(BODY, {"X-Signature": value}, "185.240.29.227")
        assert data["status"] == "approved"

    def test_rejects_missing_or_wrong_signature(self):
        verifier = PostbackVerifier(["185.240.29.227"], "s3cret")
        with pytest.raises(GatewayError) as missing:
            verifier.verify(BODY, {}, "185.240.29.227")
        assert missing.value.code == CODE_BAD_SIGNATURE

        wrong = self.sign("other").hex()
        with pytest.raises(GatewayError) as invalid:
            verifier.verify(BODY, {"X-Digipay-Signature": wrong}, "185.240.29.227")
        assert invalid.value.code == CODE_BAD_SIGNATURE

    def test_ip_checked_before_signature(self):
        verifier = PostbackVerifier(["185.240.29.227"], "s3cret")
        with pytest.raises(GatewayError) as exc:
            verifier.verify(BODY, {"X-Signature": self.sign("s3cret").hex()}, "10.0.0.1")
        assert exc.value.code == CODE_UNAUTHORIZED_IP

    def test_empty_body(self):
        verifier = PostbackVerifier(["185.240.29.227"])
        with pytest.raises(GatewayError) as exc:
            verifier.verify(b"  ", {}, "185.240.29.227")
        assert exc.value.code == CODE_BAD_REQUEST


class TestBodyParsing:
    def test_json(self):
        assert parse_postback_body(BODY)["amount"] == "105.99"

    def test_json_embedded_in_form_key(self):
        body = b'{"session":"abc123","status":"approved"}='
        assert parse_postback_body(body)["session"] == "abc123"

    def test_json_embedded_in_form_value(self):
        body = b"payload=%7B%22session%22%3A%22abc123%22%7D"
        assert parse_postback_body(body) == {"session": "abc123"}

    def test_flat_form(self):
        body = b"session=abc123&status=approved&amount=105_99"
        assert parse_postback_body(body) == {"session": "abc123", "status": "approved", "amount": "105_99"}

    def test_unparseable(self):
        assert "session" not in parse_postback_body(b"{not json")
        assert parse_postback_body(b"") == {}


@pytest.mark.parametrize(
    "value, expected",
    [("105.99", Decimal("105.99")), ("105_99", Decimal("105.99")), (105.5, Decimal("105.5")), ("abc", None), ("", None), (None, None), ("NaN", None)],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_amounts_match_within_a_cent():
    assert amounts_match(Decimal("105.99"), Decimal("106.00"))
    assert not amounts_match(Decimal("105.97"), Decimal("105.99"))


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"status": "Approved"}, True),
        ({"result": "success"}, True),
        ({"status": "completed"}, True),
        ({"status": "declined"}, False),
        ({}, False),
    ],
)
def test_is_approved(data, expected):
    assert is_approved(data) is expected


def test_escape_xml():
    assert escape_xml("""<a href="x">Tom & Jerry's</a>""") == (
        "&lt;a href=&quot;x&quot;&gt;Tom &amp; Jerry&apos;s&lt;/a&gt;"
    )


def test_xml_envelopes():
    assert xml_response(True, 100, "Purchase successfully processed", "abc123") == (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<rsp stat="ok" version="1.0">\n'
        '<message id="100">Purchase successfully processed</message>\n'
        "<receipt>abc123</receipt>\n"
        "</rsp>"
    )
    assert xml_response(False, 102, "Invalid session variable: '<x>'") == (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<rsp stat="fail" version="1.0">\n'
        "<error id=\"102\">Invalid session variable: &apos;&lt;x&gt;&apos;</error>\n"
        "</rsp>"
    )
