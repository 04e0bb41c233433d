"""Hosted card gateway: encrypted redirect URLs and postback verification.

Outbound, the full payment-page URL is encrypted with AES-256-CBC under a
PBKDF2-SHA512 key and passed as a single ``param`` value. Inbound, a postback
passes three gates in order (source IP, optional HMAC, body parse) before
the checkout layer looks at its fields. The gateway expects every answer as
HTTP 200 with a small ``<rsp>`` XML envelope.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Sequence
from urllib.parse import parse_qsl, quote, urlencode

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .logging import log_event

logger = logging.getLogger(__name__)

GATEWAY_BASE_URL = "https://secure.digipay.co/order/creditcard/cc_form_enc.php"

# fixed by the gateway's integration contract
PBKDF2_ITERATIONS = 999
IV_LENGTH = 16
SALT_LENGTH = 256
KEY_LENGTH = 32

SIGNATURE_HEADERS = ("X-Digipay-Signature", "X-Signature", "Digipay-Signature")
APPROVED_STATUSES = {"approved", "success", "completed"}
AMOUNT_TOLERANCE = Decimal("0.01")

CODE_OK = 100
CODE_UNAUTHORIZED_IP = 101
CODE_BAD_REQUEST = 102
CODE_BAD_SIGNATURE = 103
CODE_PROCESSING_FAILED = 104
CODE_NOT_APPROVED = 105


class GatewayError(Exception):
    """A postback failed verification; ``code`` is the envelope error id."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA512(), length=KEY_LENGTH, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(password.encode("utf-8"))


def encrypt(plaintext: str, encryption_key: str) -> str:
    """Encrypt with a fresh salt and IV; returns base64 of the JSON envelope."""
    if not encryption_key:
        raise ValueError("Gateway encryption key is missing")
    iv = os.urandom(IV_LENGTH)
    salt = os.urandom(SALT_LENGTH)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_derive_key(encryption_key, salt)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    envelope = {
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        "iv": iv.hex(),
        "salt": salt.hex(),
        "iterations": PBKDF2_ITERATIONS,
    }
    return base64.b64encode(json.dumps(envelope, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decrypt(token: str, encryption_key: str) -> str:
    """Inverse of :func:`encrypt`; used for diagnostics and tests."""
    envelope = json.loads(base64.b64decode(token).decode("utf-8"))
    salt = bytes.fromhex(envelope["salt"])
    iv = bytes.fromhex(envelope["iv"])
    decryptor = Cipher(algorithms.AES(_derive_key(encryption_key, salt)), modes.CBC(iv)).decryptor()
    data = decryptor.update(base64.b64decode(envelope["ciphertext"])) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(data) + unpadder.finalize()).decode("utf-8")


@dataclass
class PaymentParams:
    site_id: str
    charge_amount: Decimal
    order_description: str
    session: str
    pburl: str
    tcomplete: str
    shipped: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


def build_payment_query(params: PaymentParams) -> str:
    query = [
        ("site_id", params.site_id),
        ("charge_amount", f"{Decimal(str(params.charge_amount)):.2f}"),
        ("type", "purchase"),
        ("order_description", params.order_description.strip()[:255]),
        ("session", params.session),
        ("encrypt", "1"),
        ("pburl", params.pburl),
        ("tcomplete", params.tcomplete),
        ("shipped", "1" if params.shipped else "0"),
    ]
    for key in ("first_name", "last_name", "email", "address", "city", "state"):
        value = getattr(params, key)
        if value:
            query.append((key, value))
    if params.zip:
        query.append(("zip", "".join(params.zip.split())))
    if params.country:
        query.append(("country", params.country.upper()[:2]))
    return urlencode(query)


def build_payment_redirect_url(params: PaymentParams, encryption_key: str) -> str:
    """Non-deterministic: every call encrypts under a new salt and IV."""
    full_url = f"{GATEWAY_BASE_URL}?{build_payment_query(params)}"
    return f"{GATEWAY_BASE_URL}?param={quote(encrypt(full_url, encryption_key), safe='')}"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


class PostbackVerifier:
    """The three inbound gates, applied in order by :meth:`verify`."""

    def __init__(self, allowed_ips: Sequence[str], hmac_secret: Optional[str] = None) -> None:
        self._allowed_ips = {ip.strip() for ip in allowed_ips if ip and ip.strip()}
        self._secret = hmac_secret or None
        self._warned_missing_secret = False

    def verify_source_ip(self, ip: str) -> None:
        if not ip or ip not in self._allowed_ips:
            log_event("warning", "gateway.postback.rejected_ip", ip=ip)
            raise GatewayError(CODE_UNAUTHORIZED_IP, f"Request from unauthorized IP: {ip}")

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self._secret:
            if not self._warned_missing_secret:
                logger.warning("Gateway postback HMAC secret not configured; skipping signature verification")
                self._warned_missing_secret = True
            return
        provided = ""
        for name in SIGNATURE_HEADERS:
            provided = (_header(headers, name) or "").strip()
            if provided:
                break
        if not provided:
            raise GatewayError(CODE_BAD_SIGNATURE, "Missing signature header")
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256="):].strip()
        digest = hmac.new(self._secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
        candidate = provided.encode("utf-8")
        for expected in (digest.hex(), base64.b64encode(digest).decode("ascii")):
            if hmac.compare_digest(candidate, expected.encode("ascii")):
                return
        raise GatewayError(CODE_BAD_SIGNATURE, "Invalid signature")

    def verify(self, raw_body: bytes, headers: Mapping[str, str], ip: str) -> Dict[str, Any]:
        self.verify_source_ip(ip)
        self.verify_signature(raw_body, headers)
        data = parse_postback_body(raw_body)
        if not data:
            raise GatewayError(CODE_BAD_REQUEST, "Invalid postback body")
        return data


def _json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_postback_body(raw_body: bytes) -> Dict[str, Any]:
    """JSON body, else a JSON object embedded in a form field, else flat form pairs."""
    text = raw_body.decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    if text.startswith("{"):
        parsed = _json_object(text)
        if parsed is not None:
            return parsed
    pairs = parse_qsl(text, keep_blank_values=True)
    for key, value in pairs:
        raw = key if key.startswith("{") else value
        if raw.startswith("{"):
            embedded = _json_object(raw)
            if embedded is not None:
                return embedded
    return {key: value for key, value in pairs}


def parse_amount(value: Any) -> Optional[Decimal]:
    """Gateway amounts may use ``_`` as the decimal separator."""
    if isinstance(value, bool) or value is None:
        return None
    text = str(value).strip().replace("_", ".", 1)
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def amounts_match(paid: Decimal, expected: Decimal) -> bool:
    return abs(paid - expected) <= AMOUNT_TOLERANCE


def is_approved(data: Mapping[str, Any]) -> bool:
    status = data.get("status")
    if status is None:
        status = data.get("result")
    return str(status or "").strip().lower() in APPROVED_STATUSES


def escape_xml(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def xml_response(ok: bool, code: int, message: str, receipt: Optional[str] = None) -> str:
    if ok:
        receipt_line = f"<receipt>{escape_xml(receipt)}</receipt>\n" if receipt else ""
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n<rsp stat="ok" version="1.0">\n'
            f'<message id="{code}">{escape_xml(message)}</message>\n{receipt_line}</rsp>'
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n<rsp stat="fail" version="1.0">\n'
        f'<error id="{code}">{escape_xml(message)}</error>\n</rsp>'
    )
