"""Checkout payload parsing and the fail-fast validation chain."""

import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .catalog_service import Product, find_product
from .errors import ValidationFailed
from .pricing import DEFAULT_SHIPPING_METHOD, SHIPPING_COSTS, to_decimal

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
POSTAL_RE = re.compile(r"^[A-Za-z]\d[A-Za-z]\s?\d[A-Za-z]\d$")
QUEBEC_PREFIXES = ("G", "H", "J")

MAX_LENGTH = {
    "first_name": 100,
    "last_name": 100,
    "email": 254,
    "address": 500,
    "address_line2": 200,
    "city": 100,
    "province": 100,
    "zip_code": 20,
    "order_notes": 2000,
}

POSTAL_FORMAT_ERROR = "Invalid postal code format. Please use format A1A 1A1."
QUEBEC_ERROR = "We do not ship to Quebec. Please contact us if you have questions."


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass
class Address:
    address: str = ""
    address_line2: str = ""
    city: str = ""
    province: str = ""
    zip_code: str = ""

    @classmethod
    def from_payload(cls, raw: Dict) -> "Address":
        return cls(
            address=_text(raw.get("address")),
            address_line2=_text(raw.get("addressLine2")),
            city=_text(raw.get("city")),
            province=_text(raw.get("province")),
            zip_code=_text(raw.get("zipCode")),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "address": self.address,
            "addressLine2": self.address_line2,
            "city": self.city,
            "province": self.province,
            "zipCode": self.zip_code,
        }


@dataclass
class Customer(Address):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    country: str = "CA"
    order_notes: str = ""

    @classmethod
    def from_payload(cls, raw: Dict) -> "Customer":
        base = Address.from_payload(raw)
        return cls(
            address=base.address,
            address_line2=base.address_line2,
            city=base.city,
            province=base.province,
            zip_code=base.zip_code,
            first_name=_text(raw.get("firstName")),
            last_name=_text(raw.get("lastName")),
            email=_text(raw.get("email")),
            phone=_text(raw.get("phone")),
            country=_text(raw.get("country")) or "CA",
            order_notes=_text(raw.get("orderNotes")),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, str]:
        data = super().to_dict()
        data.update(
            {
                "firstName": self.first_name,
                "lastName": self.last_name,
                "email": self.email,
                "phone": self.phone,
                "country": self.country,
                "orderNotes": self.order_notes,
            }
        )
        return data


@dataclass
class CartLine:
    ref: str
    name: str
    quantity: int


@dataclass
class CheckoutRequest:
    customer: Customer
    cart: List[CartLine]
    payment_method: str
    shipping_method: str = DEFAULT_SHIPPING_METHOD
    ship_to_different_address: bool = False
    shipping_address: Optional[Address] = None
    promo_code: Optional[str] = None
    client_total: Optional[Decimal] = None
    honeypot: str = ""
    idempotency_key: Optional[str] = None

    @property
    def is_bot(self) -> bool:
        return bool(self.honeypot)

    @classmethod
    def from_payload(cls, payload: Any) -> "CheckoutRequest":
        """Convert a JSON body into a typed request; shape errors raise ValidationFailed."""
        if not isinstance(payload, dict):
            raise ValidationFailed("Invalid request.")
        raw_customer = payload.get("customer")
        if not isinstance(raw_customer, dict):
            raise ValidationFailed("Invalid customer data")

        raw_items = payload.get("cartItems")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationFailed("Invalid cart")
        cart = []
        for item in raw_items:
            if not isinstance(item, dict):
                raise ValidationFailed("Invalid cart")
            ref = item.get("id")
            quantity = item.get("quantity")
            if isinstance(ref, bool) or ref is None or str(ref).strip() == "":
                raise ValidationFailed("Invalid cart")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationFailed("Invalid cart")
            cart.append(CartLine(ref=str(ref).strip(), name=_text(item.get("name")), quantity=quantity))

        shipping_method = _text(payload.get("shippingMethod")) or DEFAULT_SHIPPING_METHOD
        if shipping_method not in SHIPPING_COSTS:
            raise ValidationFailed("Invalid shipping method.")

        ship_diff = bool(payload.get("shipToDifferentAddress"))
        raw_shipping = payload.get("shippingAddress")
        shipping = Address.from_payload(raw_shipping) if isinstance(raw_shipping, dict) else None

        honeypot = payload.get("company")
        idem = payload.get("idempotencyKey")
        return cls(
            customer=Customer.from_payload(raw_customer),
            cart=cart,
            payment_method=_text(payload.get("paymentMethod")) or "etransfer",
            shipping_method=shipping_method,
            ship_to_different_address=ship_diff,
            shipping_address=shipping,
            promo_code=_text(payload.get("promoCode")).upper() or None,
            client_total=parse_client_amount(payload.get("total")),
            honeypot=honeypot.strip() if isinstance(honeypot, str) else "",
            idempotency_key=idem.strip() if isinstance(idem, str) and idem.strip() else None,
        )


def parse_client_amount(value: Any) -> Optional[Decimal]:
    """Untrusted client figures: anything not a finite, non-negative number is None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return to_decimal(value)


def is_valid_postal_code(zip_code: str) -> bool:
    return bool(POSTAL_RE.match(re.sub(r"\s{2,}", " ", (zip_code or "").strip())))


def is_quebec_postal_code(zip_code: str) -> bool:
    compact = re.sub(r"\s", "", zip_code or "").upper()
    return compact.startswith(QUEBEC_PREFIXES)


def validate_postal_codes(req: CheckoutRequest) -> Optional[str]:
    billing = req.customer.zip_code
    if re.sub(r"\s", "", billing) and not is_valid_postal_code(billing):
        return POSTAL_FORMAT_ERROR
    if is_quebec_postal_code(billing):
        return QUEBEC_ERROR
    if req.ship_to_different_address:
        if req.shipping_address is None:
            return "Shipping address is required when shipping to a different address."
        shipping = req.shipping_address.zip_code
        if not re.sub(r"\s", "", shipping):
            return "Shipping postal code is required."
        if not is_valid_postal_code(shipping):
            return "Invalid shipping postal code format. Please use format A1A 1A1."
        if is_quebec_postal_code(shipping):
            return QUEBEC_ERROR
    return None


def validate_shipping_address(addr: Optional[Address]) -> Optional[str]:
    if addr is None:
        return "Shipping address is required when shipping to a different address."
    if not addr.address:
        return "Shipping address is required."
    if len(addr.address) > MAX_LENGTH["address"]:
        return "Shipping address is too long."
    if len(addr.address_line2) > MAX_LENGTH["address_line2"]:
        return "Shipping address line 2 is too long."
    if not addr.city:
        return "Shipping city is required."
    if len(addr.city) > MAX_LENGTH["city"]:
        return "Shipping city is too long."
    if not addr.province:
        return "Shipping province is required."
    if len(addr.province) > MAX_LENGTH["province"]:
        return "Shipping province is too long."
    if not addr.zip_code:
        return "Shipping postal code is required."
    if len(addr.zip_code) > MAX_LENGTH["zip_code"]:
        return "Shipping postal code is too long."
    return None


def validate_customer(c: Customer) -> Optional[str]:
    checks = (
        ("first_name", "First name"),
        ("last_name", "Last name"),
        ("email", "Email"),
        ("address", "Address"),
        ("address_line2", "Address line 2"),
        ("city", "City"),
        ("province", "Province"),
        ("zip_code", "Postal code"),
        ("order_notes", "Order notes"),
    )
    optional = {"address_line2", "order_notes"}
    for attr, label in checks:
        value = getattr(c, attr)
        if attr not in optional and not value:
            return f"{label} is required."
        if attr == "email" and not EMAIL_RE.match(value):
            return "Please enter a valid email address."
        if len(value) > MAX_LENGTH[attr]:
            return f"{label} {'are' if attr == 'order_notes' else 'is'} too long."
    return None


def validate_stock_availability(cart: Sequence[CartLine], products: Sequence[Product]) -> Optional[str]:
    """Check the cart against a freshly read catalog snapshot.

    Lines naming the same product (by id or slug) are added up first.
    """
    requested: Dict[str, int] = {}
    for line in cart:
        product = find_product(products, line.ref)
        if product is None or not product.is_available:
            return f'Product "{line.name or line.ref}" is not available.'
        requested[product.id] = requested.get(product.id, 0) + line.quantity
        available = max(0, int(product.stock or 0))
        if requested[product.id] > available:
            return (
                f'Insufficient stock for "{product.name or product.id}". '
                f"Available: {available}, requested: {requested[product.id]}."
            )
    return None


def validate_checkout(req: CheckoutRequest, products: Sequence[Product]) -> Optional[str]:
    """Run the checks in their fixed order and return the first failure message."""
    error = validate_postal_codes(req)
    if error:
        return error
    if req.ship_to_different_address:
        error = validate_shipping_address(req.shipping_address)
        if error:
            return error
    error = validate_customer(req.customer)
    if error:
        return error
    return validate_stock_availability(req.cart, products)
