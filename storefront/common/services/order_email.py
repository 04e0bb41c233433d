"""Notification bodies: order confirmations, low-stock alerts and contact messages."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .pricing import PAYMENT_CREDITCARD, round2, to_decimal

TEMPLATE_DIR = Path(__file__).resolve().parents[2] / "templates" / "email"

PAYMENT_DETAILS = {
    "recipient_name": "Pure Tide Payments",
    "recipient_email": "orders@puretide.ca",
    "support_email": "info@puretide.ca",
}

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=False,
)


@dataclass
class EmailContent:
    subject: str
    text: str
    html: str = ""


@dataclass
class OrderEmails:
    customer: EmailContent
    admin: EmailContent


def format_money(value: Any) -> str:
    amount = round2(to_decimal(value or 0))
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_date(iso_value: str) -> str:
    try:
        moment = datetime.fromisoformat(str(iso_value).replace("Z", "+00:00"))
    except ValueError:
        return str(iso_value or "")
    return f"{moment:%B} {moment.day}, {moment.year}"


def _address_lines(name: str, source: Dict[str, Any], country: str) -> List[str]:
    lines = [
        name,
        source.get("address") or "",
        source.get("addressLine2") or "",
        " ".join(p for p in (source.get("city"), source.get("province"), source.get("zipCode")) if p),
        country,
    ]
    return [line for line in lines if line]


def _context(order: Dict[str, Any], store_name: str) -> Dict[str, Any]:
    customer = order.get("customer") or {}
    is_card = order.get("paymentMethod") == PAYMENT_CREDITCARD
    name = f"{customer.get('firstName', '')} {customer.get('lastName', '')}".strip()
    country = customer.get("country") or ""
    billing = _address_lines(name, customer, country)
    if customer.get("email"):
        billing.append(customer["email"])
    shipping_source = order.get("shippingAddress") if order.get("shipToDifferentAddress") else None
    items = [
        {
            "name": item.get("name", ""),
            "quantity": item.get("quantity", 0),
            "line_total": format_money(to_decimal(item.get("price") or 0) * int(item.get("quantity") or 0)),
        }
        for item in order.get("cartItems") or []
    ]
    discount = to_decimal(order.get("discountAmount") or 0)
    fee = to_decimal(order.get("cardFee") or 0)
    return {
        "store_name": store_name,
        "order": order,
        "customer": customer,
        "is_card": is_card,
        "intro": (
            "Thank you for your order. Your credit card payment has been received."
            if is_card
            else "We have received your order and it is on hold until payment is confirmed."
        ),
        "payment": PAYMENT_DETAILS,
        "payment_label": "Credit card" if is_card else "Interac e-Transfer",
        "shipping_label": "Express Shipping" if order.get("shippingMethod", "express") == "express" else "Regular Shipping",
        "order_date": format_date(order.get("createdAt", "")),
        "billing_lines": billing,
        "shipping_lines": _address_lines(name, shipping_source or customer, country),
        "items": items,
        "notes": (customer.get("orderNotes") or "").strip(),
        "totals": {
            "subtotal": format_money(order.get("subtotal")),
            "discount": format_money(discount) if discount > Decimal("0") else "",
            "shipping": format_money(order.get("shippingCost")),
            "card_fee": format_money(fee) if fee > Decimal("0") else "",
            "total": format_money(order.get("total")),
        },
    }


def build_order_emails(order: Dict[str, Any], store_name: str = "Pure Tide") -> OrderEmails:
    """Render the customer confirmation and the admin notice for a stored order."""
    context = _context(order, store_name)
    number = order.get("orderNumber", "")
    if context["is_card"]:
        customer_subject = f"Order #{number} - Order confirmation"
    else:
        customer_subject = f"Order #{number} - Interac e-Transfer instructions"
    return OrderEmails(
        customer=EmailContent(
            subject=customer_subject,
            text=_env.get_template("customer.txt").render(context),
            html=_env.get_template("customer.html").render(context),
        ),
        admin=EmailContent(
            subject=f"New order #{number}",
            text=_env.get_template("admin.txt").render(context),
            html=_env.get_template("admin.html").render(context),
        ),
    )


def build_low_stock_alert(items: Sequence[Any], threshold: int) -> EmailContent:
    rows = [{"name": p.name, "slug": p.slug, "stock": p.stock} for p in items]
    return EmailContent(
        subject="Low stock alert",
        text=_env.get_template("low_stock.txt").render(items=rows, threshold=threshold),
    )


def build_contact_email(name: str, email: str, message: str) -> EmailContent:
    return EmailContent(
        subject=f"New contact message from {name}",
        text=_env.get_template("contact.txt").render(name=name, email=email, message=message),
    )
