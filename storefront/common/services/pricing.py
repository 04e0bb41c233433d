"""Order pricing: volume tiers, promo discount, card fee and totals.

All helpers are pure. Money is carried as ``Decimal``; only the final figures
(subtotal, discount, fee, total) are rounded half-up to cents.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Optional, Sequence, Tuple

CENT = Decimal("0.01")
UNIT_PRECISION = Decimal("0.0001")

# highest threshold first; first match wins
DISCOUNT_TIERS: Tuple[Tuple[int, Decimal], ...] = (
    (10, Decimal("0.25")),
    (8, Decimal("0.15")),
    (6, Decimal("0.10")),
    (2, Decimal("0.05")),
)

SHIPPING_COSTS = {"express": Decimal("35.00")}
DEFAULT_SHIPPING_METHOD = "express"
CARD_FEE_RATE = Decimal("0.05")
TOTAL_TOLERANCE = Decimal("0.01")

PAYMENT_ETRANSFER = "etransfer"
PAYMENT_CREDITCARD = "creditcard"


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"not a monetary amount: {value!r}")


def round2(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantity_discount(quantity: int) -> Decimal:
    for min_qty, discount in DISCOUNT_TIERS:
        if quantity >= min_qty:
            return discount
    return Decimal("0")


def discounted_unit_price(base_price, quantity: int) -> Decimal:
    return to_decimal(base_price) * (Decimal("1") - quantity_discount(quantity))


def unit_price(base_price, quantity: int, promo_active: bool = False) -> Decimal:
    """Price charged per unit; a valid promo replaces the volume discount."""
    if promo_active:
        return to_decimal(base_price)
    return discounted_unit_price(base_price, quantity)


def cart_subtotal(lines: Iterable[Tuple[object, int]], promo_active: bool = False) -> Decimal:
    return sum(
        (unit_price(price, qty, promo_active) * qty for price, qty in lines),
        Decimal("0"),
    )


def promo_discount_amount(subtotal, promo_percent) -> Decimal:
    return round2(to_decimal(subtotal) * to_decimal(promo_percent) / Decimal("100"))


def card_fee(amount_before_fee) -> Decimal:
    return round2(to_decimal(amount_before_fee) * CARD_FEE_RATE)


def shipping_cost(method: str = DEFAULT_SHIPPING_METHOD, disabled: bool = False) -> Decimal:
    if method not in SHIPPING_COSTS:
        raise ValueError(f"unknown shipping method: {method}")
    return Decimal("0.00") if disabled else SHIPPING_COSTS[method]


def order_total(subtotal, shipping, discount, fee) -> Decimal:
    return round2(to_decimal(subtotal) + to_decimal(shipping) - to_decimal(discount) + to_decimal(fee))


def totals_match(client_total, server_total) -> bool:
    try:
        return abs(to_decimal(client_total) - to_decimal(server_total)) <= TOTAL_TOLERANCE
    except ValueError:
        return False


@dataclass(frozen=True)
class PricedLine:
    product_ref: str
    name: str
    base_price: Decimal
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Totals:
    lines: Tuple[PricedLine, ...]
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    card_fee: Decimal
    total: Decimal
    promo_code: Optional[str] = None


def compute_totals(
    lines: Sequence[Tuple[str, str, object, int]],
    *,
    shipping: Decimal,
    payment_method: str,
    promo_code: Optional[str] = None,
    promo_percent=None,
) -> Totals:
    """Price ``(product_ref, name, base_price, quantity)`` lines into order totals.

    The card fee is charged on ``subtotal - discount`` (shipping excluded) and
    only for card payments.
    """
    promo_active = promo_percent is not None
    priced: List[PricedLine] = []
    for ref, name, base, qty in lines:
        base_dec = to_decimal(base)
        priced.append(
            PricedLine(
                product_ref=ref,
                name=name,
                base_price=base_dec,
                unit_price=unit_price(base_dec, qty, promo_active).quantize(UNIT_PRECISION, rounding=ROUND_HALF_UP),
                quantity=qty,
            )
        )
    raw_subtotal = cart_subtotal(((p.base_price, p.quantity) for p in priced), promo_active)
    discount = promo_discount_amount(raw_subtotal, promo_percent) if promo_active else Decimal("0.00")
    fee = card_fee(raw_subtotal - discount) if payment_method == PAYMENT_CREDITCARD else Decimal("0.00")
    return Totals(
        lines=tuple(priced),
        subtotal=round2(raw_subtotal),
        shipping_cost=round2(shipping),
        discount_amount=discount,
        card_fee=fee,
        total=order_total(raw_subtotal, shipping, discount, fee),
        promo_code=promo_code if promo_active else None,
    )
