"""Checkout orchestration for the e-transfer and card payment paths.

Both paths re-price the cart from a fresh catalog snapshot, reject a client
total that disagrees with the server figure, and honour an idempotency key
so a retried submission returns the first result instead of a new order.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from .catalog_service import Catalog, CatalogError, find_product, find_promo
from .errors import CatalogUnavailable, FulfillmentError, GatewayNotConfigured, TamperingSuspected, ValidationFailed
from .fulfillment_service import FulfillmentService, empty_fulfillment_status
from .gateway_service import PaymentParams, build_payment_redirect_url
from .logging import log_event
from .order_service import PAYMENT_PAID, PAYMENT_PENDING, OrderStore
from .pricing import PAYMENT_CREDITCARD, PAYMENT_ETRANSFER, Totals, compute_totals, shipping_cost, totals_match
from .validation import CheckoutRequest, validate_checkout
from ..utils.clock import to_iso, utc_now
from ..utils.locks import KeyedLock

logger = logging.getLogger(__name__)


def new_order_number() -> str:
    return uuid4().hex[:10]


class CheckoutService:
    def __init__(
        self,
        store: OrderStore,
        catalog: Catalog,
        fulfillment: FulfillmentService,
        idempotency,
        config,
        clock: Callable[[], datetime] = utc_now,
        order_number_factory: Callable[[], str] = new_order_number,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._fulfillment = fulfillment
        self._idempotency = idempotency
        self._config = config
        self._clock = clock
        self._new_number = order_number_factory
        self._keys = KeyedLock()

    # pricing

    def _price(self, req: CheckoutRequest) -> Totals:
        try:
            products = self._catalog.read_products()
        except CatalogError as exc:
            logger.error("Catalog read failed during checkout: %s", exc)
            raise CatalogUnavailable() from exc

        error = validate_checkout(req, products)
        if error:
            raise ValidationFailed(error)

        promo = None
        if req.promo_code:
            try:
                promo = find_promo(self._catalog.read_promo_codes(), req.promo_code)
            except CatalogError as exc:
                logger.error("Promo code read failed during checkout: %s", exc)
                raise CatalogUnavailable() from exc

        lines = []
        for line in req.cart:
            product = find_product(products, line.ref)
            lines.append((line.ref, product.name or line.name, product.price, line.quantity))

        totals = compute_totals(
            lines,
            shipping=shipping_cost(req.shipping_method, self._config.disable_shipping_fee),
            payment_method=req.payment_method,
            promo_code=promo.code if promo else None,
            promo_percent=promo.discount if promo else None,
        )
        if req.client_total is None or not totals_match(req.client_total, totals.total):
            logger.warning(
                "Checkout total mismatch: client=%s server=%s subtotal=%s discount=%s fee=%s",
                req.client_total,
                totals.total,
                totals.subtotal,
                totals.discount_amount,
                totals.card_fee,
            )
            log_event("warning", "checkout.tampering_suspected", client_total=req.client_total, server_total=totals.total)
            raise TamperingSuspected()
        return totals

    def _build_order(self, req: CheckoutRequest, totals: Totals, payment_status: str) -> Dict[str, Any]:
        number = self._new_number()
        now = to_iso(self._clock())
        order = {
            "id": f"order_{number}",
            "orderNumber": number,
            "createdAt": now,
            "paymentStatus": payment_status,
            "paymentMethod": req.payment_method,
            "customer": req.customer.to_dict(),
            "shipToDifferentAddress": req.ship_to_different_address,
            "shippingAddress": req.shipping_address.to_dict() if req.ship_to_different_address and req.shipping_address else None,
            "shippingMethod": req.shipping_method,
            "shippingCost": float(totals.shipping_cost),
            "subtotal": float(totals.subtotal),
            "discountAmount": float(totals.discount_amount),
            "promoCode": totals.promo_code,
            "cardFee": float(totals.card_fee),
            "total": float(totals.total),
            "cartItems": [
                {
                    "productRef": line.product_ref,
                    "name": line.name,
                    "basePrice": float(line.base_price),
                    "price": float(line.unit_price),
                    "quantity": line.quantity,
                }
                for line in totals.lines
            ],
            "fulfillmentStatus": empty_fulfillment_status(),
            "emailStatus": None,
            "adminEmailStatus": None,
        }
        if payment_status == PAYMENT_PAID:
            order["paidAt"] = now
        return order

    @staticmethod
    def _reject_bots(req: CheckoutRequest) -> None:
        if req.is_bot:
            log_event("info", "checkout.honeypot_rejected")
            raise ValidationFailed("Invalid request.")

    # e-transfer

    def place_etransfer_order(self, req: CheckoutRequest, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        """Persist a paid-on-honour order, fulfil it now and return its identifiers."""
        self._reject_bots(req)
        if idempotency_key:
            with self._keys.hold(idempotency_key):
                return self._place_etransfer(req, idempotency_key)
        return self._place_etransfer(req, None)

    def _place_etransfer(self, req: CheckoutRequest, key: Optional[str]) -> Dict[str, str]:
        if key:
            cached = self._idempotency.get_order(key)
            if cached:
                log_event("info", "checkout.idempotent_replay", order_number=cached.order_number)
                return {"orderId": cached.order_id, "orderNumber": cached.order_number}
        if req.payment_method != PAYMENT_ETRANSFER:
            raise ValidationFailed("Invalid payment method.")

        # the stock check and the decrement must see the same catalog
        with self._fulfillment.stock_lock():
            totals = self._price(req)
            order = self._store.upsert_order(self._build_order(req, totals, PAYMENT_PAID))
            order, low_stock = self._fulfillment.reserve_stock(order)
        number = order["orderNumber"]
        log_event("info", "order.created", order_number=number, payment_method=PAYMENT_ETRANSFER, total=order["total"])

        with self._fulfillment.session_lock(number):
            try:
                self._fulfillment.fulfill(order)
            except FulfillmentError as exc:
                self._fulfillment.enqueue_retry(number, str(exc))
        if low_stock:
            self._fulfillment.notify_low_stock(low_stock)

        if key:
            self._idempotency.set_order(key, number, order["id"])
        return {"orderId": order["id"], "orderNumber": number}

    # card

    def create_card_payment(self, req: CheckoutRequest, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        """Persist a pending card order and return the encrypted gateway redirect."""
        self._reject_bots(req)
        if idempotency_key:
            with self._keys.hold(idempotency_key):
                return self._create_card(req, idempotency_key)
        return self._create_card(req, None)

    def _redirect_for(self, order: Dict[str, Any]) -> str:
        gateway = self._config.gateway
        customer = order["customer"]
        number = order["orderNumber"]
        params = PaymentParams(
            site_id=gateway.effective_site_id,
            charge_amount=order["total"],
            order_description=f"Order #{number}",
            session=number,
            pburl=gateway.postback_url,
            tcomplete=f"{gateway.tcomplete_base.rstrip('/')}/order-confirmation?orderNumber={number}",
            shipped=True,
            first_name=customer.get("firstName") or None,
            last_name=customer.get("lastName") or None,
            email=(customer.get("email") or "").lower() or None,
            address=customer.get("address") or None,
            city=customer.get("city") or None,
            state=customer.get("province") or None,
            zip=customer.get("zipCode") or None,
            country=customer.get("country") or None,
        )
        return build_payment_redirect_url(params, gateway.encryption_key)

    def _create_card(self, req: CheckoutRequest, key: Optional[str]) -> Dict[str, str]:
        if key:
            cached = self._idempotency.get_redirect(key)
            if cached:
                log_event("info", "checkout.idempotent_replay", order_number=cached.order_number)
                return {"redirectUrl": cached.redirect_url, "orderNumber": cached.order_number}
        if req.payment_method != PAYMENT_CREDITCARD:
            raise ValidationFailed("Invalid payment method.")
        if not self._config.gateway.is_configured:
            logger.error("Card checkout attempted without gateway configuration")
            raise GatewayNotConfigured()

        totals = self._price(req)
        order = self._store.upsert_order(self._build_order(req, totals, PAYMENT_PENDING))
        number = order["orderNumber"]
        redirect_url = self._redirect_for(order)
        log_event("info", "order.created", order_number=number, payment_method=PAYMENT_CREDITCARD, total=order["total"])

        if key:
            self._idempotency.set_redirect(key, number, redirect_url)
        return {"redirectUrl": redirect_url, "orderNumber": number}
