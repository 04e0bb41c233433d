"""Card payment confirmation from the gateway's server-to-server postback."""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import FulfillmentError
from .fulfillment_service import FulfillmentService
from .gateway_service import (
    CODE_BAD_REQUEST,
    CODE_NOT_APPROVED,
    CODE_OK,
    CODE_PROCESSING_FAILED,
    GatewayError,
    PostbackVerifier,
    amounts_match,
    is_approved,
    parse_amount,
    xml_response,
)
from .logging import log_event
from .order_service import PAYMENT_PAID, OrderStore
from .pricing import to_decimal

logger = logging.getLogger(__name__)


@dataclass
class PostbackResult:
    ok: bool
    code: int
    message: str
    receipt: Optional[str] = None

    def to_xml(self) -> str:
        return xml_response(self.ok, self.code, self.message, self.receipt)


class PostbackHandler:
    def __init__(self, verifier: PostbackVerifier, store: OrderStore, fulfillment: FulfillmentService) -> None:
        self._verifier = verifier
        self._store = store
        self._fulfillment = fulfillment

    def handle(self, raw_body: bytes, headers: Mapping[str, str], ip: str) -> PostbackResult:
        try:
            data = self._verifier.verify(raw_body, headers, ip)
        except GatewayError as exc:
            log_event("warning", "gateway.postback.rejected", code=exc.code, reason=exc.message, ip=ip)
            return PostbackResult(False, exc.code, exc.message)

        session = data.get("session")
        session = session.strip() if isinstance(session, str) else ""
        if not session:
            return PostbackResult(False, CODE_BAD_REQUEST, "Invalid session variable: 'empty'")

        # pick up earlier confirmations whose fulfillment is still owed
        self._fulfillment.sweep_retry_jobs()

        with self._fulfillment.session_lock(session):
            return self._confirm(session, data)

    def _confirm(self, session: str, data) -> PostbackResult:
        order = self._store.get_order_by_session(session)
        if order is None:
            return PostbackResult(False, CODE_BAD_REQUEST, f"Invalid session variable: '{session}'")
        if order.get("paymentStatus") == PAYMENT_PAID:
            log_event("info", "gateway.postback.replayed", session=session)
            return PostbackResult(True, CODE_OK, "Order already processed", session)

        if not is_approved(data):
            log_event("warning", "gateway.postback.not_approved", session=session, status=data.get("status") or data.get("result"))
            return PostbackResult(False, CODE_NOT_APPROVED, "Payment not approved")

        paid = parse_amount(data.get("amount"))
        if paid is None:
            return PostbackResult(False, CODE_BAD_REQUEST, "Invalid amount format")
        expected = to_decimal(order.get("total") or 0)
        if not amounts_match(paid, expected):
            log_event("warning", "gateway.postback.amount_mismatch", session=session, expected=expected, received=paid)
            return PostbackResult(False, CODE_PROCESSING_FAILED, f"Amount mismatch. Expected {expected}, received {paid}")

        try:
            order = self._fulfillment.fulfill(order)
        except FulfillmentError as exc:
            logger.exception("Fulfillment failed for session %s", session)
            self._fulfillment.enqueue_retry(session, str(exc))
            return PostbackResult(False, CODE_PROCESSING_FAILED, "Order processing failed")

        self._fulfillment.mark_paid(order)
        log_event("info", "gateway.postback.accepted", session=session, amount=paid)
        return PostbackResult(True, CODE_OK, "Purchase successfully processed", session)
