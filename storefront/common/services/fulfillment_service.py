"""Exactly-once fulfillment of confirmed orders, and the retry sweep behind it.

Each side effect is guarded by a flag in the order's ``fulfillmentStatus``
and the flag is persisted as soon as the step finishes, so a retried run
only performs the steps that never completed. Card orders are marked paid
after the steps have run; a failure leaves them pending with a retry job.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .catalog_service import Catalog, CatalogError, ClientRecord, Product, StockLedger
from .errors import FulfillmentError
from .logging import log_event
from .mail_service import Mailer, OutgoingEmail, format_from
from .order_email import build_low_stock_alert, build_order_emails
from .order_service import JOB_COMPLETED, JOB_FAILED, JOB_PENDING, PAYMENT_PAID, OrderStore, RetryJob
from ..utils.clock import to_iso, utc_now
from ..utils.locks import KeyedLock

MAX_RETRY_ATTEMPTS = 6
RETRY_BASE_DELAY_SECONDS = 30
RETRY_MAX_DELAY_SECONDS = 60 * 60


def backoff_seconds(attempts: int) -> int:
    return min(RETRY_MAX_DELAY_SECONDS, RETRY_BASE_DELAY_SECONDS * 2 ** max(0, attempts - 1))


def empty_fulfillment_status() -> Dict[str, Any]:
    return {"stockUpdated": False, "emailsSent": False, "clientSynced": False}


class FulfillmentService:
    def __init__(
        self,
        store: OrderStore,
        catalog: Catalog,
        mailer: Mailer,
        tasks,
        config,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._mailer = mailer
        self._tasks = tasks
        self._config = config
        self._clock = clock
        self._ledger = StockLedger(catalog, config.low_stock_threshold)
        self._alerted_at: Dict[str, datetime] = {}
        self._alert_lock = threading.Lock()
        self._sessions = KeyedLock()

    @contextmanager
    def session_lock(self, session: str) -> Iterator[None]:
        """Serialize everything that touches one gateway session."""
        with self._sessions.hold(session):
            yield

    def stock_lock(self):
        return self._ledger.hold()

    # steps

    def _save(self, order: Dict[str, Any], status: Dict[str, Any]) -> Dict[str, Any]:
        status["updatedAt"] = to_iso(self._clock())
        order["fulfillmentStatus"] = status
        return self._store.upsert_order(order)

    def _send_order_emails(self, order: Dict[str, Any]) -> None:
        smtp = self._config.smtp_for("ORDER")
        emails = build_order_emails(order, self._config.store_name)
        customer = order.get("customer") or {}
        from_address = format_from(smtp.from_address, f"{self._config.store_name} Order Confirmation") if smtp else None
        customer_reply_to = f"{customer.get('firstName', '')} {customer.get('lastName', '')} <{customer.get('email', '')}>"

        email_status = self._mailer.send(
            OutgoingEmail(
                to=customer.get("email", ""),
                subject=emails.customer.subject,
                text=emails.customer.text,
                html=emails.customer.html,
                from_address=from_address,
                bcc="",
            ),
            smtp,
        )
        admin_status = self._mailer.send(
            OutgoingEmail(
                to=self._config.order_notification_email,
                subject=emails.admin.subject,
                text=emails.admin.text,
                html=emails.admin.html,
                reply_to=customer_reply_to,
                from_address=from_address,
                bcc="",
            ),
            smtp,
        )
        order["emailStatus"] = email_status.to_dict()
        order["adminEmailStatus"] = admin_status.to_dict()
        if not email_status.sent or not admin_status.sent:
            log_event(
                "warning",
                "fulfillment.email_not_sent",
                order_number=order.get("orderNumber"),
                customer=email_status.to_dict(),
                admin=admin_status.to_dict(),
            )

    def _update_stock(self, order: Dict[str, Any], strict: bool = False) -> List[Product]:
        try:
            result = self._ledger.decrement(order.get("cartItems") or [], strict=strict)
        except CatalogError as exc:
            raise FulfillmentError(f"Stock update failed: {exc}") from exc
        order["stockLevels"] = [{"name": c.name, "stock": c.stock} for c in result["ordered"]]
        return result["low_stock"]

    def _sync_client(self, order: Dict[str, Any]) -> bool:
        customer = order.get("customer") or {}
        if not customer.get("email"):
            return True
        record = ClientRecord(
            email=customer["email"],
            first_name=customer.get("firstName", ""),
            last_name=customer.get("lastName", ""),
            address=customer.get("address", ""),
            city=customer.get("city", ""),
            province=customer.get("province", ""),
            zip_code=customer.get("zipCode", ""),
            country=customer.get("country", ""),
            last_order_date=self._clock().date().isoformat(),
            products_purchased=[str(i.get("name", "")) for i in order.get("cartItems") or []],
        )
        try:
            self._catalog.upsert_client(record, float(order.get("total") or 0))
        except CatalogError as exc:
            log_event("error", "fulfillment.client_sync_failed", order_number=order.get("orderNumber"), error=str(exc))
            return False
        return True

    def notify_low_stock(self, products: Sequence[Product], force: bool = False) -> int:
        """Email and file a task for low-stock products outside their alert cooldown.

        Returns how many products were alerted. Failures are logged only.
        """
        now = self._clock()
        cooldown = timedelta(minutes=self._config.low_stock_cooldown_minutes)
        with self._alert_lock:
            due = [
                p for p in products
                if force or p.id not in self._alerted_at or now - self._alerted_at[p.id] >= cooldown
            ]
            for product in due:
                self._alerted_at[product.id] = now
        if not due:
            return 0
        log_event("warning", "stock.low", items=[{"id": p.id, "stock": p.stock} for p in due])
        alert = build_low_stock_alert(due, self._ledger.low_stock_threshold)
        status = self._mailer.send(
            OutgoingEmail(to=self._config.low_stock_email, subject=alert.subject, text=alert.text),
            self._config.smtp_for("LOW_STOCK"),
        )
        if not status.sent:
            log_event("error", "stock.low_alert_email_failed", error=status.error, skipped=status.skipped)
        self._tasks.create_stock_alert_task(due, self._ledger.low_stock_threshold)
        return len(due)

    def fulfill(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """Run every step not yet flagged done; raises FulfillmentError if stock cannot be written."""
        status = {**empty_fulfillment_status(), **(order.get("fulfillmentStatus") or {})}
        order = dict(order)

        if not status["emailsSent"]:
            self._send_order_emails(order)
            self._tasks.create_order_task(order)
            status["emailsSent"] = True
            order = self._save(order, status)

        if not status["stockUpdated"]:
            low_stock = self._update_stock(order)
            status["stockUpdated"] = True
            order = self._save(order, status)
            if low_stock:
                self.notify_low_stock(low_stock)

        if not status["clientSynced"] and self._sync_client(order):
            status["clientSynced"] = True
            order = self._save(order, status)

        log_event("info", "fulfillment.completed", order_number=order.get("orderNumber"))
        return order

    def reserve_stock(self, order: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Product]]:
        """Take stock for a just-placed order while the caller holds ``stock_lock``.

        A failure is logged and leaves ``stockUpdated`` unset for ``fulfill``
        to retry. Returns the saved order and the products now running low.
        """
        status = {**empty_fulfillment_status(), **(order.get("fulfillmentStatus") or {})}
        if status["stockUpdated"]:
            return order, []
        order = dict(order)
        try:
            low_stock = self._update_stock(order, strict=True)
        except FulfillmentError as exc:
            log_event("warning", "fulfillment.stock_reservation_failed", order_number=order.get("orderNumber"), error=str(exc))
            return order, []
        status["stockUpdated"] = True
        return self._save(order, status), low_stock

    def mark_paid(self, order: Dict[str, Any]) -> Dict[str, Any]:
        if order.get("paymentStatus") == PAYMENT_PAID and order.get("paidAt"):
            return order
        order = {**order, "paymentStatus": PAYMENT_PAID, "paidAt": order.get("paidAt") or to_iso(self._clock())}
        return self._store.upsert_order(order)

    def fulfill_session(self, session: str) -> Dict[str, Any]:
        order = self._store.get_order_by_session(session)
        if order is None:
            raise FulfillmentError(f"Order not found for session {session}")
        order = self.fulfill(order)
        return self.mark_paid(order)

    # retries

    def enqueue_retry(self, session: str, error: str) -> RetryJob:
        now = self._clock()
        existing = self._store.get_retry_job_by_session(session)
        if existing and existing.status == JOB_PENDING:
            existing.last_error = error
            existing.updated_at = to_iso(now)
            job = existing
        else:
            job = RetryJob(
                id=existing.id if existing else "",
                session=session,
                attempts=0,
                next_run_at=to_iso(now + timedelta(seconds=RETRY_BASE_DELAY_SECONDS)),
                created_at=existing.created_at if existing else to_iso(now),
                updated_at=to_iso(now),
                last_error=error,
                status=JOB_PENDING,
            )
        log_event("warning", "fulfillment.retry_enqueued", session=session, error=error)
        return self._store.upsert_retry_job(job)

    def sweep_retry_jobs(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Re-run fulfillment for every due pending job once."""
        now = now or self._clock()
        summary = {"processed": 0, "completed": 0, "rescheduled": 0, "failed": 0}
        for job in self._store.list_due_pending_retry_jobs(now):
            summary["processed"] += 1
            with self.session_lock(job.session):
                try:
                    self.fulfill_session(job.session)
                except FulfillmentError as exc:
                    job.attempts += 1
                    job.last_error = str(exc)
                    job.updated_at = to_iso(now)
                    if job.attempts >= MAX_RETRY_ATTEMPTS:
                        job.status = JOB_FAILED
                        summary["failed"] += 1
                        log_event("error", "fulfillment.retry_exhausted", session=job.session, error=str(exc))
                    else:
                        job.next_run_at = to_iso(now + timedelta(seconds=backoff_seconds(job.attempts)))
                        summary["rescheduled"] += 1
                    self._store.upsert_retry_job(job)
                    continue
            job.status = JOB_COMPLETED
            job.updated_at = to_iso(now)
            self._store.upsert_retry_job(job)
            summary["completed"] += 1
        if summary["processed"]:
            log_event("info", "fulfillment.retry_sweep", **summary)
        return summary
