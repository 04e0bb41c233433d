"""Task-tracker integration for human follow-up on stock alerts."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import requests

from .logging import log_event

logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.wrike.com/api/v4"


class TaskTracker:
    """Posts tasks into tracker folders; every method is a no-op when unconfigured."""

    def __init__(self, config, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._http = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self._config and self._config.is_configured)

    def _create_task(self, folder_id: str, title: str, description: str) -> Optional[Dict[str, Any]]:
        response = self._http.post(
            f"{API_BASE_URL}/folders/{folder_id}/tasks",
            headers={"Authorization": f"Bearer {self._config.api_token}"},
            json={"title": title, "description": description, "status": "Active"},
            timeout=self._config.timeout_seconds,
        )
        if not response.ok:
            logger.error("Task tracker API error %s: %s", response.status_code, response.text[:500])
            return None
        data = response.json().get("data") or []
        return data[0] if data else None

    def create_order_task(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not (self._config and self._config.api_token and self._config.orders_folder_id):
            return None
        customer = order.get("customer") or {}
        title = f"Order #{order.get('orderNumber')} - {customer.get('firstName', '')} {customer.get('lastName', '')}".strip()
        items = "\n".join(
            f"• {i.get('name')} × {i.get('quantity')} - ${float(i.get('price') or 0) * int(i.get('quantity') or 0):.2f}"
            for i in order.get("cartItems") or []
        )
        description = (
            f"**Order #{order.get('orderNumber')}**\n"
            f"Date: {order.get('createdAt')}\n\n"
            f"Name: {customer.get('firstName', '')} {customer.get('lastName', '')}\n"
            f"Email: {customer.get('email', '')}\n"
            f"Payment: {order.get('paymentMethod')}\n\n"
            f"{items}\n\n"
            f"**Total: ${float(order.get('total') or 0):.2f}**"
        )
        try:
            task = self._create_task(self._config.orders_folder_id, title, description)
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.error("Failed to create order task: %s", exc)
            return None
        if task:
            log_event("info", "tasks.order_created", task_id=task.get("id"), order_number=order.get("orderNumber"))
        return task

    def create_stock_alert_task(self, items: Sequence[Any], threshold: int) -> Optional[Dict[str, Any]]:
        if not self.is_configured or not items:
            return None
        count = len(items)
        title = f"Low Stock Alert - {count} item{'s' if count > 1 else ''} need restocking"
        lines = "\n".join(f"• **{p.name}** ({p.slug}) - Only {p.stock} left" for p in items)
        description = (
            "**Low Stock Alert**\n"
            f"Date: {datetime.now(timezone.utc):%Y-%m-%d %H:%M} UTC\n\n"
            f"The following items have stock levels at or below {threshold} units:\n\n"
            f"{lines}\n\n---\n\n"
            "**Action Required:** Restock these items soon to avoid stockouts."
        )
        try:
            task = self._create_task(self._config.stock_alerts_folder_id, title, description)
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.error("Failed to create stock alert task: %s", exc)
            return None
        if task:
            log_event("info", "tasks.stock_alert_created", task_id=task.get("id"), items=count)
        return task
