import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..db.session import create_session_factory, session_scope
from ..models.base import Base
from ..models.order import OrderRecord, RetryJobRecord
from ..utils.clock import to_iso, utc_now_iso
from .logging import log_event

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"

JOB_PENDING = "pending"
JOB_FAILED = "failed"
JOB_COMPLETED = "completed"


@dataclass
class RetryJob:
    """Bookkeeping for re-running fulfillment of one gateway session."""

    session: str
    next_run_at: str
    created_at: str
    updated_at: str
    id: str = ""
    attempts: int = 0
    last_error: Optional[str] = None
    status: str = JOB_PENDING

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: RetryJobRecord) -> "RetryJob":
        return cls(
            id=row.id,
            session=row.session,
            attempts=int(row.attempts or 0),
            next_run_at=row.next_run_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_error=row.last_error,
            status=row.status,
        )


def normalize_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Fill identity fields so every stored order has id, number, createdAt and status."""
    now = utc_now_iso()
    order_id = str(order.get("id") or f"order_{uuid4().hex[:12]}")
    return {
        **order,
        "id": order_id,
        "orderNumber": str(order.get("orderNumber") or order_id),
        "createdAt": str(order.get("createdAt") or now),
        "paymentStatus": str(order.get("paymentStatus") or PAYMENT_PAID),
    }


def load_legacy_orders(path: Path) -> List[Dict[str, Any]]:
    """Read the flat-file order list the database replaced."""
    if not path.exists():
        return []
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return []
    payload = json.loads(text)
    if not isinstance(payload, list):
        raise ValueError(f"{path.name} must contain a JSON array")
    return [item for item in payload if isinstance(item, dict)]


class OrderStore:
    """Durable orders and payment-retry jobs.

    Owns its engine; construct once at startup and share. Writes are single
    upsert statements keyed by the unique order number (or job session).
    """

    def __init__(self, database_url: str, legacy_file: Optional[Path] = None) -> None:
        self._engine, self._session_factory = create_session_factory(database_url)
        Base.metadata.create_all(self._engine)
        self._legacy_file = legacy_file
        self._migrated = False
        self._migration_lock = threading.Lock()

    def close(self) -> None:
        self._engine.dispose()

    def _insert(self, table):
        if self._engine.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    def _scope(self):
        self._ensure_migrated()
        return session_scope(self._session_factory)

    # legacy bootstrap

    def _ensure_migrated(self) -> None:
        if self._migrated:
            return
        with self._migration_lock:
            if self._migrated:
                return
            self._migrate_legacy_orders()
            self._migrated = True

    def _migrate_legacy_orders(self) -> None:
        if self._legacy_file is None:
            return
        with session_scope(self._session_factory) as session:
            count = session.execute(select(func.count()).select_from(OrderRecord)).scalar_one()
            if count:
                return
            try:
                legacy = load_legacy_orders(self._legacy_file)
            except (OSError, ValueError) as exc:
                log_event("error", "orders.legacy_migration_failed", path=str(self._legacy_file), error=str(exc))
                return
            for order in legacy:
                self._write_order(session, normalize_order(order))
        if legacy:
            log_event("info", "orders.legacy_migrated", count=len(legacy))

    # orders

    def _write_order(self, session, normalized: Dict[str, Any]) -> None:
        stmt = self._insert(OrderRecord).values(
            id=normalized["id"],
            order_number=normalized["orderNumber"],
            created_at=normalized["createdAt"],
            payment_status=normalized["paymentStatus"],
            order_json=normalized,
            updated_at=utc_now_iso(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[OrderRecord.order_number],
            set_={
                "id": stmt.excluded.id,
                "created_at": stmt.excluded.created_at,
                "payment_status": stmt.excluded.payment_status,
                "order_json": stmt.excluded.order_json,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)

    def upsert_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        normalized = normalize_order(order)
        # round-trip through JSON so Decimal and other values are stored as plain JSON
        normalized = json.loads(json.dumps(normalized, default=str))
        with self._scope() as session:
            self._write_order(session, normalized)
        return normalized

    def get_order_by_number(self, order_number: str) -> Optional[Dict[str, Any]]:
        with self._scope() as session:
            row = session.execute(
                select(OrderRecord.order_json).where(OrderRecord.order_number == order_number).limit(1)
            ).first()
            return dict(row[0]) if row else None

    def get_order_by_session(self, session_token: str) -> Optional[Dict[str, Any]]:
        """The gateway session is the order number, but older orders may carry the id."""
        if not session_token:
            return None
        with self._scope() as session:
            row = session.execute(
                select(OrderRecord.order_json)
                .where(or_(OrderRecord.order_number == session_token, OrderRecord.id == session_token))
                .limit(1)
            ).first()
            return dict(row[0]) if row else None

    def list_orders(self) -> List[Dict[str, Any]]:
        with self._scope() as session:
            rows = session.execute(select(OrderRecord.order_json).order_by(OrderRecord.created_at.desc())).all()
            return [dict(r[0]) for r in rows]

    # retry jobs

    def upsert_retry_job(self, job: RetryJob) -> RetryJob:
        if not job.id:
            job.id = f"job_{uuid4().hex[:12]}"
        job.status = job.status or JOB_PENDING
        stmt = self._insert(RetryJobRecord).values(
            id=job.id,
            session=job.session,
            attempts=job.attempts,
            next_run_at=job.next_run_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            last_error=job.last_error,
            status=job.status,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RetryJobRecord.session],
            set_={
                "id": stmt.excluded.id,
                "attempts": stmt.excluded.attempts,
                "next_run_at": stmt.excluded.next_run_at,
                "updated_at": stmt.excluded.updated_at,
                "last_error": stmt.excluded.last_error,
                "status": stmt.excluded.status,
            },
        )
        with self._scope() as session:
            session.execute(stmt)
        return job

    def get_retry_job_by_session(self, session_token: str) -> Optional[RetryJob]:
        with self._scope() as session:
            row = session.execute(
                select(RetryJobRecord).where(RetryJobRecord.session == session_token).limit(1)
            ).scalar_one_or_none()
            return RetryJob.from_row(row) if row else None

    def list_due_pending_retry_jobs(self, now: datetime) -> List[RetryJob]:
        with self._scope() as session:
            rows = session.execute(
                select(RetryJobRecord)
                .where(RetryJobRecord.status == JOB_PENDING, RetryJobRecord.next_run_at <= to_iso(now))
                .order_by(RetryJobRecord.next_run_at.asc())
            ).scalars().all()
            return [RetryJob.from_row(r) for r in rows]
