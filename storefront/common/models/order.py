from sqlalchemy import Column, Index, Integer, JSON, String, Text
from .base import Base


class OrderRecord(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    order_number = Column(String(64), nullable=False, unique=True)
    created_at = Column(String(32), nullable=False)
    payment_status = Column(String(16), nullable=False)
    order_json = Column(JSON, nullable=False)
    updated_at = Column(String(32), nullable=False)

    __table_args__ = (
        Index("idx_orders_created_at", "created_at"),
        Index("idx_orders_payment_status", "payment_status"),
    )


class RetryJobRecord(Base):
    __tablename__ = "retry_jobs"

    id = Column(String(64), primary_key=True)
    session = Column(String(64), nullable=False, unique=True)
    attempts = Column(Integer, nullable=False, default=0)
    next_run_at = Column(String(32), nullable=False)
    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)
    last_error = Column(Text, nullable=True)
    status = Column(String(16), nullable=False)

    __table_args__ = (Index("idx_retry_jobs_status_next_run", "status", "next_run_at"),)
