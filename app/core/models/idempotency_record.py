"""Idempotency record: the outcome of a payment mutation keyed by a client-supplied token."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint

from app.db.session import Base


class IdempotencyRecord(Base):
    """One row per (school, key). Replayed instead of re-sending the mutation upstream."""

    __tablename__ = "billing_idempotency_records"
    __table_args__ = (UniqueConstraint("school_id", "idempotency_key", name="uq_billing_idempotency_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    school_id = Column(Integer, nullable=False, index=True)
    idempotency_key = Column(String(128), nullable=False)
    operation = Column(String(30), nullable=False)  # CREATE_LEDGER, APPEND_PAYMENT
    request_fingerprint = Column(String(64), nullable=False)
    response_payload = Column(JSON(none_as_null=True), nullable=True)  # None while the mutation is in flight
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
