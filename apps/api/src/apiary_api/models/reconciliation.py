"""Run records for the payment reconciliation sweeper."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from apiary_api.db.base import Base


class PaymentReconciliationRun(Base):
    """Captures metadata for each sweep over the gateway's session history."""

    __tablename__ = "payment_reconciliation_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    triggered_by = Column(String(64), nullable=False, default="manual")
    status = Column(String(32), nullable=False, default="running")
    window_days = Column(Integer, nullable=False, default=30)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    total_sessions = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    already_processed_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    notes_json = Column("notes", JSON, nullable=True)
    error_message = Column(Text, nullable=True)


__all__ = ["PaymentReconciliationRun"]
