"""Processor event ledger models and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apiary_api.db.base import Base


class ProcessorEvent(Base):
    """Audit row for every verified gateway webhook event."""

    __tablename__ = "processor_events"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider = Column(String(32), nullable=False, default="stripe")
    external_id = Column(String(128), nullable=False)
    event_type = Column(String(128), nullable=False)
    payload_hash = Column(String(128), nullable=False)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    payload_json = Column("payload", JSON, nullable=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    dispatch_outcome = Column(String(32), nullable=True)
    dispatch_detail = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_processor_event_provider_external"),
    )


@dataclass(slots=True)
class RecordedProcessorEvent:
    """Result container for processor event logging."""

    event: ProcessorEvent
    created: bool


async def record_processor_event(
    session: AsyncSession,
    *,
    external_id: str,
    event_type: str,
    payload_hash: str,
    payload: dict[str, Any] | None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    provider: str = "stripe",
) -> RecordedProcessorEvent:
    """Persist the processor event if it has not already been recorded.

    Redeliveries are absorbed: the existing row is returned with ``created=False``.
    The row is an audit trail only, ledger idempotency does not depend on it.
    """

    stmt = select(ProcessorEvent).where(
        ProcessorEvent.provider == provider,
        ProcessorEvent.external_id == external_id,
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing:
        existing.delivery_count = (existing.delivery_count or 1) + 1
        existing.last_received_at = datetime.now(timezone.utc)
        await session.commit()
        return RecordedProcessorEvent(event=existing, created=False)

    event = ProcessorEvent(
        provider=provider,
        external_id=external_id,
        event_type=event_type,
        payload_hash=payload_hash,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload,
    )
    session.add(event)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        found = (await session.execute(stmt)).scalar_one_or_none()
        if found is None:
            raise
        return RecordedProcessorEvent(event=found, created=False)

    return RecordedProcessorEvent(event=event, created=True)


async def record_dispatch_outcome(
    session: AsyncSession,
    *,
    event_id: UUID,
    outcome: str,
    detail: str | None = None,
) -> None:
    """Attach the dispatch result to the audit row."""

    await session.execute(
        update(ProcessorEvent)
        .where(ProcessorEvent.id == event_id)
        .values(dispatch_outcome=outcome, dispatch_detail=detail)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


__all__ = ["ProcessorEvent", "RecordedProcessorEvent", "record_dispatch_outcome", "record_processor_event"]
