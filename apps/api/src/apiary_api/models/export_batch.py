"""Partner export batches and the items they claimed."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from apiary_api.db.base import Base


class ExportBatchStatusEnum(str, Enum):
    """Delivery state of an export batch."""

    GENERATED = "generated"
    SENT = "sent"


class ExportItemKindEnum(str, Enum):
    """Kind of paid item carried by an export row."""

    SUBSCRIPTION = "subscription"
    MODIFICATION = "modification"


class ExportBatch(Base):
    """One file submitted to the downstream partner."""

    __tablename__ = "export_batches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    year = Column(Integer, nullable=False, index=True)
    batch_date = Column(Date, nullable=False)
    is_first_of_year = Column(Boolean, nullable=False, default=False)
    item_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    file_name = Column(String(255), nullable=False)
    file_locator = Column(String(512), nullable=False)
    status = Column(
        SqlEnum(ExportBatchStatusEnum, name="export_batch_status_enum"),
        nullable=False,
        default=ExportBatchStatusEnum.GENERATED,
    )
    sent_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    notes_json = Column("notes", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    items = relationship(
        "ExportBatchItem",
        back_populates="batch",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def subscription_ids(self) -> list:
        return [item.subscription_id for item in self.items if item.item_kind == ExportItemKindEnum.SUBSCRIPTION]

    @property
    def modification_keys(self) -> list[tuple]:
        return [
            (item.subscription_id, item.modification_position)
            for item in self.items
            if item.item_kind == ExportItemKindEnum.MODIFICATION
        ]


class ExportBatchItem(Base):
    """Claim of a single paid item by an export batch."""

    __tablename__ = "export_batch_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    batch_id = Column(
        UUID(as_uuid=True),
        ForeignKey("export_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_key = Column(String(128), nullable=False)
    item_kind = Column(SqlEnum(ExportItemKindEnum, name="export_item_kind_enum"), nullable=False)
    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    modification_position = Column(Integer, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)

    batch = relationship("ExportBatch", back_populates="items")

    __table_args__ = (UniqueConstraint("item_key", name="uq_export_batch_item_key"),)


__all__ = ["ExportBatch", "ExportBatchItem", "ExportBatchStatusEnum", "ExportItemKindEnum"]
