"""Add-on subscription models and their paid modification history."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from apiary_api.db.base import Base
from .payment import Organization, PaymentStatusEnum


class ServiceKindEnum(str, Enum):
    """Add-on services attached to a membership."""

    HONEY_HOUSE = "honey_house"
    PARTNER_INSURANCE = "partner_insurance"


class SubscriptionStatusEnum(str, Enum):
    """Derived lifecycle state of a subscription."""

    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_DEPOSIT = "awaiting_deposit"
    AWAITING_VALIDATION = "awaiting_validation"
    ACTIVE = "active"


class DepositStatusEnum(str, Enum):
    """State of the refundable deposit for deposit-bearing services."""

    PENDING = "pending"
    RECEIVED = "received"
    RETURNED = "returned"


class Subscription(Base):
    """Add-on service tied to an active membership."""

    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(String(64), nullable=False, index=True)
    membership_id = Column(
        UUID(as_uuid=True),
        ForeignKey("memberships.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    organization = Column(SqlEnum(Organization, name="organization_enum"), nullable=False)
    service_kind = Column(SqlEnum(ServiceKindEnum, name="service_kind_enum"), nullable=False)
    year = Column(Integer, nullable=False, index=True)
    hive_count = Column(Integer, nullable=False, default=0)
    options_json = Column("options", JSON, nullable=False, default=dict)
    amount_breakdown_json = Column("amount_breakdown", JSON, nullable=True)
    personal_info_json = Column("personal_info", JSON, nullable=True)

    amount = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status = Column(
        SqlEnum(PaymentStatusEnum, name="payment_status_enum"),
        nullable=False,
        default=PaymentStatusEnum.PENDING,
    )
    payment_ref = Column(String(255), nullable=True)
    checkout_session_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_exported = Column(Boolean, nullable=False, default=False)
    payment_exported_at = Column(DateTime(timezone=True), nullable=True)

    deposit_amount = Column(Numeric(10, 2), nullable=True)
    deposit_status = Column(SqlEnum(DepositStatusEnum, name="deposit_status_enum"), nullable=True)
    deposit_received_at = Column(DateTime(timezone=True), nullable=True)
    deposit_returned_at = Column(DateTime(timezone=True), nullable=True)
    deposit_note = Column(Text, nullable=True)

    status = Column(
        SqlEnum(SubscriptionStatusEnum, name="subscription_status_enum"),
        nullable=False,
        default=SubscriptionStatusEnum.AWAITING_PAYMENT,
    )
    partner_validated_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)

    certificate_locator = Column(String(512), nullable=True)
    certificate_issued_at = Column(DateTime(timezone=True), nullable=True)
    eco_contribution_locator = Column(String(512), nullable=True)
    eco_contribution_issued_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    modifications = relationship(
        "SubscriptionModification",
        back_populates="subscription",
        order_by="SubscriptionModification.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "service_kind", "year", name="uq_subscription_owner_kind_year"),
    )


class SubscriptionModification(Base):
    """Paid upgrade appended to a subscription's history."""

    __tablename__ = "subscription_modifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)
    requested_changes_json = Column("requested_changes", JSON, nullable=False)
    options_before_json = Column("options_before", JSON, nullable=False)
    options_after_json = Column("options_after", JSON, nullable=False)
    delta_json = Column("delta", JSON, nullable=True)
    extra_amount = Column(Numeric(10, 2), nullable=False)

    payment_status = Column(
        SqlEnum(PaymentStatusEnum, name="payment_status_enum"),
        nullable=False,
        default=PaymentStatusEnum.PENDING,
    )
    payment_ref = Column(String(255), nullable=True)
    checkout_session_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    applied = Column(Boolean, nullable=False, default=False)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    exported = Column(Boolean, nullable=False, default=False)
    exported_at = Column(DateTime(timezone=True), nullable=True)
    partner_validated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    subscription = relationship("Subscription", back_populates="modifications")

    __table_args__ = (
        UniqueConstraint("subscription_id", "position", name="uq_subscription_modification_position"),
    )


__all__ = [
    "DepositStatusEnum",
    "ServiceKindEnum",
    "Subscription",
    "SubscriptionModification",
    "SubscriptionStatusEnum",
]
