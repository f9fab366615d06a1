"""Membership ledger models."""

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
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from apiary_api.db.base import Base
from .payment import Organization, PaymentSourceEnum, PaymentStatusEnum


class MembershipStatusEnum(str, Enum):
    """Lifecycle state of a yearly membership."""

    PENDING = "pending"
    PAYMENT_REQUESTED = "payment_requested"
    ACTIVE = "active"
    REFUSED = "refused"
    EXPIRED = "expired"


class MembershipCategoryEnum(str, Enum):
    """Beekeeping activity category, drives the membership fee."""

    HOBBYIST = "hobbyist"
    PROFESSIONAL = "professional"


class Membership(Base):
    """One (owner, organization, year) enrollment."""

    __tablename__ = "memberships"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(String(64), nullable=False, index=True)
    contact_email = Column(String(255), nullable=True)
    organization = Column(SqlEnum(Organization, name="organization_enum"), nullable=False)
    year = Column(Integer, nullable=False, index=True)
    category = Column(SqlEnum(MembershipCategoryEnum, name="membership_category_enum"), nullable=False)
    apiary_registration = Column(String(64), nullable=True)
    hive_count = Column(Integer, nullable=True)
    apiary_details_json = Column("apiary_details", JSON, nullable=True)

    amount = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status = Column(
        SqlEnum(PaymentStatusEnum, name="payment_status_enum"),
        nullable=False,
        default=PaymentStatusEnum.PENDING,
    )
    payment_ref = Column(String(255), nullable=True)
    payment_source = Column(SqlEnum(PaymentSourceEnum, name="payment_source_enum"), nullable=True)
    checkout_session_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        SqlEnum(MembershipStatusEnum, name="membership_status_enum"),
        nullable=False,
        default=MembershipStatusEnum.PENDING,
    )
    payment_requested_at = Column(DateTime(timezone=True), nullable=True)
    validated_at = Column(DateTime(timezone=True), nullable=True)
    refused_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    grants_free_companion = Column(Boolean, nullable=False, default=False)
    free_via_companion = Column(Boolean, nullable=False, default=False)
    companion_of_id = Column(
        UUID(as_uuid=True),
        ForeignKey("memberships.id", ondelete="SET NULL"),
        nullable=True,
    )

    certificate_locator = Column(String(512), nullable=True)
    certificate_issued_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "organization", "year", name="uq_membership_owner_org_year"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in (MembershipStatusEnum.PENDING, MembershipStatusEnum.PAYMENT_REQUESTED)


__all__ = ["Membership", "MembershipCategoryEnum", "MembershipStatusEnum"]
