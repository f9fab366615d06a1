"""Create membership, subscription, export and reconciliation tables."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS: dict[str, tuple[str, ...]] = {
    "organization_enum": ("SAR", "AMAIR"),
    "payment_status_enum": ("PENDING", "PAID"),
    "payment_source_enum": ("GATEWAY", "RECONCILIATION", "MANUAL", "COMPANION"),
    "membership_status_enum": ("PENDING", "PAYMENT_REQUESTED", "ACTIVE", "REFUSED", "EXPIRED"),
    "membership_category_enum": ("HOBBYIST", "PROFESSIONAL"),
    "service_kind_enum": ("HONEY_HOUSE", "PARTNER_INSURANCE"),
    "subscription_status_enum": (
        "AWAITING_PAYMENT",
        "AWAITING_DEPOSIT",
        "AWAITING_VALIDATION",
        "ACTIVE",
    ),
    "deposit_status_enum": ("PENDING", "RECEIVED", "RETURNED"),
    "export_batch_status_enum": ("GENERATED", "SENT"),
    "export_item_kind_enum": ("SUBSCRIPTION", "MODIFICATION"),
}


def _enum(name: str) -> sa.Enum:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "memberships",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("organization", _enum("organization_enum"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("category", _enum("membership_category_enum"), nullable=False),
        sa.Column("apiary_registration", sa.String(length=64), nullable=True),
        sa.Column("hive_count", sa.Integer(), nullable=True),
        sa.Column("apiary_details", sa.JSON(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("payment_status", _enum("payment_status_enum"), nullable=False, server_default="PENDING"),
        sa.Column("payment_ref", sa.String(length=255), nullable=True),
        sa.Column("payment_source", _enum("payment_source_enum"), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", _enum("membership_status_enum"), nullable=False, server_default="PENDING"),
        sa.Column("payment_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grants_free_companion", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("free_via_companion", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("companion_of_id", _uuid(), nullable=True),
        sa.Column("certificate_locator", sa.String(length=512), nullable=True),
        sa.Column("certificate_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["companion_of_id"], ["memberships.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("owner_id", "organization", "year", name="uq_membership_owner_org_year"),
    )
    op.create_index("ix_memberships_owner_id", "memberships", ["owner_id"])
    op.create_index("ix_memberships_year", "memberships", ["year"])

    op.create_table(
        "subscriptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("membership_id", _uuid(), nullable=False),
        sa.Column("organization", _enum("organization_enum"), nullable=False),
        sa.Column("service_kind", _enum("service_kind_enum"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("hive_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("options", sa.JSON(), nullable=False),
        sa.Column("amount_breakdown", sa.JSON(), nullable=True),
        sa.Column("personal_info", sa.JSON(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("payment_status", _enum("payment_status_enum"), nullable=False, server_default="PENDING"),
        sa.Column("payment_ref", sa.String(length=255), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_exported", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payment_exported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("deposit_status", _enum("deposit_status_enum"), nullable=True),
        sa.Column("deposit_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_returned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_note", sa.Text(), nullable=True),
        sa.Column(
            "status",
            _enum("subscription_status_enum"),
            nullable=False,
            server_default="AWAITING_PAYMENT",
        ),
        sa.Column("partner_validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("certificate_locator", sa.String(length=512), nullable=True),
        sa.Column("certificate_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("eco_contribution_locator", sa.String(length=512), nullable=True),
        sa.Column("eco_contribution_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("owner_id", "service_kind", "year", name="uq_subscription_owner_kind_year"),
    )
    op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"])
    op.create_index("ix_subscriptions_membership_id", "subscriptions", ["membership_id"])
    op.create_index("ix_subscriptions_year", "subscriptions", ["year"])

    op.create_table(
        "subscription_modifications",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("subscription_id", _uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("requested_changes", sa.JSON(), nullable=False),
        sa.Column("options_before", sa.JSON(), nullable=False),
        sa.Column("options_after", sa.JSON(), nullable=False),
        sa.Column("delta", sa.JSON(), nullable=True),
        sa.Column("extra_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_status", _enum("payment_status_enum"), nullable=False, server_default="PENDING"),
        sa.Column("payment_ref", sa.String(length=255), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exported", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("exported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("partner_validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("subscription_id", "position", name="uq_subscription_modification_position"),
    )
    op.create_index(
        "ix_subscription_modifications_subscription_id",
        "subscription_modifications",
        ["subscription_id"],
    )

    op.create_table(
        "export_batches",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("batch_date", sa.Date(), nullable=False),
        sa.Column("is_first_of_year", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_locator", sa.String(length=512), nullable=False),
        sa.Column("status", _enum("export_batch_status_enum"), nullable=False, server_default="GENERATED"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_export_batches_year", "export_batches", ["year"])

    op.create_table(
        "export_batch_items",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("batch_id", _uuid(), nullable=False),
        sa.Column("item_key", sa.String(length=128), nullable=False),
        sa.Column("item_kind", _enum("export_item_kind_enum"), nullable=False),
        sa.Column("subscription_id", _uuid(), nullable=False),
        sa.Column("modification_position", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["batch_id"], ["export_batches.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("item_key", name="uq_export_batch_item_key"),
    )
    op.create_index("ix_export_batch_items_batch_id", "export_batch_items", ["batch_id"])

    op.create_table(
        "processor_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="stripe"),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("dispatch_outcome", sa.String(length=32), nullable=True),
        sa.Column("dispatch_detail", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("provider", "external_id", name="uq_processor_event_provider_external"),
    )

    op.create_table(
        "payment_reconciliation_runs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("triggered_by", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="running"),
        sa.Column("window_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("already_processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_payment_reconciliation_runs_started_at",
        "payment_reconciliation_runs",
        ["started_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_payment_reconciliation_runs_started_at", table_name="payment_reconciliation_runs")
    op.drop_table("payment_reconciliation_runs")
    op.drop_table("processor_events")
    op.drop_index("ix_export_batch_items_batch_id", table_name="export_batch_items")
    op.drop_table("export_batch_items")
    op.drop_index("ix_export_batches_year", table_name="export_batches")
    op.drop_table("export_batches")
    op.drop_index("ix_subscription_modifications_subscription_id", table_name="subscription_modifications")
    op.drop_table("subscription_modifications")
    op.drop_index("ix_subscriptions_year", table_name="subscriptions")
    op.drop_index("ix_subscriptions_membership_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_owner_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_memberships_year", table_name="memberships")
    op.drop_index("ix_memberships_owner_id", table_name="memberships")
    op.drop_table("memberships")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        sa.Enum(name=name).drop(bind, checkfirst=True)
