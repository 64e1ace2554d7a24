"""create booking engine tables

Revision ID: 20261018_0900
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_0900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "venue_tables",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("capacity_min", sa.Integer(), nullable=False),
        sa.Column("capacity_max", sa.Integer(), nullable=False),
        sa.Column("floor", sa.String(length=20), nullable=False),
        sa.Column("combinable_with", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("capacity_min <= capacity_max", name="ck_table_capacity_range"),
    )

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("phone", sa.String(length=30), nullable=True),
        sa.Column("push_token", sa.String(length=255), nullable=True),
        sa.Column("loyalty_tier", sa.String(length=20), nullable=False),
        sa.Column("is_vip", sa.Boolean(), nullable=False),
        sa.Column("attempted_excess_bookings", sa.Integer(), nullable=False),
        sa.Column("risk_flags", sa.JSON(), nullable=False),
        sa.Column("consent_sms", sa.Boolean(), nullable=False),
        sa.Column("consent_push", sa.Boolean(), nullable=False),
        sa.Column("consent_marketing_email", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("reference", sa.String(length=20), nullable=False, unique=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("time_slot", sa.String(length=5), nullable=True),
        sa.Column("table_ids", sa.JSON(), nullable=False),
        sa.Column("party_size", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_method_id", sa.String(length=100), nullable=True),
        sa.Column("waitlist_entry_id", postgresql.UUID(as_uuid=True), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
    )
    op.create_index("ix_bookings_booking_date", "bookings", ["booking_date"])

    op.create_table(
        "waitlist_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("preferred_date", sa.Date(), nullable=False),
        sa.Column("preferred_time", sa.String(length=5), nullable=False),
        sa.Column("party_size", sa.Integer(), nullable=False),
        sa.Column("floor", sa.String(length=20), nullable=True),
        sa.Column("alternative_times", sa.JSON(), nullable=False),
        sa.Column("accepts_combination", sa.Boolean(), nullable=False),
        sa.Column("special_occasion", sa.String(length=100), nullable=True),
        sa.Column("notification_channels", sa.JSON(), nullable=False),
        sa.Column("loyalty_tier", sa.String(length=20), nullable=False),
        sa.Column("rank", sa.Float(), nullable=False),
        sa.Column("priority", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("notified_at", sa.DateTime(), nullable=True),
        sa.Column("reservation_expires_at", sa.DateTime(), nullable=True),
        sa.Column("offered_table_ids", sa.JSON(), nullable=False),
        sa.Column("offered_time_slot", sa.String(length=5), nullable=True),
        sa.Column("requeue_count", sa.Integer(), nullable=False),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_waitlist_entries_customer_id", "waitlist_entries", ["customer_id"])
    op.create_index("ix_waitlist_date_status", "waitlist_entries", ["preferred_date", "status"])

    op.create_table(
        "slot_holds",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("table_id", sa.Integer(), nullable=False),
        sa.Column("entry_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("booking_date", "table_id", name="uq_slot_hold_date_table"),
    )

    op.create_table(
        "notification_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entry_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_notification_deliveries_entry_id", "notification_deliveries", ["entry_id"])


def downgrade() -> None:
    op.drop_index("ix_notification_deliveries_entry_id", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_table("slot_holds")
    op.drop_index("ix_waitlist_date_status", table_name="waitlist_entries")
    op.drop_index("ix_waitlist_entries_customer_id", table_name="waitlist_entries")
    op.drop_table("waitlist_entries")
    op.drop_index("ix_bookings_booking_date", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("customers")
    op.drop_table("venue_tables")
