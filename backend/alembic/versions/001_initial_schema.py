"""Initial schema: bookings, slot inventory, payment ledger, outbox, ratings.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Slot inventory: one row per bookable slot instance
    op.create_table(
        "slot_inventory",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("activity_id", sa.String(64), nullable=False),
        sa.Column("slot_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("reserved", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.UniqueConstraint("activity_id", "slot_date", "start_time", "end_time", name="uq_slot_inventory_slot"),
        sa.CheckConstraint("reserved >= 0", name="check_slot_reserved_non_negative"),
        sa.CheckConstraint("capacity > 0", name="check_slot_capacity_positive"),
        sa.CheckConstraint("reserved <= capacity", name="check_slot_reserved_lte_capacity"),
    )
    op.create_index("ix_slot_inventory_id", "slot_inventory", ["id"])
    op.create_index("ix_slot_inventory_activity_id", "slot_inventory", ["activity_id"])

    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("activity_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("participant_count", sa.Integer(), nullable=False),
        sa.Column("participant_details", sa.JSON(), nullable=False),
        sa.Column("contact_info", sa.JSON(), nullable=False),
        sa.Column("special_requests", sa.Text(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("base_price", sa.Integer(), nullable=False),
        sa.Column("gross_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_reason", sa.String(255), nullable=True),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        sa.Column("tax_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("tax_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("platform_fee", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processing_fee", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_price", sa.Integer(), nullable=False),
        sa.Column("gateway_payment_id", sa.String(64), nullable=True),
        sa.Column("payment_method", sa.String(20), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_brand", sa.String(50), nullable=True),
        sa.Column("payment_last4", sa.String(4), nullable=True),
        sa.Column("payment_attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_attempt_key", sa.String(64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_amount", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("cancellation_refund_amount", sa.Integer(), nullable=True),
        sa.Column("refund_processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("refund_id", sa.String(64), nullable=True),
        sa.Column("review_rating", sa.Integer(), nullable=True),
        sa.Column("review_comment", sa.Text(), nullable=True),
        sa.Column("review_submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vendor_notes", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.UniqueConstraint("reference", name="uq_bookings_reference"),
        sa.UniqueConstraint("gateway_payment_id", name="uq_bookings_gateway_payment_id"),
        sa.CheckConstraint("participant_count > 0", name="check_booking_participants_positive"),
        sa.CheckConstraint("total_price >= 0", name="check_booking_total_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled', 'no_show')",
            name="check_booking_status",
        ),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'paid', 'failed', 'refunded')",
            name="check_booking_payment_status",
        ),
        sa.CheckConstraint(
            "review_rating IS NULL OR (review_rating BETWEEN 1 AND 5 AND status = 'completed')",
            name="check_booking_review_completed",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_activity_id", "bookings", ["activity_id"])
    op.create_index("ix_bookings_vendor_id", "bookings", ["vendor_id"])
    # Attendee sets and capacity audits filter by slot and status
    op.create_index("ix_bookings_slot", "bookings", ["activity_id", "booking_date", "start_time", "status"])

    # Inbound payment notification ledger
    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("gateway_payment_id", sa.String(64), nullable=True),
        sa.Column("payment_status", sa.String(32), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'received'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("booking_reference", sa.String(32), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("event_id", name="uq_payment_events_event_id"),
    )
    op.create_index("ix_payment_events_id", "payment_events", ["id"])
    op.create_index("ix_payment_events_gateway_payment_id", "payment_events", ["gateway_payment_id"])
    op.create_index("ix_payment_events_status_next_attempt", "payment_events", ["status", "next_attempt_at"])

    # Transactional outbox
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("aggregate_id", sa.String(64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(160), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("idempotency_key", name="uq_outbox_events_idempotency_key"),
    )
    op.create_index("ix_outbox_events_id", "outbox_events", ["id"])
    op.create_index("ix_outbox_events_status_next_attempt", "outbox_events", ["status", "next_attempt_at"])

    # Ratings
    op.create_table(
        "ratings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rater_id", sa.String(64), nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("event_rating", sa.Integer(), nullable=False),
        sa.Column("partner_rating", sa.Integer(), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'submitted'")),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("moderated_by", sa.String(64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("rater_id", "event_id", name="uq_rating_rater_event"),
        sa.CheckConstraint("event_rating BETWEEN 1 AND 5", name="check_rating_event_range"),
        sa.CheckConstraint("partner_rating BETWEEN 1 AND 5", name="check_rating_partner_range"),
    )
    op.create_index("ix_ratings_id", "ratings", ["id"])
    op.create_index("ix_ratings_rater_id", "ratings", ["rater_id"])
    op.create_index("ix_ratings_event_id", "ratings", ["event_id"])

    op.create_table(
        "participant_ratings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rating_id", sa.Integer(), sa.ForeignKey("ratings.id"), nullable=False),
        sa.Column("participant_id", sa.String(64), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.String(500), nullable=True),
        sa.UniqueConstraint("rating_id", "participant_id", name="uq_participant_rating"),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="check_participant_rating_range"),
    )
    op.create_index("ix_participant_ratings_id", "participant_ratings", ["id"])
    op.create_index("ix_participant_ratings_rating_id", "participant_ratings", ["rating_id"])
    op.create_index("ix_participant_ratings_participant_id", "participant_ratings", ["participant_id"])

    op.create_table(
        "community_ratings",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("average_rating", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_ratings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("distribution", sa.JSON(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("community_ratings")
    op.drop_table("participant_ratings")
    op.drop_table("ratings")
    op.drop_table("outbox_events")
    op.drop_table("payment_events")
    op.drop_table("bookings")
    op.drop_table("slot_inventory")
