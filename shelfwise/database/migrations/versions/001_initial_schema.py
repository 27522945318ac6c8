"""Initial lending schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)
MONEY = sa.Numeric(precision=10, scale=2)


def upgrade() -> None:
    """Upgrade database schema."""
    # Create users table
    op.create_table(
        "users",
        sa.Column("id", UUID, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("total_fines_owed", MONEY, nullable=False, server_default="0.00"),
        sa.Column("is_restricted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("restriction_reason", sa.Text(), nullable=True),
        sa.Column("restricted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_fines_owed >= 0", name="non_negative_fines_owed"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("idx_users_restricted", "users", ["is_restricted"], unique=False)

    # Create books table
    op.create_table(
        "books",
        sa.Column("id", UUID, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("author", sa.String(length=255), nullable=True),
        sa.Column("total_copies", sa.Integer(), nullable=False),
        sa.Column("available_copies", sa.Integer(), nullable=False),
        sa.Column("reserve_on_request", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("price", MONEY, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_copies >= 0", name="non_negative_total_copies"),
        sa.CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="available_copies_in_range",
        ),
        sa.CheckConstraint("price IS NULL OR price >= 0", name="non_negative_price"),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create borrow_records table
    op.create_table(
        "borrow_records",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("book_id", UUID, nullable=False),
        sa.Column("borrow_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("return_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.CheckConstraint(
            "status IN ('BORROWED', 'RETURNED')", name="valid_borrow_record_status"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_borrow_records_status_due", "borrow_records", ["status", "due_date"], unique=False
    )
    op.create_index(op.f("ix_borrow_records_user_id"), "borrow_records", ["user_id"], unique=False)
    op.create_index(op.f("ix_borrow_records_book_id"), "borrow_records", ["book_id"], unique=False)

    # Create borrow_requests table
    op.create_table(
        "borrow_requests",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("book_id", UUID, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("inventory_reserved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("borrow_record_id", UUID, nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("processed_by", UUID, nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="valid_borrow_request_status",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"]),
        sa.ForeignKeyConstraint(["borrow_record_id"], ["borrow_records.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "idx_borrow_requests_user_book_status",
        "borrow_requests",
        ["user_id", "book_id", "status"],
        unique=False,
    )
    op.create_index(op.f("ix_borrow_requests_user_id"), "borrow_requests", ["user_id"], unique=False)
    op.create_index(op.f("ix_borrow_requests_book_id"), "borrow_requests", ["book_id"], unique=False)

    # Create return_requests table
    op.create_table(
        "return_requests",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("book_id", UUID, nullable=False),
        sa.Column("borrow_record_id", UUID, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("processed_by", UUID, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="valid_return_request_status",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"]),
        sa.ForeignKeyConstraint(["borrow_record_id"], ["borrow_records.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_return_requests_user_id"), "return_requests", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_return_requests_borrow_record_id"),
        "return_requests",
        ["borrow_record_id"],
        unique=False,
    )

    # Create fines table (one fine per loan)
    op.create_table(
        "fines",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("book_id", UUID, nullable=False),
        sa.Column("borrow_record_id", UUID, nullable=False),
        sa.Column("fine_type", sa.String(length=20), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("paid_amount", MONEY, nullable=False, server_default="0.00"),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("days_overdue", sa.Integer(), nullable=False),
        sa.Column("is_book_lost", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("breakdown", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("calculation_date", sa.Date(), nullable=False),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waived_by", UUID, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="non_negative_fine_amount"),
        sa.CheckConstraint("paid_amount >= 0", name="non_negative_paid_amount"),
        sa.CheckConstraint("fine_type IN ('LATE_RETURN', 'LOST_BOOK')", name="valid_fine_type"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PARTIAL_PAID', 'PAID', 'WAIVED')",
            name="valid_fine_status",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"]),
        sa.ForeignKeyConstraint(["borrow_record_id"], ["borrow_records.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("borrow_record_id"),
    )
    op.create_index("idx_fines_user_status", "fines", ["user_id", "status"], unique=False)
    op.create_index(op.f("ix_fines_user_id"), "fines", ["user_id"], unique=False)

    # Create fine_payments table
    op.create_table(
        "fine_payments",
        sa.Column("id", UUID, nullable=False),
        sa.Column("fine_id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=False),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_payment_amount"),
        sa.ForeignKeyConstraint(["fine_id"], ["fines.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_fine_payments_fine_id"), "fine_payments", ["fine_id"], unique=False)
    op.create_index(
        op.f("ix_fine_payments_payment_reference"),
        "fine_payments",
        ["payment_reference"],
        unique=False,
    )

    # Create notification_preferences table
    op.create_table(
        "notification_preferences",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("book_id", UUID, nullable=False),
        sa.Column("notify_on_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "book_id", name="uq_notification_user_book"),
    )
    op.create_index(
        "idx_notification_book_active",
        "notification_preferences",
        ["book_id", "notify_on_available"],
        unique=False,
    )

    # Create audit_logs table
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor_type", sa.String(length=20), nullable=False),
        sa.Column("actor_id", UUID, nullable=True),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="INFO"),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_logs_action"), "audit_logs", ["action"], unique=False)
    op.create_index(op.f("ix_audit_logs_entity_id"), "audit_logs", ["entity_id"], unique=False)
    op.create_index(op.f("ix_audit_logs_created_at"), "audit_logs", ["created_at"], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("audit_logs")
    op.drop_table("notification_preferences")
    op.drop_table("fine_payments")
    op.drop_table("fines")
    op.drop_table("return_requests")
    op.drop_table("borrow_requests")
    op.drop_table("borrow_records")
    op.drop_table("books")
    op.drop_table("users")
