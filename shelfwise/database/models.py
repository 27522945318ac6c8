"""SQLAlchemy database models for the lending library."""
import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

Money = Numeric(10, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BorrowStatus(str, enum.Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"


class FineType(str, enum.Enum):
    LATE_RETURN = "LATE_RETURN"
    LOST_BOOK = "LOST_BOOK"


class FineStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL_PAID = "PARTIAL_PAID"
    PAID = "PAID"
    WAIVED = "WAIVED"


OUTSTANDING_FINE_STATUSES = (FineStatus.PENDING.value, FineStatus.PARTIAL_PAID.value)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Library members.

    The fine balance and restriction fields are owned by the restriction
    and payment components and are only changed with atomic SQL expressions.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_fines_owed: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    is_restricted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    restriction_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    restricted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_fines_owed >= 0", name="non_negative_fines_owed"),
        Index("idx_users_restricted", "is_restricted"),
    )

    def __repr__(self) -> str:
        """String representation of User."""
        return (
            f"<User(id={self.id}, owed={self.total_fines_owed}, "
            f"restricted={self.is_restricted})>"
        )


class Book(Base):
    """Catalogue entry. available_copies is mutated only by the inventory ledger."""

    __tablename__ = "books"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    available_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    reserve_on_request: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="non_negative_total_copies"),
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="available_copies_in_range",
        ),
        CheckConstraint("price IS NULL OR price >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        """String representation of Book."""
        return (
            f"<Book(id={self.id}, title={self.title!r}, "
            f"available={self.available_copies}/{self.total_copies})>"
        )


class BorrowRequest(Base):
    """
    Borrow requests awaiting an admin decision.

    PENDING is the only mutable state. inventory_reserved records whether a
    copy was taken at creation time, so rejection knows whether to release it.
    """

    __tablename__ = "borrow_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RequestStatus.PENDING.value
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    inventory_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    borrow_record_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("borrow_records.id"), nullable=True
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')", name="valid_borrow_request_status"
        ),
        Index("idx_borrow_requests_user_book_status", "user_id", "book_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of BorrowRequest."""
        return f"<BorrowRequest(id={self.id}, book_id={self.book_id}, status={self.status})>"


class BorrowRecord(Base):
    """A live or closed loan."""

    __tablename__ = "borrow_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id"), nullable=False, index=True
    )
    borrow_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    return_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BorrowStatus.BORROWED.value
    )

    __table_args__ = (
        CheckConstraint("status IN ('BORROWED', 'RETURNED')", name="valid_borrow_record_status"),
        Index("idx_borrow_records_status_due", "status", "due_date"),
    )

    def __repr__(self) -> str:
        """String representation of BorrowRecord."""
        return (
            f"<BorrowRecord(id={self.id}, status={self.status}, due={self.due_date})>"
        )


class ReturnRequest(Base):
    """Return requests awaiting an admin decision."""

    __tablename__ = "return_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    book_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("books.id"), nullable=False)
    borrow_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("borrow_records.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RequestStatus.PENDING.value
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')", name="valid_return_request_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of ReturnRequest."""
        return (
            f"<ReturnRequest(id={self.id}, record={self.borrow_record_id}, "
            f"status={self.status})>"
        )


class Fine(Base):
    """
    Late-return penalties.

    At most one fine per borrow record; the unique constraint is what makes
    overlapping fine sweeps safe.
    """

    __tablename__ = "fines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    book_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("books.id"), nullable=False)
    borrow_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("borrow_records.id"), nullable=False, unique=True
    )
    fine_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FineStatus.PENDING.value
    )
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False)
    is_book_lost: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    breakdown: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    calculation_date: Mapped[date] = mapped_column(Date, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waived_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_fine_amount"),
        CheckConstraint("paid_amount >= 0", name="non_negative_paid_amount"),
        CheckConstraint(
            "fine_type IN ('LATE_RETURN', 'LOST_BOOK')", name="valid_fine_type"
        ),
        CheckConstraint(
            "status IN ('PENDING', 'PARTIAL_PAID', 'PAID', 'WAIVED')", name="valid_fine_status"
        ),
        Index("idx_fines_user_status", "user_id", "status"),
    )

    @property
    def outstanding(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.paid_amount)

    def __repr__(self) -> str:
        """String representation of Fine."""
        return (
            f"<Fine(id={self.id}, amount={self.amount}, paid={self.paid_amount}, "
            f"status={self.status})>"
        )


class FinePayment(Base):
    """Append-only ledger of amounts applied to fines."""

    __tablename__ = "fine_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fine_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fines.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (CheckConstraint("amount > 0", name="positive_payment_amount"),)

    def __repr__(self) -> str:
        """String representation of FinePayment."""
        return f"<FinePayment(id={self.id}, fine_id={self.fine_id}, amount={self.amount})>"


class NotificationPreference(Base):
    """Per (user, book) "notify me when available" subscription."""

    __tablename__ = "notification_preferences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    book_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("books.id"), nullable=False)
    notify_on_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_notification_user_book"),
        Index("idx_notification_book_active", "book_id", "notify_on_available"),
    )

    def __repr__(self) -> str:
        """String representation of NotificationPreference."""
        return (
            f"<NotificationPreference(user_id={self.user_id}, book_id={self.book_id}, "
            f"active={self.notify_on_available})>"
        )


class AuditLog(Base):
    """
    Audit trail of state transitions.

    Immutable once written.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="INFO")
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of AuditLog."""
        return f"<AuditLog(id={self.id}, action={self.action}, entity={self.entity_id})>"
