"""Database package: models and async session management."""
from .connection import build_engine, build_session_factory, init_db
from .models import (
    AuditLog,
    Base,
    Book,
    BorrowRecord,
    BorrowRequest,
    Fine,
    FinePayment,
    NotificationPreference,
    ReturnRequest,
    User,
)

__all__ = [
    "AuditLog",
    "Base",
    "Book",
    "BorrowRecord",
    "BorrowRequest",
    "Fine",
    "FinePayment",
    "NotificationPreference",
    "ReturnRequest",
    "User",
    "build_engine",
    "build_session_factory",
    "init_db",
]
