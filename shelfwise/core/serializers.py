"""JSON-ready views of lending entities (also the idempotency cache payloads)."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from shelfwise.database.models import BorrowRequest, Fine, ReturnRequest

CENT = Decimal("0.01")


def money(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(CENT))


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def borrow_request_view(request: BorrowRequest) -> Dict[str, Any]:
    return {
        "id": _id(request.id),
        "user_id": _id(request.user_id),
        "book_id": _id(request.book_id),
        "status": request.status,
        "idempotency_key": request.idempotency_key,
        "inventory_reserved": request.inventory_reserved,
        "requested_at": _iso(request.requested_at),
        "due_date": _iso(request.due_date),
        "borrow_record_id": _id(request.borrow_record_id),
        "admin_notes": request.admin_notes,
    }


def return_request_view(request: ReturnRequest) -> Dict[str, Any]:
    return {
        "id": _id(request.id),
        "user_id": _id(request.user_id),
        "book_id": _id(request.book_id),
        "borrow_record_id": _id(request.borrow_record_id),
        "status": request.status,
        "requested_at": _iso(request.requested_at),
        "rejection_reason": request.rejection_reason,
        "admin_notes": request.admin_notes,
    }


def fine_view(fine: Fine) -> Dict[str, Any]:
    return {
        "id": _id(fine.id),
        "user_id": _id(fine.user_id),
        "book_id": _id(fine.book_id),
        "borrow_record_id": _id(fine.borrow_record_id),
        "fine_type": fine.fine_type,
        "amount": money(fine.amount),
        "paid_amount": money(fine.paid_amount),
        "outstanding": money(fine.outstanding),
        "status": fine.status,
        "days_overdue": fine.days_overdue,
        "is_book_lost": fine.is_book_lost,
        "description": fine.description,
        "breakdown": fine.breakdown,
    }
