"""
Pydantic schemas for API request/response models.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CreateBorrowRequest(BaseModel):
    """Request schema for submitting a borrow request."""

    user_id: UUID = Field(..., description="Borrower")
    book_id: UUID = Field(..., description="Requested book")
    confirmation_text: str = Field(
        ..., description="Displayed code, the word 'confirm', or part of the book title"
    )
    idempotency_key: Optional[str] = Field(
        default=None, max_length=255, description="Client idempotency key (also read from header)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "123e4567-e89b-12d3-a456-426614174000",
                    "book_id": "9b2f9d4e-7a51-4c0e-8d6e-2f1c3a4b5d6e",
                    "confirmation_text": "K7Q2ZP",
                }
            ]
        }
    }


class DecisionRequest(BaseModel):
    """Admin decision on a borrow request or a return approval."""

    admin_id: UUID = Field(..., description="Admin making the decision")
    notes: Optional[str] = Field(default=None, description="Notes passed to the borrower")


class RejectReturnRequest(BaseModel):
    admin_id: UUID = Field(..., description="Admin making the decision")
    reason: str = Field(..., min_length=1, description="Why the return was not accepted")


class CreateReturnRequest(BaseModel):
    user_id: UUID = Field(..., description="Borrower returning the book")
    borrow_record_id: UUID = Field(..., description="Active loan")
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class BorrowRequestResponse(BaseModel):
    """Response schema for borrow requests."""

    id: str = Field(..., description="Borrow request ID")
    user_id: str
    book_id: str
    status: str = Field(..., description="PENDING, APPROVED or REJECTED")
    idempotency_key: Optional[str] = None
    inventory_reserved: bool = Field(..., description="Copy held since request time")
    requested_at: Optional[str] = None
    due_date: Optional[str] = Field(default=None, description="Set on approval (ISO 8601)")
    borrow_record_id: Optional[str] = Field(default=None, description="Set on approval")
    admin_notes: Optional[str] = None


class ReturnRequestResponse(BaseModel):
    """Response schema for return requests."""

    id: str
    user_id: str
    book_id: str
    borrow_record_id: str
    status: str
    requested_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    fine: Optional[Dict[str, Any]] = Field(
        default=None, description="Fine charged on approval of a late return"
    )


class WaiveFineRequest(BaseModel):
    admin_id: UUID
    reason: str = Field(..., min_length=1)


class ApplyPaymentRequest(BaseModel):
    """Manual payment entry (cash desk or admin correction)."""

    user_id: UUID
    fine_ids: List[UUID] = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Amount paid in dollars")
    payment_reference: Optional[str] = Field(default=None, max_length=255)
    payment_method: str = Field(default="manual", max_length=50)


class SubscriptionRequest(BaseModel):
    user_id: UUID
    book_id: UUID


class JobRequest(BaseModel):
    as_of: Optional[date] = Field(default=None, description="Evaluate as of this day (default today)")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual service health checks")
    feature_flags: Dict[str, bool] = Field(default_factory=dict)
