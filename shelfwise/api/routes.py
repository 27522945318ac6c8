"""
API routes for the lending engine.

Authentication is handled upstream; callers pass user and admin ids.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shelfwise.core.errors import OperationResult
from shelfwise.integrations.stripe_webhook import StripeWebhookAdapter, WebhookError
from shelfwise.monitoring.health import HealthCheck
from shelfwise.services import LendingServices

from .schemas import (
    ApplyPaymentRequest,
    BorrowRequestResponse,
    CreateBorrowRequest,
    CreateReturnRequest,
    DecisionRequest,
    HealthCheckResponse,
    JobRequest,
    RejectReturnRequest,
    ReturnRequestResponse,
    SubscriptionRequest,
    WaiveFineRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
borrow_router = APIRouter(prefix="/borrow-requests", tags=["borrowing"])
return_router = APIRouter(prefix="/return-requests", tags=["returns"])
account_router = APIRouter(tags=["accounts"])
notification_router = APIRouter(prefix="/notifications", tags=["notifications"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> LendingServices:
    return request.app.state.services


def unwrap(result: OperationResult) -> Any:
    """Return the value of a successful result or raise its error for the LendingError handler."""
    if result.ok:
        return result.value
    raise result.error


# Borrowing

@borrow_router.post(
    "",
    response_model=BorrowRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a borrow request",
    description="Idempotent: retries with the same Idempotency-Key return the same request",
)
async def create_borrow_request(
    body: CreateBorrowRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_create_borrow_request", user_id=str(body.user_id), book_id=str(body.book_id))
    result = await services.borrowing.create_borrow_request(
        body.user_id,
        body.book_id,
        body.confirmation_text,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return unwrap(result)


@borrow_router.get("/pending", summary="Pending borrow requests (admin queue)")
async def list_pending_borrow_requests(
    services: LendingServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.borrowing.list_pending_borrow_requests()


@borrow_router.post(
    "/{request_id}/approve",
    response_model=BorrowRequestResponse,
    summary="Approve a borrow request",
)
async def approve_borrow_request(
    request_id: UUID,
    body: DecisionRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.borrowing.approve_borrow_request(request_id, body.admin_id, body.notes)
    return unwrap(result)


@borrow_router.post(
    "/{request_id}/reject",
    response_model=BorrowRequestResponse,
    summary="Reject a borrow request",
)
async def reject_borrow_request(
    request_id: UUID,
    body: DecisionRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.borrowing.reject_borrow_request(request_id, body.admin_id, body.notes)
    return unwrap(result)


@account_router.get("/borrow-status", summary="Borrow status of a user for a book")
async def get_borrow_status(
    user_id: UUID,
    book_id: UUID,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.borrowing.get_borrow_status(user_id, book_id)


# Returns

@return_router.post(
    "",
    response_model=ReturnRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a return request",
)
async def create_return_request(
    body: CreateReturnRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.returns.create_return_request(
        body.user_id,
        body.borrow_record_id,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return unwrap(result)


@return_router.get("/pending", summary="Pending return requests (admin queue)")
async def list_pending_return_requests(
    services: LendingServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.returns.list_pending_return_requests()


@return_router.post(
    "/{request_id}/approve",
    response_model=ReturnRequestResponse,
    summary="Approve a return request",
)
async def approve_return_request(
    request_id: UUID,
    body: DecisionRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.returns.approve_return_request(request_id, body.admin_id, body.notes)
    return unwrap(result)


@return_router.post(
    "/{request_id}/reject",
    response_model=ReturnRequestResponse,
    summary="Reject a return request",
)
async def reject_return_request(
    request_id: UUID,
    body: RejectReturnRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.returns.reject_return_request(request_id, body.admin_id, body.reason)
    return unwrap(result)


# Accounts and payments

@account_router.get("/users/{user_id}/fines", summary="Fine balance and outstanding fines")
async def get_user_fines(
    user_id: UUID,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return unwrap(await services.fines.get_user_fine_status(user_id))


@account_router.get("/users/{user_id}/eligibility", summary="Whether a user may borrow")
async def get_borrow_eligibility(
    user_id: UUID,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.restrictions.check_borrow_eligibility(user_id)


@account_router.post("/fines/{fine_id}/waive", summary="Waive a fine")
async def waive_fine(
    fine_id: UUID,
    body: WaiveFineRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return unwrap(await services.fines.waive_fine(fine_id, body.admin_id, body.reason))


@account_router.post("/payments/apply", summary="Apply a payment to fines")
async def apply_payment(
    body: ApplyPaymentRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.payments.apply_payment(
        body.user_id,
        body.fine_ids,
        body.amount,
        payment_reference=body.payment_reference,
        payment_method=body.payment_method,
    )
    return unwrap(result)


# Notifications

@notification_router.post("/subscriptions", summary="Notify me when a book is available")
async def subscribe(
    body: SubscriptionRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return unwrap(await services.notifications.subscribe(body.user_id, body.book_id))


@notification_router.delete("/subscriptions", summary="Stop availability notifications")
async def unsubscribe(
    body: SubscriptionRequest,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return unwrap(await services.notifications.unsubscribe(body.user_id, body.book_id))


# Webhooks

@webhook_router.post("/stripe", summary="Stripe webhook endpoint")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Verify and reconcile a Stripe checkout event.

    Duplicate deliveries are absorbed by the payment reconciler.
    """
    adapter = StripeWebhookAdapter(services.settings.stripe_webhook_secret)
    payload = await request.body()

    try:
        event = adapter.verify_signature(payload, stripe_signature)
        checkout = adapter.to_checkout_event(event)
    except WebhookError as e:
        logger.warning("api_webhook_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if checkout is None:
        return {"status": "ignored", "event_type": event.get("type")}
    return unwrap(await services.payments.reconcile_checkout_session(checkout))


# Admin jobs

@admin_router.post("/jobs/fines", summary="Run the fine sweep now")
async def run_fine_sweep(
    body: Optional[JobRequest] = None,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.fines.run_sweep(body.as_of if body else None)


@admin_router.post("/jobs/restrictions", summary="Run the restriction sweep now")
async def run_restriction_sweep(
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.restrictions.run_sweep()


@admin_router.post("/jobs/due-notifications", summary="Send due-soon and overdue reminders now")
async def run_due_notifications(
    body: Optional[JobRequest] = None,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.notifications.process_due_notifications(body.as_of if body else None)


# Monitoring

@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(
    response: Response,
    services: LendingServices = Depends(get_services),
) -> Dict[str, Any]:
    checker = HealthCheck(services.session_factory, services.kv_store, services.flags)
    result = await checker.check_all()
    if result["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(services: LendingServices = Depends(get_services)) -> Dict[str, Any]:
    checker = HealthCheck(services.session_factory, services.kv_store, services.flags)
    return await checker.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
