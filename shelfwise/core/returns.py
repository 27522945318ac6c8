"""
Return request lifecycle.

State machine: PENDING -> APPROVED | REJECTED. Approval closes the loan,
puts the copy back on the shelf, charges a fine if the book came back late
and no fine exists yet, and tells waiting subscribers the book is available.
Rejection leaves the loan BORROWED. Restricted users may still return books.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.config import FeatureFlags
from shelfwise.core.audit import ActorType, AuditAction, AuditTrail
from shelfwise.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    DuplicateRequestError,
    LendingError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from shelfwise.core.executor import AtomicExecutor
from shelfwise.core.fines import FineEngine, FineOutcome
from shelfwise.core.idempotency import IdempotencyCache
from shelfwise.core.inventory import InventoryChange, InventoryLedger
from shelfwise.core.notifications import NotificationKind, NotificationService, Recipient
from shelfwise.core.serializers import return_request_view
from shelfwise.database.models import (
    Book,
    BorrowRecord,
    BorrowStatus,
    RequestStatus,
    ReturnRequest,
    User,
    utcnow,
)
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class ReturnDecision:
    view: Dict[str, Any]
    recipient: Recipient
    book_title: str
    inventory: Optional[InventoryChange] = None
    fine: Optional[FineOutcome] = None


class ReturnEngine:
    """Creates, approves and rejects return requests."""

    def __init__(
        self,
        executor: AtomicExecutor,
        inventory: InventoryLedger,
        fines: FineEngine,
        idempotency: IdempotencyCache,
        notifications: NotificationService,
        audit: AuditTrail,
        flags: FeatureFlags,
        request_ttl: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.inventory = inventory
        self.fines = fines
        self.idempotency = idempotency
        self.notifications = notifications
        self.audit = audit
        self.flags = flags
        self.request_ttl = request_ttl
        self.clock = clock

    @staticmethod
    def derived_key(
        user_id: uuid.UUID, borrow_record_id: uuid.UUID, idempotency_key: Optional[str] = None
    ) -> str:
        params = {"user_id": str(user_id), "borrow_record_id": str(borrow_record_id)}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return IdempotencyCache.derive_key("create_return_request", params)

    async def _create(
        self, session: AsyncSession, user_id: uuid.UUID, borrow_record_id: uuid.UUID
    ) -> ReturnDecision:
        record = (
            await session.execute(
                select(BorrowRecord).where(BorrowRecord.id == borrow_record_id).with_for_update()
            )
        ).scalar_one_or_none()
        if record is None or record.user_id != user_id:
            raise NotFoundError("Borrow record not found", borrow_record_id=str(borrow_record_id))
        if record.status != BorrowStatus.BORROWED.value:
            raise ConflictError("This book has already been returned")

        pending = await session.execute(
            select(ReturnRequest.id)
            .where(
                ReturnRequest.borrow_record_id == borrow_record_id,
                ReturnRequest.status == RequestStatus.PENDING.value,
            )
            .limit(1)
        )
        if pending.scalar_one_or_none() is not None:
            raise DuplicateRequestError("A return request is already pending for this book")

        user = await session.get(User, user_id)
        book = await session.get(Book, record.book_id)
        request = ReturnRequest(
            id=uuid.uuid4(),
            user_id=user_id,
            book_id=record.book_id,
            borrow_record_id=record.id,
            status=RequestStatus.PENDING.value,
            requested_at=self.clock(),
        )
        session.add(request)
        await session.flush()

        logger.info(
            "return_request_created",
            request_id=str(request.id),
            borrow_record_id=str(record.id),
            user_id=str(user_id),
        )
        return ReturnDecision(
            view=return_request_view(request),
            recipient=Recipient(user.id, user.email, user.full_name),
            book_title=book.title if book else "",
        )

    async def create_return_request(
        self,
        user_id: uuid.UUID,
        borrow_record_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult[Dict[str, Any]]:
        """
        Ask to return a borrowed book.

        Args:
            user_id: Borrower (must own the loan)
            borrow_record_id: Active loan
            idempotency_key: Optional client key, scoped to this user and loan

        Returns:
            OperationResult[Dict[str, Any]]: The PENDING return request
        """
        key = self.derived_key(user_id, borrow_record_id, idempotency_key)

        async def create() -> Dict[str, Any]:
            decision = await self.executor.run(
                lambda session: self._create(session, user_id, borrow_record_id),
                "create_return_request",
            )
            view = decision.view
            metrics.record_return_request("created")
            await self.audit.record(
                AuditAction.RETURN_REQUEST_CREATED,
                ActorType.USER,
                "return_request",
                view["id"],
                actor_id=user_id,
                details={"borrow_record_id": view["borrow_record_id"], "book_id": view["book_id"]},
            )
            return view

        try:
            view = await self.idempotency.execute_idempotent(
                key, self.request_ttl, create, operation="create_return_request"
            )
        except LendingError as e:
            metrics.record_return_request("failed")
            logger.info(
                "return_request_rejected",
                user_id=str(user_id),
                borrow_record_id=str(borrow_record_id),
                error=e.error_code,
            )
            return OperationResult.failure(e)
        return OperationResult.success(view)

    async def _load_pending(
        self, session: AsyncSession, request_id: uuid.UUID
    ) -> ReturnRequest:
        request = (
            await session.execute(
                select(ReturnRequest).where(ReturnRequest.id == request_id).with_for_update()
            )
        ).scalar_one_or_none()
        if request is None:
            raise NotFoundError("Return request not found", request_id=str(request_id))
        if request.status != RequestStatus.PENDING.value:
            raise AlreadyProcessedError()
        return request

    async def _transition(self, session: AsyncSession, request: ReturnRequest, **values: Any) -> None:
        won = (
            await session.execute(
                update(ReturnRequest)
                .where(
                    ReturnRequest.id == request.id,
                    ReturnRequest.status == RequestStatus.PENDING.value,
                )
                .values(**values)
                .returning(ReturnRequest.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if won is None:
            raise AlreadyProcessedError()
        await session.refresh(request)

    async def _recipient(self, session: AsyncSession, request: ReturnRequest) -> tuple:
        user = await session.get(User, request.user_id)
        book = await session.get(Book, request.book_id)
        return Recipient(user.id, user.email, user.full_name), (book.title if book else "")

    async def _approve(
        self,
        session: AsyncSession,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str],
    ) -> ReturnDecision:
        request = await self._load_pending(session, request_id)
        now = self.clock()

        closed = (
            await session.execute(
                update(BorrowRecord)
                .where(
                    BorrowRecord.id == request.borrow_record_id,
                    BorrowRecord.status == BorrowStatus.BORROWED.value,
                )
                .values(status=BorrowStatus.RETURNED.value, return_date=now)
                .returning(BorrowRecord.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if closed is None:
            raise AlreadyProcessedError("This loan has already been closed")

        await self._transition(
            session,
            request,
            status=RequestStatus.APPROVED.value,
            processed_at=now,
            processed_by=admin_id,
            admin_notes=notes,
        )
        change = await self.inventory.release(session, request.book_id)

        fine = None
        if self.flags.overdue_detection_enabled:
            record = await session.get(BorrowRecord, request.borrow_record_id, populate_existing=True)
            fine = await self.fines.assess_record(session, record, now.date())

        recipient, title = await self._recipient(session, request)
        logger.info(
            "return_request_approved",
            request_id=str(request.id),
            borrow_record_id=str(request.borrow_record_id),
            available_copies=change.available_copies,
            fine_created=fine is not None,
        )
        return ReturnDecision(
            view=return_request_view(request),
            recipient=recipient,
            book_title=title,
            inventory=change,
            fine=fine,
        )

    async def approve_return_request(
        self,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> OperationResult[Dict[str, Any]]:
        """
        Close the loan and put the copy back on the shelf.

        Args:
            request_id: Return request
            admin_id: Approving admin
            notes: Optional admin notes

        Returns:
            OperationResult[Dict[str, Any]]: The APPROVED return request
        """
        def operation(session: AsyncSession):
            return self._approve(session, request_id, admin_id, notes)

        try:
            try:
                decision = await self.executor.run(operation, "approve_return_request")
            except IntegrityError:
                # A fine sweep created this loan's fine concurrently; the retry skips it.
                logger.info("return_approval_retry_after_fine_race", request_id=str(request_id))
                decision = await self.executor.run(operation, "approve_return_request")
        except LendingError as e:
            logger.info("return_approval_rejected", request_id=str(request_id), error=e.error_code)
            return OperationResult.failure(e)

        view = decision.view
        await self.idempotency.clear(
            self.derived_key(uuid.UUID(view["user_id"]), uuid.UUID(view["borrow_record_id"]))
        )
        metrics.record_return_request("approved")
        await self.audit.record(
            AuditAction.RETURN_REQUEST_APPROVED,
            ActorType.ADMIN,
            "return_request",
            view["id"],
            actor_id=admin_id,
            details={
                "borrow_record_id": view["borrow_record_id"],
                "available_copies": decision.inventory.available_copies,
                "notes": notes,
            },
        )
        if decision.inventory.violation:
            await self.audit.record(
                AuditAction.INVENTORY_VIOLATION,
                ActorType.SYSTEM,
                "book",
                decision.inventory.book_id,
                details={"available_copies": decision.inventory.available_copies},
                severity="HIGH",
            )
        if decision.fine is not None:
            await self.fines.publish(decision.fine)
            view = view | {"fine": decision.fine.fine}

        await self.notifications.notify(
            NotificationKind.RETURN_APPROVED,
            decision.recipient.email,
            f"Your return of \"{decision.book_title}\" was confirmed",
            {
                "full_name": decision.recipient.full_name,
                "book_title": decision.book_title,
                "admin_notes": notes,
                "fine_amount": decision.fine.fine["amount"] if decision.fine else None,
            },
        )
        await self.notifications.process_availability(uuid.UUID(view["book_id"]))
        return OperationResult.success(view)

    async def _reject(
        self,
        session: AsyncSession,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        reason: str,
    ) -> ReturnDecision:
        request = await self._load_pending(session, request_id)
        await self._transition(
            session,
            request,
            status=RequestStatus.REJECTED.value,
            rejection_reason=reason,
            processed_at=self.clock(),
            processed_by=admin_id,
        )
        recipient, title = await self._recipient(session, request)
        logger.info("return_request_rejected", request_id=str(request.id), reason=reason)
        return ReturnDecision(view=return_request_view(request), recipient=recipient, book_title=title)

    async def reject_return_request(
        self,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        reason: str,
    ) -> OperationResult[Dict[str, Any]]:
        """
        Reject a return request; the loan stays BORROWED.

        Args:
            request_id: Return request
            admin_id: Rejecting admin
            reason: Required explanation for the borrower

        Returns:
            OperationResult[Dict[str, Any]]: The REJECTED return request
        """
        if not reason or not reason.strip():
            return OperationResult.failure(ValidationError("A rejection reason is required"))
        reason = reason.strip()

        try:
            decision = await self.executor.run(
                lambda session: self._reject(session, request_id, admin_id, reason),
                "reject_return_request",
            )
        except LendingError as e:
            return OperationResult.failure(e)

        view = decision.view
        await self.idempotency.clear(
            self.derived_key(uuid.UUID(view["user_id"]), uuid.UUID(view["borrow_record_id"]))
        )
        metrics.record_return_request("rejected")
        await self.audit.record(
            AuditAction.RETURN_REQUEST_REJECTED,
            ActorType.ADMIN,
            "return_request",
            view["id"],
            actor_id=admin_id,
            details={"reason": reason},
        )
        await self.notifications.notify(
            NotificationKind.RETURN_REJECTED,
            decision.recipient.email,
            f"Your return of \"{decision.book_title}\" could not be confirmed",
            {
                "full_name": decision.recipient.full_name,
                "book_title": decision.book_title,
                "reason": reason,
            },
        )
        return OperationResult.success(view)

    async def list_pending_return_requests(self) -> List[Dict[str, Any]]:
        """Admin queue, oldest first."""
        async def operation(session: AsyncSession) -> List[Dict[str, Any]]:
            rows = (
                await session.execute(
                    select(ReturnRequest, User.email, User.full_name, Book.title)
                    .join(User, User.id == ReturnRequest.user_id)
                    .join(Book, Book.id == ReturnRequest.book_id)
                    .where(ReturnRequest.status == RequestStatus.PENDING.value)
                    .order_by(ReturnRequest.requested_at)
                )
            ).all()
            return [
                return_request_view(request)
                | {"user_email": email, "user_name": full_name, "book_title": title}
                for request, email, full_name, title in rows
            ]

        return await self.executor.run(operation, "list_pending_return_requests")
