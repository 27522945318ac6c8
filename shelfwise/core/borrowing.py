"""
Borrow request lifecycle.

State machine: PENDING -> APPROVED | REJECTED, both terminal.

Create flow:
1. Idempotency cache (caller key preferred, derived key otherwise)
2. Eligibility (restriction policy)
3. Book lookup and confirmation text check
4. Duplicate checks (pending request or active loan for the same book)
5. Reservation, when the global or per-book policy says so
6. Persist the request, then audit, meter and notify after commit

Every step runs in one unit of work through the atomic executor, so a failed
step leaves no reservation behind. The duplicate checks run before the
reservation so that the degraded non-transactional mode cannot leak a copy
on a duplicate submission.
"""
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.config import LendingPolicy
from shelfwise.core.audit import ActorType, AuditAction, AuditTrail
from shelfwise.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    DuplicateRequestError,
    LendingError,
    NotAvailableError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from shelfwise.core.executor import AtomicExecutor
from shelfwise.core.idempotency import IdempotencyCache
from shelfwise.core.inventory import InventoryChange, InventoryLedger
from shelfwise.core.notifications import NotificationKind, NotificationService, Recipient
from shelfwise.core.restrictions import RestrictionPolicy
from shelfwise.core.serializers import borrow_request_view
from shelfwise.database.models import (
    Book,
    BorrowRecord,
    BorrowRequest,
    BorrowStatus,
    RequestStatus,
    User,
    utcnow,
)
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CONFIRMATION_CODE = re.compile(r"^[A-Z0-9]{5,12}$", re.IGNORECASE)
MIN_CONFIRMATION_LENGTH = 5


def validate_confirmation(confirmation_text: Optional[str], book_title: str) -> None:
    """
    Check the text a borrower typed to confirm the request.

    Accepted: a displayed random code (5-12 letters/digits), the word
    "confirm", or a case-insensitive substring/superstring of the title.

    Raises:
        ValidationError: If the text matches none of these
    """
    if confirmation_text is None or len(confirmation_text) < MIN_CONFIRMATION_LENGTH:
        raise ValidationError(
            f"Confirmation code must be at least {MIN_CONFIRMATION_LENGTH} characters long."
        )

    raw = confirmation_text.strip()
    if CONFIRMATION_CODE.match(raw):
        return

    lowered = raw.lower()
    title = book_title.lower()
    if lowered == "confirm" or (lowered and (title in lowered or lowered in title)):
        return

    raise ValidationError(
        "Invalid confirmation code. Enter the displayed code, the word \"confirm\", "
        f"or part of the book title \"{book_title}\" to proceed."
    )


@dataclass
class Decision:
    """Committed outcome of a unit of work plus what to publish afterwards."""

    view: Dict[str, Any]
    recipient: Optional[Recipient] = None
    book_title: str = ""
    inventory: Optional[InventoryChange] = None
    created: bool = True


class BorrowEngine:
    """Creates, approves and rejects borrow requests."""

    def __init__(
        self,
        executor: AtomicExecutor,
        inventory: InventoryLedger,
        restrictions: RestrictionPolicy,
        idempotency: IdempotencyCache,
        notifications: NotificationService,
        audit: AuditTrail,
        policy: LendingPolicy,
        request_ttl: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.inventory = inventory
        self.restrictions = restrictions
        self.idempotency = idempotency
        self.notifications = notifications
        self.audit = audit
        self.policy = policy
        self.request_ttl = request_ttl
        self.clock = clock

    @staticmethod
    def derived_key(
        user_id: uuid.UUID, book_id: uuid.UUID, idempotency_key: Optional[str] = None
    ) -> str:
        params = {"user_id": str(user_id), "book_id": str(book_id)}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return IdempotencyCache.derive_key("create_borrow_request", params)

    # Create

    async def _find_by_key(
        self, session: AsyncSession, key: str, user_id: uuid.UUID, book_id: uuid.UUID
    ) -> Optional[BorrowRequest]:
        """A stored key only answers the same user asking for the same book."""
        existing = (
            await session.execute(select(BorrowRequest).where(BorrowRequest.idempotency_key == key))
        ).scalar_one_or_none()
        if existing is not None and (existing.user_id != user_id or existing.book_id != book_id):
            logger.warning(
                "idempotency_key_mismatch",
                idempotency_key=key,
                user_id=str(user_id),
                book_id=str(book_id),
            )
            raise ConflictError("Idempotency key already used for a different request")
        return existing

    async def _create(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        book_id: uuid.UUID,
        confirmation_text: str,
        idempotency_key: Optional[str],
    ) -> Decision:
        if idempotency_key:
            existing = await self._find_by_key(session, idempotency_key, user_id, book_id)
            if existing is not None:
                logger.info(
                    "idempotency_cache_hit", idempotency_key=idempotency_key, source="database"
                )
                metrics.record_idempotency_cache_hit("database")
                return Decision(view=borrow_request_view(existing), created=False)

        await self.restrictions.check_borrow_eligibility(session, user_id)

        book = await session.get(Book, book_id)
        if book is None:
            raise NotFoundError("Book not found", book_id=str(book_id))

        validate_confirmation(confirmation_text, book.title)

        pending = await session.execute(
            select(BorrowRequest.id)
            .where(
                BorrowRequest.user_id == user_id,
                BorrowRequest.book_id == book_id,
                BorrowRequest.status == RequestStatus.PENDING.value,
            )
            .limit(1)
        )
        if pending.scalar_one_or_none() is not None:
            raise DuplicateRequestError("You already have a pending request for this book")

        borrowed = await session.execute(
            select(BorrowRecord.id)
            .where(
                BorrowRecord.user_id == user_id,
                BorrowRecord.book_id == book_id,
                BorrowRecord.status == BorrowStatus.BORROWED.value,
            )
            .limit(1)
        )
        if borrowed.scalar_one_or_none() is not None:
            raise DuplicateRequestError("You already have this book borrowed")

        reserve_now = self.inventory.should_reserve_on_request(book)
        change = None
        if reserve_now:
            change = await self.inventory.reserve(session, book_id)
        elif book.available_copies <= 0:
            raise NotAvailableError("Book is not available for borrowing", book_id=str(book_id))

        request = BorrowRequest(
            id=uuid.uuid4(),
            user_id=user_id,
            book_id=book_id,
            status=RequestStatus.PENDING.value,
            idempotency_key=idempotency_key,
            inventory_reserved=reserve_now,
            requested_at=self.clock(),
        )
        session.add(request)
        await session.flush()

        logger.info(
            "borrow_request_created",
            request_id=str(request.id),
            user_id=str(user_id),
            book_id=str(book_id),
            inventory_reserved=reserve_now,
        )
        return Decision(view=borrow_request_view(request), book_title=book.title, inventory=change)

    async def create_borrow_request(
        self,
        user_id: uuid.UUID,
        book_id: uuid.UUID,
        confirmation_text: str,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult[Dict[str, Any]]:
        """
        Submit a borrow request.

        Args:
            user_id: Borrower
            book_id: Requested book
            confirmation_text: Code, "confirm" or part of the title
            idempotency_key: Client key, scoped to this user and book; retries
                with the same key return the same request. Reusing it for
                another user or book is a conflict.

        Returns:
            OperationResult[Dict[str, Any]]: The PENDING request
        """
        key = self.derived_key(user_id, book_id, idempotency_key)

        async def create() -> Dict[str, Any]:
            try:
                decision = await self.executor.run(
                    lambda session: self._create(
                        session, user_id, book_id, confirmation_text, idempotency_key
                    ),
                    "create_borrow_request",
                )
            except IntegrityError:
                if not idempotency_key:
                    raise
                # Lost a race on the unique idempotency key: return the winner.
                winner = await self.executor.run(
                    lambda session: self._find_by_key(session, idempotency_key, user_id, book_id),
                    "find_borrow_request_by_key",
                )
                if winner is None:
                    raise
                metrics.record_idempotency_cache_hit("database")
                return borrow_request_view(winner)

            if decision.created:
                await self._publish_created(decision)
            return decision.view

        try:
            view = await self.idempotency.execute_idempotent(
                key, self.request_ttl, create, operation="create_borrow_request"
            )
        except LendingError as e:
            metrics.record_borrow_request("failed")
            logger.info(
                "borrow_request_rejected",
                user_id=str(user_id),
                book_id=str(book_id),
                error=e.error_code,
                reason=e.user_message,
            )
            return OperationResult.failure(e)
        return OperationResult.success(view)

    async def _publish_created(self, decision: Decision) -> None:
        view = decision.view
        metrics.record_borrow_request("created")
        await self.audit.record(
            AuditAction.BORROW_REQUEST_CREATED,
            ActorType.USER,
            "borrow_request",
            view["id"],
            actor_id=uuid.UUID(view["user_id"]),
            details={
                "book_id": view["book_id"],
                "book_title": decision.book_title,
                "inventory_reserved": view["inventory_reserved"],
                "available_copies": (
                    decision.inventory.available_copies if decision.inventory else None
                ),
            },
        )
        await self._publish_violation(decision.inventory)

    async def _publish_violation(self, change: Optional[InventoryChange]) -> None:
        if change is None or not change.violation:
            return
        await self.audit.record(
            AuditAction.INVENTORY_VIOLATION,
            ActorType.SYSTEM,
            "book",
            change.book_id,
            details={"available_copies": change.available_copies},
            severity="HIGH",
        )

    # Approve / reject

    async def _load_pending(
        self, session: AsyncSession, request_id: uuid.UUID
    ) -> Tuple[BorrowRequest, User, Book]:
        request = (
            await session.execute(
                select(BorrowRequest).where(BorrowRequest.id == request_id).with_for_update()
            )
        ).scalar_one_or_none()
        if request is None:
            raise NotFoundError("Borrow request not found", request_id=str(request_id))
        if request.status != RequestStatus.PENDING.value:
            raise AlreadyProcessedError()

        user = await session.get(User, request.user_id)
        book = await session.get(Book, request.book_id)
        if user is None or book is None:
            raise NotFoundError("Borrow request refers to a missing user or book")
        return request, user, book

    async def _transition(
        self, session: AsyncSession, request: BorrowRequest, **values: Any
    ) -> None:
        """Move a PENDING request to a terminal state, exactly once."""
        won = (
            await session.execute(
                update(BorrowRequest)
                .where(
                    BorrowRequest.id == request.id,
                    BorrowRequest.status == RequestStatus.PENDING.value,
                )
                .values(**values)
                .returning(BorrowRequest.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if won is None:
            raise AlreadyProcessedError()
        await session.refresh(request)

    async def _approve(
        self,
        session: AsyncSession,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str],
    ) -> Decision:
        request, user, book = await self._load_pending(session, request_id)

        now = self.clock()
        due_date = (now + timedelta(days=self.policy.loan_period_days)).date()

        change = None
        if not request.inventory_reserved:
            try:
                change = await self.inventory.reserve(session, book.id)
            except NotAvailableError:
                raise NotAvailableError("Book is no longer available", book_id=str(book.id))

        record = BorrowRecord(
            id=uuid.uuid4(),
            user_id=request.user_id,
            book_id=request.book_id,
            borrow_date=now,
            due_date=due_date,
            status=BorrowStatus.BORROWED.value,
        )
        session.add(record)
        await session.flush()

        await self._transition(
            session,
            request,
            status=RequestStatus.APPROVED.value,
            borrow_record_id=record.id,
            due_date=due_date,
            approved_at=now,
            processed_by=admin_id,
            admin_notes=notes,
        )
        logger.info(
            "borrow_request_approved",
            request_id=str(request.id),
            borrow_record_id=str(record.id),
            due_date=due_date.isoformat(),
            reserved_at_approval=change is not None,
        )
        return Decision(
            view=borrow_request_view(request),
            recipient=Recipient(user.id, user.email, user.full_name),
            book_title=book.title,
            inventory=change,
        )

    async def approve_borrow_request(
        self,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> OperationResult[Dict[str, Any]]:
        """
        Approve a PENDING request and open the loan.

        Approving an already decided request returns an already-processed
        error and changes nothing.

        Args:
            request_id: Borrow request
            admin_id: Approving admin
            notes: Optional admin notes passed to the borrower

        Returns:
            OperationResult[Dict[str, Any]]: The APPROVED request
        """
        try:
            decision = await self.executor.run(
                lambda session: self._approve(session, request_id, admin_id, notes),
                "approve_borrow_request",
            )
        except LendingError as e:
            logger.info("borrow_approval_rejected", request_id=str(request_id), error=e.error_code)
            return OperationResult.failure(e)

        view = decision.view
        await self._forget_derived_key(view)
        metrics.record_borrow_request("approved")
        await self.audit.record(
            AuditAction.BORROW_REQUEST_APPROVED,
            ActorType.ADMIN,
            "borrow_request",
            view["id"],
            actor_id=admin_id,
            details={
                "borrow_record_id": view["borrow_record_id"],
                "due_date": view["due_date"],
                "notes": notes,
            },
        )
        await self._publish_violation(decision.inventory)
        await self.notifications.notify(
            NotificationKind.BORROW_APPROVED,
            decision.recipient.email,
            f"Your request for \"{decision.book_title}\" was approved",
            {
                "full_name": decision.recipient.full_name,
                "book_title": decision.book_title,
                "due_date": view["due_date"],
                "admin_notes": notes,
            },
        )
        return OperationResult.success(view)

    async def _reject(
        self,
        session: AsyncSession,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str],
    ) -> Decision:
        request, user, book = await self._load_pending(session, request_id)

        await self._transition(
            session,
            request,
            status=RequestStatus.REJECTED.value,
            rejected_at=self.clock(),
            processed_by=admin_id,
            admin_notes=notes,
        )

        change = None
        if request.inventory_reserved:
            change = await self.inventory.release(session, book.id)

        logger.info(
            "borrow_request_rejected",
            request_id=str(request.id),
            released=change is not None,
        )
        return Decision(
            view=borrow_request_view(request),
            recipient=Recipient(user.id, user.email, user.full_name),
            book_title=book.title,
            inventory=change,
        )

    async def reject_borrow_request(
        self,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> OperationResult[Dict[str, Any]]:
        """
        Reject a PENDING request, releasing its copy if one was reserved.

        Args:
            request_id: Borrow request
            admin_id: Rejecting admin
            notes: Reason given to the borrower

        Returns:
            OperationResult[Dict[str, Any]]: The REJECTED request
        """
        try:
            decision = await self.executor.run(
                lambda session: self._reject(session, request_id, admin_id, notes),
                "reject_borrow_request",
            )
        except LendingError as e:
            logger.info("borrow_rejection_rejected", request_id=str(request_id), error=e.error_code)
            return OperationResult.failure(e)

        view = decision.view
        await self._forget_derived_key(view)
        metrics.record_borrow_request("rejected")
        await self.audit.record(
            AuditAction.BORROW_REQUEST_REJECTED,
            ActorType.ADMIN,
            "borrow_request",
            view["id"],
            actor_id=admin_id,
            details={"notes": notes, "released": decision.inventory is not None},
        )
        await self._publish_violation(decision.inventory)
        await self.notifications.notify(
            NotificationKind.BORROW_REJECTED,
            decision.recipient.email,
            f"Your request for \"{decision.book_title}\" was declined",
            {
                "full_name": decision.recipient.full_name,
                "book_title": decision.book_title,
                "reason": notes,
            },
        )
        if decision.inventory is not None:
            await self.notifications.process_availability(uuid.UUID(view["book_id"]))
        return OperationResult.success(view)

    async def _forget_derived_key(self, view: Dict[str, Any]) -> None:
        """A decided request must not answer the next create for the same book."""
        if view.get("idempotency_key"):
            return
        await self.idempotency.clear(
            self.derived_key(uuid.UUID(view["user_id"]), uuid.UUID(view["book_id"]))
        )

    # Queries

    async def get_borrow_status(self, user_id: uuid.UUID, book_id: uuid.UUID) -> Dict[str, Any]:
        """Whether the user has a pending request or an active loan for a book."""
        async def operation(session: AsyncSession) -> Dict[str, Any]:
            request = (
                await session.execute(
                    select(BorrowRequest)
                    .where(
                        BorrowRequest.user_id == user_id,
                        BorrowRequest.book_id == book_id,
                        BorrowRequest.status == RequestStatus.PENDING.value,
                    )
                    .limit(1)
                )
            ).scalar_one_or_none()
            if request is not None:
                return {"status": "PENDING", "request_id": str(request.id), "due_date": None}

            record = (
                await session.execute(
                    select(BorrowRecord)
                    .where(
                        BorrowRecord.user_id == user_id,
                        BorrowRecord.book_id == book_id,
                        BorrowRecord.status == BorrowStatus.BORROWED.value,
                    )
                    .limit(1)
                )
            ).scalar_one_or_none()
            if record is not None:
                return {
                    "status": "BORROWED",
                    "borrow_record_id": str(record.id),
                    "due_date": record.due_date.isoformat(),
                }
            return {"status": "NONE"}

        return await self.executor.run(operation, "borrow_status")

    async def list_pending_borrow_requests(self) -> List[Dict[str, Any]]:
        """Admin queue, oldest first."""
        async def operation(session: AsyncSession) -> List[Dict[str, Any]]:
            rows = (
                await session.execute(
                    select(BorrowRequest, User.email, User.full_name, Book.title)
                    .join(User, User.id == BorrowRequest.user_id)
                    .join(Book, Book.id == BorrowRequest.book_id)
                    .where(BorrowRequest.status == RequestStatus.PENDING.value)
                    .order_by(BorrowRequest.requested_at)
                )
            ).all()
            return [
                borrow_request_view(request)
                | {"user_email": email, "user_name": full_name, "book_title": title}
                for request, email, full_name, title in rows
            ]

        return await self.executor.run(operation, "list_pending_borrow_requests")
