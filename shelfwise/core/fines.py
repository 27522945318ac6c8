"""
Fine calculation engine.

Tiered late-return penalties:
- Days 1-7: grace period, no fine
- Day 8: flat fee
- Days 9-14: flat fee plus a daily fee per day beyond day 8 (capped)
- Day 15+: book considered lost, charged price plus a penalty percentage;
  this replaces the flat and daily fees

Fines are created at most once per borrow record. Each record is assessed in
its own unit of work, and the unique constraint on fines.borrow_record_id
turns a concurrent duplicate into a skip.
"""
import functools
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.config import FeatureFlags, LendingPolicy
from shelfwise.core.audit import ActorType, AuditAction, AuditTrail
from shelfwise.core.balances import decrease_fines_owed, increase_fines_owed
from shelfwise.core.errors import (
    AlreadyProcessedError,
    LendingError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from shelfwise.core.executor import AtomicExecutor
from shelfwise.core.restrictions import (
    RestrictionChanges,
    RestrictionPolicy,
    publish_restriction_changes,
)
from shelfwise.core.serializers import fine_view, money
from shelfwise.database.models import (
    OUTSTANDING_FINE_STATUSES,
    Book,
    BorrowRecord,
    BorrowStatus,
    Fine,
    FineStatus,
    FineType,
    User,
    utcnow,
)
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PenaltyAssessment:
    """Result of the tier formula for one overdue loan."""

    days_overdue: int
    total: Decimal
    flat_fee: Decimal
    daily_fees: Decimal
    lost_book_fee: Decimal
    book_price: Optional[Decimal]
    penalty_percentage: Optional[int]
    is_book_lost: bool

    @property
    def fine_type(self) -> FineType:
        return FineType.LOST_BOOK if self.is_book_lost else FineType.LATE_RETURN

    @property
    def penalty_type(self) -> str:
        if self.is_book_lost:
            return "LOST_BOOK_FEE"
        if self.daily_fees > 0:
            return "DAILY_FEE"
        return "FLAT_FEE"

    @property
    def description(self) -> str:
        text = f"Late return penalty: {self.days_overdue} day(s) overdue. "
        if self.flat_fee > 0:
            text += f"Flat fee: ${self.flat_fee}. "
        if self.daily_fees > 0:
            text += f"Daily fees: ${self.daily_fees}. "
        if self.is_book_lost:
            text += (
                f"Lost book fee: ${self.lost_book_fee} "
                f"(Book: ${self.book_price} + {self.penalty_percentage}% penalty). "
            )
        return text.strip()

    def breakdown(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("days_overdue")
        data.pop("is_book_lost")
        data.pop("total")
        return {
            key: (money(value) if isinstance(value, Decimal) else value)
            for key, value in data.items()
        } | {"penalty_type": self.penalty_type}


def calculate_penalty(
    days_overdue: int,
    book_price: Optional[Decimal],
    policy: LendingPolicy = LendingPolicy(),
) -> Optional[PenaltyAssessment]:
    """
    Apply the tier formula.

    Args:
        days_overdue: Whole days past the due date
        book_price: Book price, or None to use the policy default
        policy: Lending constants

    Returns:
        Optional[PenaltyAssessment]: None inside the grace period
    """
    if days_overdue <= policy.grace_period_days:
        return None

    if days_overdue >= policy.lost_book_after_days:
        price = _cents(Decimal(book_price if book_price is not None else policy.default_book_price))
        lost_fee = _cents(price * (1 + policy.lost_book_penalty_rate))
        return PenaltyAssessment(
            days_overdue=days_overdue,
            total=lost_fee,
            flat_fee=Decimal("0.00"),
            daily_fees=Decimal("0.00"),
            lost_book_fee=lost_fee,
            book_price=price,
            penalty_percentage=int(policy.lost_book_penalty_rate * 100),
            is_book_lost=True,
        )

    first_late_day = policy.grace_period_days + 1
    daily_days = min(days_overdue - first_late_day, policy.max_daily_fee_days)
    flat_fee = _cents(policy.flat_fee)
    daily_fees = _cents(policy.daily_fee * daily_days)
    return PenaltyAssessment(
        days_overdue=days_overdue,
        total=flat_fee + daily_fees,
        flat_fee=flat_fee,
        daily_fees=daily_fees,
        lost_book_fee=Decimal("0.00"),
        book_price=None,
        penalty_percentage=None,
        is_book_lost=False,
    )


@dataclass
class FineOutcome:
    """A fine created inside a unit of work, with its side effects to publish."""

    fine: Dict[str, Any]
    restriction_changes: RestrictionChanges


class FineEngine:
    """Creates fines for overdue loans and keeps balances in step."""

    def __init__(
        self,
        executor: AtomicExecutor,
        restrictions: RestrictionPolicy,
        audit: AuditTrail,
        flags: FeatureFlags,
        policy: LendingPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.restrictions = restrictions
        self.audit = audit
        self.flags = flags
        self.policy = policy
        self.clock = clock

    async def assess_record(
        self, session: AsyncSession, record: BorrowRecord, as_of: date
    ) -> Optional[FineOutcome]:
        """
        Create the fine for one loan if it is due one and has none yet.

        Runs inside the caller's unit of work.

        Args:
            session: Session of the caller's unit of work
            record: Borrow record to assess
            as_of: Day the overdue count is measured against

        Returns:
            Optional[FineOutcome]: The created fine, or None
        """
        existing = await session.execute(
            select(Fine.id).where(Fine.borrow_record_id == record.id)
        )
        if existing.scalar_one_or_none() is not None:
            return None

        days_overdue = (as_of - record.due_date).days
        book = await session.get(Book, record.book_id)
        assessment = calculate_penalty(
            days_overdue, book.price if book is not None else None, self.policy
        )
        if assessment is None:
            return None

        fine = Fine(
            id=uuid.uuid4(),
            user_id=record.user_id,
            book_id=record.book_id,
            borrow_record_id=record.id,
            fine_type=assessment.fine_type.value,
            amount=assessment.total,
            paid_amount=Decimal("0.00"),
            status=FineStatus.PENDING.value,
            days_overdue=days_overdue,
            is_book_lost=assessment.is_book_lost,
            description=assessment.description,
            breakdown=assessment.breakdown(),
            due_date=record.due_date,
            calculation_date=as_of,
        )
        session.add(fine)
        await session.flush()

        await increase_fines_owed(session, record.user_id, assessment.total)
        changes = await self.restrictions.evaluate_user(session, record.user_id)

        logger.info(
            "fine_created",
            fine_id=str(fine.id),
            borrow_record_id=str(record.id),
            user_id=str(record.user_id),
            days_overdue=days_overdue,
            amount=str(assessment.total),
            fine_type=assessment.fine_type.value,
        )
        return FineOutcome(fine=fine_view(fine), restriction_changes=changes)

    async def publish(self, outcome: FineOutcome) -> None:
        """Post-commit side effects of a created fine."""
        fine = outcome.fine
        metrics.record_fine_created(fine["fine_type"], float(fine["amount"]))
        await self.audit.record(
            AuditAction.FINE_CALCULATED,
            ActorType.SYSTEM,
            "fine",
            fine["id"],
            details={
                "user_id": fine["user_id"],
                "borrow_record_id": fine["borrow_record_id"],
                "amount": fine["amount"],
                "days_overdue": fine["days_overdue"],
                "is_book_lost": fine["is_book_lost"],
            },
        )
        await publish_restriction_changes(
            self.audit, outcome.restriction_changes, self.restrictions.reason
        )

    async def _assess_by_id(
        self, session: AsyncSession, record_id: uuid.UUID, as_of: date
    ) -> Optional[FineOutcome]:
        record = await session.get(BorrowRecord, record_id)
        if record is None or record.status != BorrowStatus.BORROWED.value:
            return None
        return await self.assess_record(session, record, as_of)

    async def find_overdue_records(self, as_of: date) -> List[uuid.UUID]:
        """Borrowed records past due that have no fine yet."""
        async def operation(session: AsyncSession) -> List[uuid.UUID]:
            stmt = (
                select(BorrowRecord.id)
                .outerjoin(Fine, Fine.borrow_record_id == BorrowRecord.id)
                .where(
                    BorrowRecord.status == BorrowStatus.BORROWED.value,
                    BorrowRecord.due_date < as_of,
                    Fine.id.is_(None),
                )
                .order_by(BorrowRecord.due_date)
            )
            return list((await session.execute(stmt)).scalars())

        return await self.executor.run(operation, "find_overdue_records")

    async def run_sweep(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Assess every overdue loan. Safe to run repeatedly and concurrently.

        Args:
            as_of: Day to measure against (defaults to today)

        Returns:
            Dict[str, Any]: Sweep summary
        """
        if not self.flags.overdue_detection_enabled:
            logger.info("fine_sweep_skipped", reason="overdue_detection_disabled")
            return {"skipped": True, "examined": 0, "created": 0, "total_amount": "0.00"}

        as_of = as_of or self.clock().date()
        started = self.clock()
        record_ids = await self.find_overdue_records(as_of)

        created: List[Dict[str, Any]] = []
        for record_id in record_ids:
            try:
                outcome = await self.executor.run(
                    functools.partial(self._assess_by_id, record_id=record_id, as_of=as_of),
                    "assess_fine",
                )
            except IntegrityError:
                logger.info("fine_already_created_concurrently", borrow_record_id=str(record_id))
                continue
            if outcome is None:
                continue
            await self.publish(outcome)
            created.append(outcome.fine)

        total = sum((Decimal(fine["amount"]) for fine in created), Decimal("0.00"))
        metrics.record_job_run("fine_sweep", (self.clock() - started).total_seconds())
        logger.info(
            "fine_sweep_completed",
            as_of=as_of.isoformat(),
            examined=len(record_ids),
            created=len(created),
            total_amount=str(total),
        )
        return {
            "skipped": False,
            "as_of": as_of.isoformat(),
            "examined": len(record_ids),
            "created": len(created),
            "total_amount": money(total),
            "fines": created,
        }

    async def get_user_fine_status(self, user_id: uuid.UUID) -> OperationResult[Dict[str, Any]]:
        """Balance, restriction state and outstanding fines of a user."""
        async def operation(session: AsyncSession) -> Dict[str, Any]:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=str(user_id))
            fines = (
                await session.execute(
                    select(Fine)
                    .where(Fine.user_id == user_id, Fine.status.in_(OUTSTANDING_FINE_STATUSES))
                    .order_by(Fine.created_at)
                )
            ).scalars()
            return {
                "user_id": str(user.id),
                "total_fines_owed": money(user.total_fines_owed),
                "is_restricted": user.is_restricted,
                "restriction_reason": user.restriction_reason,
                "restricted_at": user.restricted_at.isoformat() if user.restricted_at else None,
                "outstanding_fines": [fine_view(fine) for fine in fines],
            }

        try:
            return OperationResult.success(await self.executor.run(operation, "fine_status"))
        except LendingError as e:
            return OperationResult.failure(e)

    async def waive_fine(
        self, fine_id: uuid.UUID, admin_id: uuid.UUID, reason: str
    ) -> OperationResult[Dict[str, Any]]:
        """
        Waive the outstanding part of a fine.

        Args:
            fine_id: Fine to waive
            admin_id: Admin performing the waiver
            reason: Why the fine is waived (required)

        Returns:
            OperationResult[Dict[str, Any]]: Waived fine
        """
        if not reason or not reason.strip():
            return OperationResult.failure(ValidationError("A reason is required to waive a fine"))

        async def operation(session: AsyncSession) -> FineOutcome:
            fine = (
                await session.execute(select(Fine).where(Fine.id == fine_id).with_for_update())
            ).scalar_one_or_none()
            if fine is None:
                raise NotFoundError("Fine not found", fine_id=str(fine_id))
            if fine.status not in OUTSTANDING_FINE_STATUSES:
                raise AlreadyProcessedError("Fine has already been settled")

            outstanding = fine.outstanding
            fine.status = FineStatus.WAIVED.value
            fine.waived_at = self.clock()
            fine.waived_by = admin_id
            fine.admin_notes = reason.strip()
            await session.flush()

            await decrease_fines_owed(session, fine.user_id, outstanding)
            changes = await self.restrictions.evaluate_user(session, fine.user_id)
            view = fine_view(fine)
            view["waived_amount"] = money(outstanding)
            return FineOutcome(fine=view, restriction_changes=changes)

        try:
            outcome = await self.executor.run(operation, "waive_fine")
        except LendingError as e:
            logger.info("fine_waive_rejected", fine_id=str(fine_id), error=e.error_code)
            return OperationResult.failure(e)

        logger.info("fine_waived", fine_id=str(fine_id), admin_id=str(admin_id))
        await self.audit.record(
            AuditAction.FINE_WAIVED,
            ActorType.ADMIN,
            "fine",
            fine_id,
            actor_id=admin_id,
            details={"reason": reason.strip(), "waived_amount": outcome.fine["waived_amount"]},
        )
        await publish_restriction_changes(
            self.audit, outcome.restriction_changes, self.restrictions.reason
        )
        return OperationResult.success(outcome.fine)
