"""
Notification dispatch for lending events.

Covers:
- Decision notices (borrow/return approved or rejected)
- "Now available" notices for subscribers, first come first served, one-shot
- "Due soon" and "overdue" reminders from the daily sweep

Every dispatch failure is swallowed, logged and metered; a notification can
never fail the operation that triggered it. Overlapping sweeps claim each
(kind, record, day) in the key-value store before sending, and availability
subscriptions are claimed with a conditional update, so neither sends twice.
"""
import enum
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.config import FeatureFlags, LendingPolicy
from shelfwise.core.errors import LendingError, NotFoundError, OperationResult
from shelfwise.core.executor import AtomicExecutor
from shelfwise.core.kv_store import KeyValueStore
from shelfwise.database.models import (
    Book,
    BorrowRecord,
    BorrowStatus,
    NotificationPreference,
    User,
    utcnow,
)
from shelfwise.integrations.email_dispatcher import NotificationDispatcher, NotificationMessage
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NOTICE_CLAIM_TTL = 2 * 86400


class NotificationKind(str, enum.Enum):
    BORROW_APPROVED = "borrow_approved"
    BORROW_REJECTED = "borrow_rejected"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    BOOK_AVAILABLE = "book_available"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class Recipient:
    user_id: uuid.UUID
    email: str
    full_name: str


@dataclass(frozen=True)
class LoanNotice:
    recipient: Recipient
    record_id: uuid.UUID
    book_title: str
    due_date: date


class NotificationService:
    """Sends lending notices through the configured dispatcher."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        executor: AtomicExecutor,
        kv_store: KeyValueStore,
        flags: FeatureFlags,
        policy: LendingPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dispatcher = dispatcher
        self.executor = executor
        self.kv_store = kv_store
        self.flags = flags
        self.policy = policy
        self.clock = clock

    async def notify(
        self,
        kind: NotificationKind,
        recipient_email: str,
        subject: str,
        template_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Attempt one notification.

        Returns:
            bool: True if the dispatcher accepted it. Never raises.
        """
        if not self.flags.notifications_enabled:
            metrics.record_notification(kind.value, "skipped")
            return False

        message = NotificationMessage(
            recipient_email=recipient_email,
            subject=subject,
            body_template=kind.value,
            template_data=template_data or {},
        )
        try:
            sent = await self.dispatcher.send(message)
        except Exception as e:
            logger.error(
                "notification_failed",
                kind=kind.value,
                recipient=recipient_email,
                error=str(e),
            )
            sent = False
        else:
            if not sent:
                logger.warning(
                    "notification_failed",
                    kind=kind.value,
                    recipient=recipient_email,
                    error="dispatcher rejected the message",
                )

        if not sent:
            metrics.record_dependency_failure("notification")
        metrics.record_notification(kind.value, "sent" if sent else "failed")
        return sent

    async def recipient(self, user_id: uuid.UUID) -> Optional[Recipient]:
        async def operation(session: AsyncSession) -> Optional[Recipient]:
            user = await session.get(User, user_id)
            if user is None:
                return None
            return Recipient(user.id, user.email, user.full_name)

        return await self.executor.run(operation, "load_recipient")

    # Subscriptions

    async def subscribe(
        self, user_id: uuid.UUID, book_id: uuid.UUID
    ) -> OperationResult[Dict[str, Any]]:
        """
        Ask to be told when a book is back on the shelf.

        Re-enabling an existing subscription resets its notified_at.
        """
        async def operation(session: AsyncSession) -> Dict[str, Any]:
            if await session.get(Book, book_id) is None:
                raise NotFoundError("Book not found", book_id=str(book_id))
            if await session.get(User, user_id) is None:
                raise NotFoundError("User not found", user_id=str(user_id))

            preference = (
                await session.execute(
                    select(NotificationPreference).where(
                        NotificationPreference.user_id == user_id,
                        NotificationPreference.book_id == book_id,
                    )
                )
            ).scalar_one_or_none()
            if preference is None:
                preference = NotificationPreference(
                    user_id=user_id, book_id=book_id, notify_on_available=True
                )
                session.add(preference)
            else:
                preference.notify_on_available = True
                preference.notified_at = None
            await session.flush()
            return {"user_id": str(user_id), "book_id": str(book_id), "notify_on_available": True}

        try:
            result = await self.executor.run(operation, "subscribe")
        except LendingError as e:
            return OperationResult.failure(e)
        logger.info("availability_subscription_enabled", user_id=str(user_id), book_id=str(book_id))
        return OperationResult.success(result)

    async def unsubscribe(
        self, user_id: uuid.UUID, book_id: uuid.UUID
    ) -> OperationResult[Dict[str, Any]]:
        async def operation(session: AsyncSession) -> Dict[str, Any]:
            await session.execute(
                update(NotificationPreference)
                .where(
                    NotificationPreference.user_id == user_id,
                    NotificationPreference.book_id == book_id,
                )
                .values(notify_on_available=False)
                .execution_options(synchronize_session=False)
            )
            return {"user_id": str(user_id), "book_id": str(book_id), "notify_on_available": False}

        result = await self.executor.run(operation, "unsubscribe")
        logger.info("availability_subscription_disabled", user_id=str(user_id), book_id=str(book_id))
        return OperationResult.success(result)

    # Availability

    async def _claim_subscribers(
        self, session: AsyncSession, book_id: uuid.UUID
    ) -> List[Dict[str, Any]]:
        book = await session.get(Book, book_id, populate_existing=True)
        if book is None or book.available_copies <= 0:
            return []

        candidates = (
            await session.execute(
                select(NotificationPreference.id, User.id, User.email, User.full_name)
                .join(User, User.id == NotificationPreference.user_id)
                .where(
                    NotificationPreference.book_id == book_id,
                    NotificationPreference.notify_on_available.is_(True),
                )
                .order_by(NotificationPreference.created_at)
                .limit(book.available_copies)
            )
        ).all()

        claimed = []
        now = self.clock()
        for preference_id, user_id, email, full_name in candidates:
            won = (
                await session.execute(
                    update(NotificationPreference)
                    .where(
                        NotificationPreference.id == preference_id,
                        NotificationPreference.notify_on_available.is_(True),
                    )
                    .values(notify_on_available=False, notified_at=now)
                    .returning(NotificationPreference.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
            if won is not None:
                claimed.append(
                    {
                        "recipient": Recipient(user_id, email, full_name),
                        "book_title": book.title,
                    }
                )
        return claimed

    async def process_availability(self, book_id: uuid.UUID) -> Dict[str, Any]:
        """
        Notify the oldest active subscribers of a book, one per free copy.

        Each subscription is disabled as it is claimed.

        Returns:
            Dict[str, Any]: Number of subscribers notified and failures
        """
        if not self.flags.notifications_enabled:
            return {"book_id": str(book_id), "notified": 0, "failed": 0, "skipped": True}

        claimed = await self.executor.run(
            lambda session: self._claim_subscribers(session, book_id), "claim_subscribers"
        )

        sent = 0
        for entry in claimed:
            recipient: Recipient = entry["recipient"]
            ok = await self.notify(
                NotificationKind.BOOK_AVAILABLE,
                recipient.email,
                f"\"{entry['book_title']}\" is now available",
                {
                    "full_name": recipient.full_name,
                    "book_title": entry["book_title"],
                    "book_id": str(book_id),
                },
            )
            sent += int(ok)

        if claimed:
            logger.info(
                "availability_notifications_processed",
                book_id=str(book_id),
                notified=sent,
                failed=len(claimed) - sent,
            )
        return {
            "book_id": str(book_id),
            "notified": sent,
            "failed": len(claimed) - sent,
            "skipped": False,
        }

    # Due-date reminders

    async def _loans_due(self, session: AsyncSession, condition) -> List[LoanNotice]:
        rows = (
            await session.execute(
                select(BorrowRecord, User, Book.title)
                .join(User, User.id == BorrowRecord.user_id)
                .join(Book, Book.id == BorrowRecord.book_id)
                .where(BorrowRecord.status == BorrowStatus.BORROWED.value, condition)
                .order_by(BorrowRecord.due_date)
            )
        ).all()
        return [
            LoanNotice(
                recipient=Recipient(user.id, user.email, user.full_name),
                record_id=record.id,
                book_title=title,
                due_date=record.due_date,
            )
            for record, user, title in rows
        ]

    async def _claim_notice(self, kind: NotificationKind, record_id: uuid.UUID, day: date) -> bool:
        key = f"notice:{kind.value}:{record_id}:{day.isoformat()}"
        try:
            return await self.kv_store.set_if_absent(key, "1", NOTICE_CLAIM_TTL)
        except Exception as e:
            logger.warning("notice_claim_failed", key=key, error=str(e))
            metrics.record_dependency_failure("kv_store")
            return True

    async def process_due_notifications(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Send "due soon" and "overdue" reminders for active loans.

        Args:
            as_of: Day to evaluate (defaults to today)

        Returns:
            Dict[str, Any]: Counts per reminder kind
        """
        if not (self.flags.notifications_enabled and self.flags.overdue_detection_enabled):
            logger.info("due_notifications_skipped", reason="feature_disabled")
            return {"skipped": True, "due_soon": 0, "overdue": 0, "failed": 0}

        as_of = as_of or self.clock().date()
        started = self.clock()
        due_soon_day = as_of + timedelta(days=self.policy.due_soon_lead_days)

        due_soon = await self.executor.run(
            lambda session: self._loans_due(session, BorrowRecord.due_date == due_soon_day),
            "loans_due_soon",
        )
        overdue = await self.executor.run(
            lambda session: self._loans_due(session, BorrowRecord.due_date < as_of),
            "loans_overdue",
        )

        counts = {"due_soon": 0, "overdue": 0, "failed": 0, "duplicates": 0}
        batches = ((NotificationKind.DUE_SOON, due_soon), (NotificationKind.OVERDUE, overdue))
        for kind, notices in batches:
            for notice in notices:
                if not await self._claim_notice(kind, notice.record_id, as_of):
                    counts["duplicates"] += 1
                    continue
                days_overdue = (as_of - notice.due_date).days
                subject = (
                    f"\"{notice.book_title}\" is due tomorrow"
                    if kind is NotificationKind.DUE_SOON
                    else f"\"{notice.book_title}\" is {days_overdue} day(s) overdue"
                )
                ok = await self.notify(
                    kind,
                    notice.recipient.email,
                    subject,
                    {
                        "full_name": notice.recipient.full_name,
                        "book_title": notice.book_title,
                        "due_date": notice.due_date.isoformat(),
                        "days_overdue": max(days_overdue, 0),
                        "borrow_record_id": str(notice.record_id),
                    },
                )
                if ok:
                    counts[kind.value] += 1
                else:
                    counts["failed"] += 1

        metrics.record_job_run("due_notifications", (self.clock() - started).total_seconds())
        logger.info("due_notifications_processed", as_of=as_of.isoformat(), **counts)
        return {"skipped": False, "as_of": as_of.isoformat(), **counts}
