"""
Inventory ledger: the only writer of Book.available_copies.

Both mutations are single conditional UPDATE ... RETURNING statements, so the
decrement is gated in the same statement as the write and two callers racing
for the last copy cannot both succeed.
"""
import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.config import FeatureFlags
from shelfwise.core.errors import NotAvailableError, NotFoundError
from shelfwise.database.models import Book
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InventoryChange:
    """Outcome of a ledger mutation."""

    book_id: uuid.UUID
    available_copies: int
    violation: bool = False


class InventoryLedger:
    """Atomic reserve/release of book copies."""

    def __init__(self, flags: FeatureFlags):
        self.flags = flags

    def should_reserve_on_request(self, book: Book) -> bool:
        """
        Whether a new borrow request takes a copy immediately.

        True if either the global flag or the book's own flag is set.
        """
        return bool(self.flags.reserve_on_request or book.reserve_on_request)

    async def reserve(self, session: AsyncSession, book_id: uuid.UUID) -> InventoryChange:
        """
        Take one copy of a book.

        Args:
            session: Session of the caller's unit of work
            book_id: Book identifier

        Returns:
            InventoryChange: New available count

        Raises:
            NotAvailableError: If no copy is available
        """
        stmt = (
            update(Book)
            .where(Book.id == book_id, Book.available_copies > 0)
            .values(available_copies=Book.available_copies - 1)
            .returning(Book.available_copies)
            .execution_options(synchronize_session=False)
        )
        new_count = (await session.execute(stmt)).scalar_one_or_none()

        if new_count is None:
            metrics.record_inventory_mutation("reserve", "not_available")
            logger.info("inventory_not_available", book_id=str(book_id))
            raise NotAvailableError("Book is not available for borrowing", book_id=str(book_id))

        violation = new_count < 0
        if violation:
            self._raise_alarm(book_id, new_count, kind="negative")

        metrics.record_inventory_mutation("reserve", "ok")
        logger.info("inventory_reserved", book_id=str(book_id), available_copies=new_count)
        return InventoryChange(book_id, new_count, violation)

    async def release(self, session: AsyncSession, book_id: uuid.UUID) -> InventoryChange:
        """
        Return one copy of a book to the shelf.

        The increment is capped at total_copies; a release that would exceed
        it is reported as an integrity violation instead of failing the unit.

        Args:
            session: Session of the caller's unit of work
            book_id: Book identifier

        Returns:
            InventoryChange: New available count

        Raises:
            NotFoundError: If the book does not exist
        """
        stmt = (
            update(Book)
            .where(Book.id == book_id, Book.available_copies < Book.total_copies)
            .values(available_copies=Book.available_copies + 1)
            .returning(Book.available_copies)
            .execution_options(synchronize_session=False)
        )
        new_count = (await session.execute(stmt)).scalar_one_or_none()

        if new_count is None:
            book = await session.get(Book, book_id, populate_existing=True)
            if book is None:
                raise NotFoundError("Book not found", book_id=str(book_id))
            self._raise_alarm(book_id, book.available_copies, kind="over_release")
            return InventoryChange(book_id, book.available_copies, violation=True)

        metrics.record_inventory_mutation("release", "ok")
        logger.info("inventory_released", book_id=str(book_id), available_copies=new_count)
        return InventoryChange(book_id, new_count)

    @staticmethod
    def _raise_alarm(book_id: uuid.UUID, available_copies: int, kind: str) -> None:
        logger.critical(
            "inventory_violation",
            book_id=str(book_id),
            available_copies=available_copies,
            kind=kind,
        )
        metrics.record_inventory_violation(kind)
