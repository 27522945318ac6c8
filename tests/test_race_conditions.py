"""
Concurrency tests for the inventory ledger.

Several sessions race for the last copies of a book; the conditional
decrement must let exactly as many through as there are copies.
"""
import asyncio
from typing import Any, List

import pytest

from shelfwise.config import FeatureFlags
from shelfwise.core.errors import NotAvailableError
from shelfwise.core.inventory import InventoryLedger
from shelfwise.database.models import Book


async def race(services: Any, book_id: Any, takers: int) -> List[bool]:
    ledger = InventoryLedger(FeatureFlags())

    async def take() -> bool:
        async with services.session_factory() as session:
            async with session.begin():
                try:
                    await ledger.reserve(session, book_id)
                except NotAvailableError:
                    return False
                return True

    return await asyncio.gather(*(take() for _ in range(takers)))


class TestInventoryRace:
    """Concurrent reservations."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_last_copy_goes_to_one_caller(
        self, services: Any, make_book: Any, fetch: Any
    ) -> None:
        book = await make_book(total_copies=1)

        outcomes = await race(services, book.id, takers=2)

        assert outcomes.count(True) == 1
        assert (await fetch(Book, book.id)).available_copies == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_never_more_winners_than_copies(
        self, services: Any, make_book: Any, fetch: Any
    ) -> None:
        book = await make_book(total_copies=3)

        outcomes = await race(services, book.id, takers=5)

        assert outcomes.count(True) == 3
        assert (await fetch(Book, book.id)).available_copies == 0

