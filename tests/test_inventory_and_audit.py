"""
Tests for the inventory ledger and the audit trail.
"""
import uuid
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from shelfwise.config import FeatureFlags
from shelfwise.core.audit import ActorType, AuditAction, AuditTrail
from shelfwise.core.errors import NotAvailableError, NotFoundError
from shelfwise.core.inventory import InventoryLedger
from shelfwise.database.models import AuditLog, Book


class TestInventoryLedger:
    """Reserve and release bounds."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reserve_and_release(self, services: Any, make_book: Any, fetch: Any) -> None:
        book = await make_book(total_copies=2)

        async def reserve_then_release(session: Any) -> Any:
            taken = await services.inventory.reserve(session, book.id)
            returned = await services.inventory.release(session, book.id)
            return taken, returned

        taken, returned = await services.executor.run(reserve_then_release)

        assert taken.available_copies == 1
        assert returned.available_copies == 2
        assert not returned.violation

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_release_never_exceeds_total(
        self, services: Any, make_book: Any, fetch: Any
    ) -> None:
        book = await make_book(total_copies=1)

        change = await services.executor.run(
            lambda session: services.inventory.release(session, book.id)
        )

        assert change.violation is True
        assert change.available_copies == 1
        assert (await fetch(Book, book.id)).available_copies == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_release_unknown_book(self, services: Any) -> None:
        with pytest.raises(NotFoundError):
            await services.executor.run(
                lambda session: services.inventory.release(session, uuid.uuid4())
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reserve_empty_shelf(self, services: Any, make_book: Any) -> None:
        book = await make_book(total_copies=1, available_copies=0)

        with pytest.raises(NotAvailableError):
            await services.executor.run(
                lambda session: services.inventory.reserve(session, book.id)
            )

    @pytest.mark.unit
    def test_reserve_on_request_policy(self) -> None:
        per_book = Book(reserve_on_request=True)
        deferred = Book(reserve_on_request=False)

        assert InventoryLedger(FeatureFlags()).should_reserve_on_request(deferred)
        assert InventoryLedger(FeatureFlags(reserve_on_request=False)).should_reserve_on_request(per_book)
        assert not InventoryLedger(FeatureFlags(reserve_on_request=False)).should_reserve_on_request(
            deferred
        )


class TestAuditTrail:
    """Audit entries after committed transitions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_borrow_request_is_audited(
        self, services: Any, make_user: Any, make_book: Any
    ) -> None:
        user = await make_user()
        book = await make_book()

        created = await services.borrowing.create_borrow_request(user.id, book.id, "confirm")

        async with services.session_factory() as session:
            entries = (await session.execute(select(AuditLog))).scalars().all()
        assert [entry.action for entry in entries] == ["BORROW_REQUEST_CREATED"]
        assert entries[0].entity_id == created.value["id"]
        assert entries[0].actor_id == user.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_disabled_audit_writes_nothing(
        self, build: Any, make_user: Any, make_book: Any
    ) -> None:
        services = build(audit_logging_enabled=False)
        user = await make_user()
        book = await make_book()

        await services.borrowing.create_borrow_request(user.id, book.id, "confirm")

        async with services.session_factory() as session:
            entries = (await session.execute(select(AuditLog))).scalars().all()
        assert entries == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self) -> None:
        session_factory = MagicMock(side_effect=RuntimeError("database unavailable"))
        trail = AuditTrail(session_factory, FeatureFlags())

        written = await trail.record(AuditAction.FINE_WAIVED, ActorType.ADMIN, "fine", uuid.uuid4())

        assert written is False
