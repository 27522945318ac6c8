"""
Tests for the return request lifecycle.
"""
import uuid
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import select

from shelfwise.database.models import Book, BorrowRecord, Fine, ReturnRequest, User

DUE = date(2026, 3, 9)


class TestCreateReturnRequest:
    """Submitting return requests."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_pending_return(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)

        result = await services.returns.create_return_request(user.id, loan.id)

        assert result.ok
        assert result.value["status"] == "PENDING"
        assert result.value["borrow_record_id"] == str(loan.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_someone_elses_loan_is_not_found(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        owner = await make_user()
        stranger = await make_user(full_name="Someone Else")
        book = await make_book()
        loan = await make_loan(owner, book, DUE)

        result = await services.returns.create_return_request(stranger.id, loan.id)

        assert result.error_code == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_pending_return_is_rejected(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)

        await services.returns.create_return_request(user.id, loan.id, idempotency_key="ret-1")
        second = await services.returns.create_return_request(
            user.id, loan.id, idempotency_key="ret-2"
        )

        assert second.error_code == "duplicate_request"
        assert second.message == "A return request is already pending for this book"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_with_same_key_returns_same_request(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)

        first = await services.returns.create_return_request(user.id, loan.id, "ret-7")
        second = await services.returns.create_return_request(user.id, loan.id, "ret-7")

        assert second.value["id"] == first.value["id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_used_for_a_borrow_does_not_answer_a_return(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        borrowed = await make_book()
        wanted = await make_book(total_copies=2)
        loan = await make_loan(user, borrowed, DUE)

        borrow = await services.borrowing.create_borrow_request(
            user.id, wanted.id, "confirm", idempotency_key="k-1"
        )
        result = await services.returns.create_return_request(
            user.id, loan.id, idempotency_key="k-1"
        )

        assert borrow.ok
        assert result.ok
        assert result.value["id"] != borrow.value["id"]
        assert result.value["borrow_record_id"] == str(loan.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_key_from_two_users_creates_two_returns(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        alice = await make_user(full_name="Alice Reader")
        bob = await make_user(full_name="Bob Reader")
        book = await make_book(total_copies=2)
        alice_loan = await make_loan(alice, book, DUE)
        bob_loan = await make_loan(bob, book, DUE)

        first = await services.returns.create_return_request(alice.id, alice_loan.id, "ret-9")
        second = await services.returns.create_return_request(bob.id, bob_loan.id, "ret-9")

        assert second.ok
        assert second.value["id"] != first.value["id"]
        assert second.value["user_id"] == str(bob.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_restricted_user_may_still_return(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user(total_fines_owed=Decimal("80.00"), is_restricted=True)
        book = await make_book()
        loan = await make_loan(user, book, DUE)

        result = await services.returns.create_return_request(user.id, loan.id)

        assert result.ok


class TestReturnDecisions:
    """Admin approval and rejection of returns."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_on_time_return_closes_loan(
        self,
        services: Any,
        make_user: Any,
        make_book: Any,
        make_loan: Any,
        fetch: Any,
        dispatcher: Any,
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        created = await services.returns.create_return_request(user.id, loan.id)

        result = await services.returns.approve_return_request(
            uuid.UUID(created.value["id"]), user.id
        )

        assert result.value["status"] == "APPROVED"
        assert "fine" not in result.value
        record = await fetch(BorrowRecord, loan.id)
        assert record.status == "RETURNED"
        assert record.return_date is not None
        assert (await fetch(Book, book.id)).available_copies == 1
        assert len(dispatcher.sent("return_approved")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_return_charges_fine(
        self,
        services: Any,
        make_user: Any,
        make_book: Any,
        make_loan: Any,
        fetch: Any,
        clock: Any,
    ) -> None:
        user = await make_user()
        book = await make_book(price=Decimal("40.00"))
        loan = await make_loan(user, book, DUE)
        created = await services.returns.create_return_request(user.id, loan.id)
        clock.advance(23)

        result = await services.returns.approve_return_request(
            uuid.UUID(created.value["id"]), user.id
        )

        assert result.value["fine"]["amount"] == "52.00"
        assert result.value["fine"]["is_book_lost"] is True
        stored = await fetch(User, user.id)
        assert stored.total_fines_owed == Decimal("52.00")
        assert stored.is_restricted is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_existing_fine_is_not_charged_twice(
        self,
        services: Any,
        make_user: Any,
        make_book: Any,
        make_loan: Any,
        fetch: Any,
        clock: Any,
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        clock.advance(16)
        await services.fines.run_sweep()
        created = await services.returns.create_return_request(user.id, loan.id)

        result = await services.returns.approve_return_request(
            uuid.UUID(created.value["id"]), user.id
        )

        assert result.ok
        assert "fine" not in result.value
        async with services.session_factory() as session:
            fines = (await session.execute(select(Fine).where(Fine.user_id == user.id))).scalars().all()
        assert len(fines) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_twice_is_already_processed(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any, fetch: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        created = await services.returns.create_return_request(user.id, loan.id)
        request_id = uuid.UUID(created.value["id"])

        await services.returns.approve_return_request(request_id, user.id)
        second = await services.returns.approve_return_request(request_id, user.id)

        assert second.error_code == "already_processed"
        assert (await fetch(Book, book.id)).available_copies == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_return_after_approval_is_conflict(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        created = await services.returns.create_return_request(user.id, loan.id)
        await services.returns.approve_return_request(uuid.UUID(created.value["id"]), user.id)

        again = await services.returns.create_return_request(user.id, loan.id)

        assert again.error_code == "conflict"
        assert again.message == "This book has already been returned"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reject_requires_reason(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        created = await services.returns.create_return_request(user.id, loan.id)

        result = await services.returns.reject_return_request(
            uuid.UUID(created.value["id"]), user.id, "   "
        )

        assert result.error_code == "validation_error"
        assert result.message == "A rejection reason is required"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reject_keeps_loan_open(
        self,
        services: Any,
        make_user: Any,
        make_book: Any,
        make_loan: Any,
        fetch: Any,
        dispatcher: Any,
    ) -> None:
        user = await make_user()
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        created = await services.returns.create_return_request(user.id, loan.id)

        result = await services.returns.reject_return_request(
            uuid.UUID(created.value["id"]), user.id, "Book not received at desk"
        )

        assert result.value["status"] == "REJECTED"
        assert result.value["rejection_reason"] == "Book not received at desk"
        assert (await fetch(BorrowRecord, loan.id)).status == "BORROWED"
        assert (await fetch(Book, book.id)).available_copies == 0
        assert len(dispatcher.sent("return_rejected")) == 1

        retry = await services.returns.create_return_request(user.id, loan.id)
        assert retry.ok
        assert retry.value["id"] != created.value["id"]
        assert (await fetch(ReturnRequest, uuid.UUID(retry.value["id"]))).status == "PENDING"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_queue(
        self, services: Any, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user(full_name="Returning Reader")
        book = await make_book()
        loan = await make_loan(user, book, DUE)
        await services.returns.create_return_request(user.id, loan.id)

        queue = await services.returns.list_pending_return_requests()

        assert [entry["user_name"] for entry in queue] == ["Returning Reader"]
