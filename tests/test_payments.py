"""
Tests for payment reconciliation.
"""
import json
import uuid
from decimal import Decimal
from typing import Any, Dict

import pytest
from sqlalchemy import func, select

from shelfwise.core.payments import split_payment
from shelfwise.database.models import Fine, FinePayment, User


def checkout_event(
    user_id: uuid.UUID,
    fine_ids: Any,
    amount_cents: int,
    session_id: str = "cs_test_123",
    status: str = "paid",
) -> Dict[str, Any]:
    return {
        "sessionId": session_id,
        "paymentIntentId": "pi_test_123",
        "amountPaidCents": amount_cents,
        "status": status,
        "metadata": {"userId": str(user_id), "fineIds": fine_ids},
    }


class TestSplitPayment:
    """Equal split with per-fine caps."""

    @pytest.mark.unit
    def test_even_split(self) -> None:
        assert split_payment(Decimal("20.00"), [Decimal("10.00"), Decimal("10.00")]) == [
            Decimal("10.00"),
            Decimal("10.00"),
        ]

    @pytest.mark.unit
    def test_capped_share_is_not_redistributed(self) -> None:
        shares = split_payment(Decimal("70.00"), [Decimal("30.00"), Decimal("40.00")])

        assert shares == [Decimal("30.00"), Decimal("35.00")]

    @pytest.mark.unit
    def test_rounds_down_to_cent(self) -> None:
        shares = split_payment(Decimal("10.00"), [Decimal("50.00")] * 3)

        assert shares == [Decimal("3.33")] * 3
        assert sum(shares) <= Decimal("10.00")

    @pytest.mark.unit
    def test_settled_fine_gets_nothing(self) -> None:
        assert split_payment(Decimal("10.00"), [Decimal("0.00"), Decimal("20.00")]) == [
            Decimal("0.00"),
            Decimal("5.00"),
        ]

    @pytest.mark.unit
    def test_no_fines(self) -> None:
        assert split_payment(Decimal("10.00"), []) == []


class TestApplyPayment:
    """Applying payments to fines."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_and_full_payment(
        self, services: Any, make_user: Any, make_book: Any, make_fine: Any, fetch: Any
    ) -> None:
        user = await make_user(is_restricted=True)
        book = await make_book()
        small = await make_fine(user, book, Decimal("30.00"))
        large = await make_fine(user, book, Decimal("40.00"))

        result = await services.payments.apply_payment(
            user.id, [small.id, large.id], Decimal("70.00"), payment_reference="manual-1"
        )

        assert result.value["status"] == "applied"
        assert result.value["applied_total"] == "65.00"
        assert result.value["unapplied"] == "5.00"
        assert (await fetch(Fine, small.id)).status == "PAID"
        partial = await fetch(Fine, large.id)
        assert partial.status == "PARTIAL_PAID"
        assert partial.paid_amount == Decimal("35.00")
        stored = await fetch(User, user.id)
        assert stored.total_fines_owed == Decimal("5.00")
        assert stored.is_restricted is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeated_fine_id_gets_one_share(
        self, services: Any, make_user: Any, make_book: Any, make_fine: Any, fetch: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        fine = await make_fine(user, book, Decimal("30.00"))

        result = await services.payments.apply_payment(
            user.id, [fine.id, fine.id], Decimal("20.00"), payment_reference="manual-rep"
        )

        assert result.value["applied_total"] == "20.00"
        assert len(result.value["allocations"]) == 1
        assert (await fetch(Fine, fine.id)).paid_amount == Decimal("20.00")
        async with services.session_factory() as session:
            entries = await session.scalar(
                select(func.count()).select_from(FinePayment).where(FinePayment.fine_id == fine.id)
            )
        assert entries == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_reference_applies_once(
        self, services: Any, make_user: Any, make_book: Any, make_fine: Any, fetch: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        fine = await make_fine(user, book, Decimal("20.00"))

        await services.payments.apply_payment(user.id, [fine.id], Decimal("10.00"), "ref-9")
        repeat = await services.payments.apply_payment(user.id, [fine.id], Decimal("10.00"), "ref-9")

        assert repeat.value["status"] == "duplicate"
        assert (await fetch(User, user.id)).total_fines_owed == Decimal("10.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fine_of_another_user_is_not_found(
        self, services: Any, make_user: Any, make_book: Any, make_fine: Any, fetch: Any
    ) -> None:
        owner = await make_user()
        payer = await make_user()
        book = await make_book()
        fine = await make_fine(owner, book, Decimal("20.00"))

        result = await services.payments.apply_payment(payer.id, [fine.id], Decimal("20.00"))

        assert result.error_code == "not_found"
        assert (await fetch(Fine, fine.id)).status == "PENDING"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_positive_amount(self, services: Any) -> None:
        result = await services.payments.apply_payment(uuid.uuid4(), [uuid.uuid4()], Decimal("0"))

        assert result.error_code == "validation_error"


class TestCheckoutReconciliation:
    """Gateway confirmations."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_session_is_applied(
        self, services: Any, make_user: Any, make_book: Any, make_fine: Any, fetch: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        fine = await make_fine(user, book, Decimal("25.00"))

        result = await services.payments.reconcile_checkout_session(
            checkout_event(user.id, json.dumps([str(fine.id)]), 2500)
        )

        assert result.value["status"] == "applied"
        assert (await fetch(Fine, fine.id)).status == "PAID"
        assert (await fetch(User, user.id)).total_fines_owed == Decimal("0.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unpaid_session_is_ignored(self, services: Any) -> None:
        result = await services.payments.reconcile_checkout_session(
            checkout_event(uuid.uuid4(), [], 1000, status="unpaid")
        )

        assert result.value["status"] == "ignored"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivered_session_applies_once(
        self, services: Any, make_user: Any, make_book: Any, make_fine: Any, fetch: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        fine = await make_fine(user, book, Decimal("30.00"))
        event = checkout_event(user.id, [str(fine.id)], 1000, session_id="cs_test_redeliver")

        first = await services.payments.reconcile_checkout_session(event)
        second = await services.payments.reconcile_checkout_session(event)
        await services.idempotency.clear("payment:cs_test_redeliver")
        third = await services.payments.reconcile_checkout_session(event)

        assert first.value == second.value
        assert third.value["status"] == "duplicate"
        async with services.session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(FinePayment))
        assert count == 1
        assert (await fetch(User, user.id)).total_fines_owed == Decimal("20.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_metadata(self, services: Any) -> None:
        event = checkout_event(uuid.uuid4(), [], 1000)
        event["metadata"] = None

        result = await services.payments.reconcile_checkout_session(event)

        assert result.error_code == "validation_error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_fine_ids(self, services: Any) -> None:
        result = await services.payments.reconcile_checkout_session(
            checkout_event(uuid.uuid4(), "not-json", 1000)
        )

        assert result.error_code == "validation_error"
