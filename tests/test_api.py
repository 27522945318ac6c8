"""
API tests against the ASGI app with injected services.
"""
import hashlib
import hmac
import json
import time
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from shelfwise.api.main import create_app


def stripe_signature(payload: str, secret: str) -> str:
    timestamp = int(time.time())
    signed = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signed}"


@pytest_asyncio.fixture
async def client(services: Any) -> AsyncGenerator[httpx.AsyncClient, Any]:
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sign(services: Any) -> Any:
    return lambda payload: stripe_signature(payload, services.settings.stripe_webhook_secret)


class TestBorrowEndpoints:
    """Borrow request endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_is_idempotent_by_header(
        self, client: httpx.AsyncClient, make_user: Any, make_book: Any
    ) -> None:
        user = await make_user()
        book = await make_book(total_copies=2)
        body = {"user_id": str(user.id), "book_id": str(book.id), "confirmation_text": "confirm"}

        first = await client.post("/borrow-requests", json=body, headers={"Idempotency-Key": "k-1"})
        second = await client.post("/borrow-requests", json=body, headers={"Idempotency-Key": "k-1"})

        assert first.status_code == 201
        assert first.json()["status"] == "PENDING"
        assert second.json()["id"] == first.json()["id"]
        assert first.headers["X-Request-ID"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_confirmation_is_400(
        self, client: httpx.AsyncClient, make_user: Any, make_book: Any
    ) -> None:
        user = await make_user()
        book = await make_book(title="Dune")

        response = await client.post(
            "/borrow-requests",
            json={"user_id": str(user.id), "book_id": str(book.id), "confirmation_text": "nope nope"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_restricted_user_is_403(
        self, client: httpx.AsyncClient, make_user: Any, make_book: Any
    ) -> None:
        user = await make_user(total_fines_owed=Decimal("75.00"), is_restricted=True)
        book = await make_book()

        response = await client.post(
            "/borrow-requests",
            json={"user_id": str(user.id), "book_id": str(book.id), "confirmation_text": "confirm"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "borrowing_restricted"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_then_conflict(
        self, client: httpx.AsyncClient, make_user: Any, make_book: Any
    ) -> None:
        user = await make_user()
        admin = await make_user(full_name="Desk Admin")
        book = await make_book()
        created = await client.post(
            "/borrow-requests",
            json={"user_id": str(user.id), "book_id": str(book.id), "confirmation_text": "confirm"},
        )
        request_id = created.json()["id"]

        approved = await client.post(
            f"/borrow-requests/{request_id}/approve", json={"admin_id": str(admin.id)}
        )
        again = await client.post(
            f"/borrow-requests/{request_id}/approve", json={"admin_id": str(admin.id)}
        )
        status = await client.get(
            "/borrow-status", params={"user_id": str(user.id), "book_id": str(book.id)}
        )

        assert approved.status_code == 200
        assert approved.json()["status"] == "APPROVED"
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_processed"
        assert status.json()["status"] == "BORROWED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_request_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            f"/borrow-requests/{uuid.uuid4()}/reject", json={"admin_id": str(uuid.uuid4())}
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAccountEndpoints:
    """Fines, eligibility and payments."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fines_and_payment(
        self,
        client: httpx.AsyncClient,
        make_user: Any,
        make_book: Any,
        make_fine: Any,
    ) -> None:
        user = await make_user()
        book = await make_book()
        fine = await make_fine(user, book, Decimal("12.50"))

        before = await client.get(f"/users/{user.id}/fines")
        paid = await client.post(
            "/payments/apply",
            json={
                "user_id": str(user.id),
                "fine_ids": [str(fine.id)],
                "amount": "12.50",
                "payment_reference": "desk-42",
            },
        )
        after = await client.get(f"/users/{user.id}/fines")

        assert before.json()["total_fines_owed"] == "12.50"
        assert paid.json()["applied_total"] == "12.50"
        assert after.json()["total_fines_owed"] == "0.00"
        assert after.json()["outstanding_fines"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_eligibility(self, client: httpx.AsyncClient, make_user: Any) -> None:
        user = await make_user(total_fines_owed=Decimal("61.00"), is_restricted=True)

        response = await client.get(f"/users/{user.id}/eligibility")

        assert response.json()["eligible"] is False
        assert response.json()["code"] == "borrowing_restricted"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_waive_requires_reason(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            f"/fines/{uuid.uuid4()}/waive", json={"admin_id": str(uuid.uuid4()), "reason": ""}
        )

        assert response.status_code == 422


class TestStripeWebhook:
    """Signed webhook delivery."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/stripe",
            content=b"{}",
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_completed_applies_payment(
        self,
        client: httpx.AsyncClient,
        sign: Any,
        make_user: Any,
        make_book: Any,
        make_fine: Any,
    ) -> None:
        user = await make_user()
        book = await make_book()
        fine = await make_fine(user, book, Decimal("25.00"))
        payload = json.dumps(
            {
                "id": "evt_test_webhook",
                "object": "event",
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "id": "cs_test_webhook",
                        "object": "checkout.session",
                        "payment_intent": "pi_test_webhook",
                        "amount_total": 2500,
                        "payment_status": "paid",
                        "metadata": {
                            "userId": str(user.id),
                            "fineIds": json.dumps([str(fine.id)]),
                        },
                    }
                },
            }
        )

        response = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign(payload)},
        )
        replay = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign(payload)},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "applied"
        assert replay.json() == response.json()
        fines = await client.get(f"/users/{user.id}/fines")
        assert fines.json()["total_fines_owed"] == "0.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, client: httpx.AsyncClient, sign: Any) -> None:
        payload = json.dumps(
            {"id": "evt_test_other", "object": "event", "type": "customer.created", "data": {"object": {}}}
        )

        response = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign(payload)},
        )

        assert response.json() == {"status": "ignored", "event_type": "customer.created"}


class TestAdminAndMonitoring:
    """Admin jobs, health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fine_job_with_as_of(
        self, client: httpx.AsyncClient, make_user: Any, make_book: Any, make_loan: Any
    ) -> None:
        user = await make_user()
        book = await make_book()
        await make_loan(user, book, date(2026, 2, 20))

        response = await client.post("/admin/jobs/fines", json={"as_of": "2026-03-01"})

        assert response.json()["created"] == 1
        assert response.json()["total_amount"] == "10.50"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_jobs_without_body(self, client: httpx.AsyncClient) -> None:
        restrictions = await client.post("/admin/jobs/restrictions")
        reminders = await client.post("/admin/jobs/due-notifications")

        assert restrictions.json()["restricted_count"] == 0
        assert reminders.json()["skipped"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["database"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "borrow_requests_total" in response.text
