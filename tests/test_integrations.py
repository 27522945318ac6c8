"""
Tests for the key-value stores, the email dispatcher and the Stripe adapter.
"""
from typing import List
from unittest.mock import AsyncMock

import httpx
import pytest

from shelfwise.core.kv_store import InMemoryKeyValueStore, RedisKeyValueStore, create_kv_store
from shelfwise.integrations.email_dispatcher import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationMessage,
    create_dispatcher,
)
from shelfwise.integrations.stripe_webhook import StripeWebhookAdapter, WebhookError


def message() -> NotificationMessage:
    return NotificationMessage(
        recipient_email="reader@example.com",
        subject="\"Dune\" is now available",
        body_template="book_available",
        template_data={"book_title": "Dune"},
    )


def dispatcher_answering(*codes: int) -> tuple:
    calls: List[httpx.Request] = []
    answers = iter(codes)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(next(answers))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpNotificationDispatcher("http://mail.test/send", client=client), calls


class TestInMemoryKeyValueStore:
    """Process-local store."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_if_absent(self) -> None:
        store = InMemoryKeyValueStore()

        assert await store.set_if_absent("notice:1", "1", 60) is True
        assert await store.set_if_absent("notice:1", "1", 60) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_incr_and_expire(self) -> None:
        store = InMemoryKeyValueStore()

        assert await store.incr("counter") == 1
        assert await store.incr("counter") == 2
        await store.expire("counter", 60)
        assert await store.get("counter") == "2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = InMemoryKeyValueStore()
        await store.set("key", "value")

        await store.delete("key")

        assert await store.get("key") is None


class TestRedisKeyValueStore:
    """Redis commands issued by the store."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_with_ttl_uses_setex(self) -> None:
        client = AsyncMock()
        store = RedisKeyValueStore("redis://localhost:6379/0", client=client)

        await store.set("idempotency:k", "{}", 60)

        client.setex.assert_awaited_once_with("idempotency:k", 60, "{}")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_if_absent_uses_nx(self) -> None:
        client = AsyncMock()
        client.set.return_value = None
        store = RedisKeyValueStore("redis://localhost:6379/0", client=client)

        claimed = await store.set_if_absent("notice:k", "1", 30)

        assert claimed is False
        client.set.assert_awaited_once_with("notice:k", "1", ex=30, nx=True)

    @pytest.mark.unit
    def test_backend_selection(self) -> None:
        assert isinstance(create_kv_store(None), InMemoryKeyValueStore)
        assert isinstance(create_kv_store("redis://localhost:6379/0"), RedisKeyValueStore)


class TestHttpNotificationDispatcher:
    """Email service calls."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accepted(self) -> None:
        dispatcher, calls = dispatcher_answering(202)

        assert await dispatcher.send(message()) is True
        assert len(calls) == 1
        await dispatcher.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self) -> None:
        dispatcher, calls = dispatcher_answering(422)

        assert await dispatcher.send(message()) is False
        assert len(calls) == 1
        await dispatcher.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_is_retried(self) -> None:
        dispatcher, calls = dispatcher_answering(503, 200)

        assert await dispatcher.send(message()) is True
        assert len(calls) == 2
        await dispatcher.close()

    @pytest.mark.unit
    def test_log_only_without_endpoint(self) -> None:
        assert isinstance(create_dispatcher(None), LoggingNotificationDispatcher)


class TestStripeWebhookAdapter:
    """Event mapping and verification errors."""

    @pytest.mark.unit
    def test_missing_secret(self) -> None:
        with pytest.raises(WebhookError, match="not configured"):
            StripeWebhookAdapter(None).verify_signature(b"{}", "t=1,v1=abc")

    @pytest.mark.unit
    def test_checkout_event_mapping(self) -> None:
        event = {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_map",
                    "payment_intent": "pi_test_map",
                    "amount_total": 1250,
                    "payment_status": "paid",
                    "metadata": {"userId": "u-1", "transactionId": "tx-1", "fineIds": "[]"},
                }
            },
        }

        checkout = StripeWebhookAdapter.to_checkout_event(event)

        assert checkout.session_id == "cs_test_map"
        assert checkout.amount_paid_cents == 1250
        assert checkout.metadata.transaction_id == "tx-1"

    @pytest.mark.unit
    def test_other_event_types(self) -> None:
        assert StripeWebhookAdapter.to_checkout_event({"type": "invoice.paid"}) is None

    @pytest.mark.unit
    def test_malformed_checkout_session(self) -> None:
        with pytest.raises(WebhookError, match="Malformed"):
            StripeWebhookAdapter.to_checkout_event(
                {"type": "checkout.session.completed", "data": {"object": {}}}
            )
