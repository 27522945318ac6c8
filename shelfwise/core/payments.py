"""
Payment reconciliation: apply gateway payments to outstanding fines.

Allocation is an equal split of the payment across the selected fines,
each share capped at that fine's outstanding balance. Excess from a capped
share is not redistributed to the other fines and is reported back as
"unapplied".

A payment may be delivered more than once by the gateway. Repeats are
absorbed twice over: the idempotency cache keyed by transaction/session id,
and a durable check for fine_payments already carrying the payment reference.
"""
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.core.audit import ActorType, AuditAction, AuditTrail
from shelfwise.core.balances import decrease_fines_owed
from shelfwise.core.errors import (
    LendingError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from shelfwise.core.executor import AtomicExecutor
from shelfwise.core.idempotency import IdempotencyCache
from shelfwise.core.restrictions import (
    RestrictionChanges,
    RestrictionPolicy,
    publish_restriction_changes,
)
from shelfwise.core.serializers import money
from shelfwise.database.models import (
    OUTSTANDING_FINE_STATUSES,
    Fine,
    FinePayment,
    FineStatus,
    User,
    utcnow,
)
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


class CheckoutMetadata(BaseModel):
    user_id: str = Field(alias="userId")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    fine_ids: str | List[str] = Field(alias="fineIds")

    model_config = ConfigDict(populate_by_name=True)

    def parsed_fine_ids(self) -> List[uuid.UUID]:
        raw = json.loads(self.fine_ids) if isinstance(self.fine_ids, str) else self.fine_ids
        return [uuid.UUID(str(fine_id)) for fine_id in raw]


class CheckoutSessionEvent(BaseModel):
    """Payment confirmation delivered by the gateway webhook."""

    session_id: str = Field(alias="sessionId")
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")
    amount_paid_cents: int = Field(alias="amountPaidCents", ge=0)
    status: str
    metadata: Optional[CheckoutMetadata] = None

    model_config = ConfigDict(populate_by_name=True)


@dataclass
class PaymentOutcome:
    result: Dict[str, Any]
    restriction_changes: RestrictionChanges = field(default_factory=RestrictionChanges)
    applied: bool = True


def split_payment(total: Decimal, outstanding: Sequence[Decimal]) -> List[Decimal]:
    """
    Equal split of a payment across fines, capped per fine.

    Shares are rounded down to the cent so the sum never exceeds the payment.

    Args:
        total: Amount paid
        outstanding: Outstanding balance of each fine, in order

    Returns:
        List[Decimal]: Amount to apply to each fine (0.00 means skip)
    """
    if not outstanding:
        return []
    share = (total / len(outstanding)).quantize(CENT, rounding=ROUND_DOWN)
    return [max(Decimal("0.00"), min(share, balance)) for balance in outstanding]


class PaymentReconciler:
    """Applies payments to fines and keeps the user's balance in step."""

    def __init__(
        self,
        executor: AtomicExecutor,
        idempotency: IdempotencyCache,
        restrictions: RestrictionPolicy,
        audit: AuditTrail,
        payment_ttl: int = 172800,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.idempotency = idempotency
        self.restrictions = restrictions
        self.audit = audit
        self.payment_ttl = payment_ttl
        self.clock = clock

    async def _apply(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        fine_ids: Sequence[uuid.UUID],
        total_amount_paid: Decimal,
        payment_reference: Optional[str],
        payment_method: str,
    ) -> PaymentOutcome:
        if payment_reference:
            already = (
                await session.execute(
                    select(FinePayment.id)
                    .where(FinePayment.payment_reference == payment_reference)
                    .limit(1)
                )
            ).scalar_one_or_none()
            if already is not None:
                logger.info("payment_already_applied", payment_reference=payment_reference)
                return PaymentOutcome(
                    result={
                        "status": "duplicate",
                        "payment_reference": payment_reference,
                        "user_id": str(user_id),
                    },
                    applied=False,
                )

        if await session.get(User, user_id) is None:
            raise NotFoundError("User not found", user_id=str(user_id))

        fines = {
            fine.id: fine
            for fine in (
                await session.execute(
                    select(Fine)
                    .where(Fine.id.in_(fine_ids), Fine.user_id == user_id)
                    .with_for_update()
                )
            ).scalars()
        }
        missing = [str(fine_id) for fine_id in fine_ids if fine_id not in fines]
        if missing:
            raise NotFoundError(
                "One or more fines were not found for this user", fine_ids=missing
            )

        ordered = [fines[fine_id] for fine_id in fine_ids]
        outstanding = [
            fine.outstanding if fine.status in OUTSTANDING_FINE_STATUSES else Decimal("0.00")
            for fine in ordered
        ]
        shares = split_payment(total_amount_paid, outstanding)

        now = self.clock()
        applied_total = Decimal("0.00")
        allocations = []
        for fine, share in zip(ordered, shares):
            if share <= 0:
                continue
            session.add(
                FinePayment(
                    fine_id=fine.id,
                    user_id=user_id,
                    amount=share,
                    payment_method=payment_method,
                    payment_reference=payment_reference,
                )
            )
            fine.paid_amount = Decimal(fine.paid_amount) + share
            if fine.paid_amount >= Decimal(fine.amount):
                fine.status = FineStatus.PAID.value
                fine.paid_at = now
            else:
                fine.status = FineStatus.PARTIAL_PAID.value
            applied_total += share
            allocations.append(
                {
                    "fine_id": str(fine.id),
                    "applied": money(share),
                    "paid_amount": money(fine.paid_amount),
                    "status": fine.status,
                }
            )
        await session.flush()

        if applied_total > 0:
            await decrease_fines_owed(session, user_id, applied_total)
        changes = await self.restrictions.evaluate_user(session, user_id)

        return PaymentOutcome(
            result={
                "status": "applied",
                "user_id": str(user_id),
                "payment_reference": payment_reference,
                "amount_paid": money(total_amount_paid),
                "applied_total": money(applied_total),
                "unapplied": money(total_amount_paid - applied_total),
                "allocations": allocations,
            },
            restriction_changes=changes,
        )

    async def apply_payment(
        self,
        user_id: uuid.UUID,
        fine_ids: Sequence[uuid.UUID],
        total_amount_paid: Decimal,
        payment_reference: Optional[str] = None,
        payment_method: str = "stripe",
    ) -> OperationResult[Dict[str, Any]]:
        """
        Distribute a payment across fines.

        The amount is split equally over the distinct fines selected. A fine
        listed twice counts once, so it cannot receive two shares or two
        ledger entries for the same payment.

        Args:
            user_id: Paying user
            fine_ids: Fines the payment is for (repeats are ignored)
            total_amount_paid: Amount in dollars
            payment_reference: Gateway reference stored on each ledger entry
            payment_method: Ledger payment method label

        Returns:
            OperationResult[Dict[str, Any]]: Allocation summary
        """
        if not fine_ids:
            return OperationResult.failure(ValidationError("At least one fine must be selected"))
        if total_amount_paid <= 0:
            return OperationResult.failure(ValidationError("Payment amount must be positive"))

        unique_ids = list(dict.fromkeys(fine_ids))
        try:
            outcome = await self.executor.run(
                lambda session: self._apply(
                    session,
                    user_id,
                    unique_ids,
                    Decimal(total_amount_paid),
                    payment_reference,
                    payment_method,
                ),
                "apply_payment",
            )
        except LendingError as e:
            logger.warning("payment_rejected", user_id=str(user_id), error=e.error_code)
            return OperationResult.failure(e)

        if not outcome.applied:
            metrics.record_payment("duplicate")
            return OperationResult.success(outcome.result)

        result = outcome.result
        metrics.record_payment("applied", float(result["applied_total"]))
        logger.info(
            "payment_applied",
            user_id=str(user_id),
            payment_reference=payment_reference,
            applied_total=result["applied_total"],
            unapplied=result["unapplied"],
        )
        for allocation in result["allocations"]:
            await self.audit.record(
                AuditAction.FINE_PAID,
                ActorType.USER,
                "fine",
                allocation["fine_id"],
                actor_id=user_id,
                details=allocation | {"payment_reference": payment_reference},
            )
        await self.audit.record(
            AuditAction.PAYMENT_COMPLETED,
            ActorType.USER,
            "user",
            user_id,
            actor_id=user_id,
            details={
                "payment_reference": payment_reference,
                "amount_paid": result["amount_paid"],
                "applied_total": result["applied_total"],
                "fine_ids": [str(fine_id) for fine_id in unique_ids],
            },
        )
        await publish_restriction_changes(
            self.audit, outcome.restriction_changes, self.restrictions.reason
        )
        return OperationResult.success(result)

    async def reconcile_checkout_session(
        self, event: CheckoutSessionEvent | Dict[str, Any]
    ) -> OperationResult[Dict[str, Any]]:
        """
        Handle a gateway payment confirmation.

        Only status "paid" is reconciled. Safe to call repeatedly for the same
        confirmation.

        Args:
            event: Checkout session payload

        Returns:
            OperationResult[Dict[str, Any]]: Reconciliation summary
        """
        if isinstance(event, dict):
            try:
                event = CheckoutSessionEvent.model_validate(event)
            except ValueError as e:
                return OperationResult.failure(ValidationError(f"Invalid payment payload: {e}"))

        if event.status != "paid":
            logger.info("checkout_session_ignored", session_id=event.session_id, status=event.status)
            metrics.record_payment("ignored")
            return OperationResult.success(
                {"status": "ignored", "session_id": event.session_id, "reason": event.status}
            )

        if event.metadata is None:
            return OperationResult.failure(
                ValidationError("Payment metadata is missing userId or fineIds")
            )
        try:
            user_id = uuid.UUID(event.metadata.user_id)
            fine_ids = event.metadata.parsed_fine_ids()
        except (ValueError, TypeError) as e:
            return OperationResult.failure(ValidationError(f"Invalid payment metadata: {e}"))

        amount = (Decimal(event.amount_paid_cents) / 100).quantize(CENT)
        key = f"payment:{event.metadata.transaction_id or event.session_id}"

        async def reconcile() -> Dict[str, Any]:
            outcome = await self.apply_payment(
                user_id, fine_ids, amount, payment_reference=event.session_id
            )
            if not outcome.ok:
                raise outcome.error
            return outcome.value

        try:
            result = await self.idempotency.execute_idempotent(
                key, self.payment_ttl, reconcile, operation="reconcile_payment"
            )
        except LendingError as e:
            return OperationResult.failure(e)
        return OperationResult.success(result)
