"""
Restriction policy: lock borrowing when unpaid fines exceed the threshold.

Evaluation is edge-triggered and expressed as conditional UPDATEs, so it is
a no-op for users already in the right state and safe to run repeatedly or
concurrently.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.config import LendingPolicy
from shelfwise.core.audit import ActorType, AuditAction, AuditTrail
from shelfwise.core.errors import LendingError, NotFoundError, RestrictedError
from shelfwise.core.executor import AtomicExecutor
from shelfwise.database.models import User, utcnow
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class RestrictionChanges:
    """Users whose restriction flag flipped during an evaluation."""

    restricted: List[uuid.UUID] = field(default_factory=list)
    unrestricted: List[uuid.UUID] = field(default_factory=list)


class RestrictionPolicy:
    """Threshold rule over User.total_fines_owed."""

    def __init__(self, policy: LendingPolicy, clock: Callable[[], datetime] = utcnow):
        self.policy = policy
        self.clock = clock

    @property
    def reason(self) -> str:
        return f"Total fines exceed ${self.policy.restriction_threshold} threshold"

    def _restrict_stmt(self):
        return (
            update(User)
            .where(
                User.total_fines_owed > self.policy.restriction_threshold,
                User.is_restricted.is_(False),
            )
            .values(is_restricted=True, restriction_reason=self.reason, restricted_at=self.clock())
            .returning(User.id)
            .execution_options(synchronize_session=False)
        )

    def _unrestrict_stmt(self):
        return (
            update(User)
            .where(
                User.total_fines_owed <= self.policy.restriction_threshold,
                User.is_restricted.is_(True),
            )
            .values(is_restricted=False, restriction_reason=None, restricted_at=None)
            .returning(User.id)
            .execution_options(synchronize_session=False)
        )

    async def _apply(self, session: AsyncSession, restrict, unrestrict) -> RestrictionChanges:
        restricted = list((await session.execute(restrict)).scalars())
        unrestricted = list((await session.execute(unrestrict)).scalars())
        changes = RestrictionChanges(restricted=restricted, unrestricted=unrestricted)
        for user_id in restricted:
            logger.info("user_restricted", user_id=str(user_id), reason=self.reason)
        for user_id in unrestricted:
            logger.info("user_unrestricted", user_id=str(user_id))
        return changes

    async def evaluate_user(self, session: AsyncSession, user_id: uuid.UUID) -> RestrictionChanges:
        """
        Re-evaluate one user after their balance changed.

        Args:
            session: Session of the caller's unit of work
            user_id: User whose balance changed

        Returns:
            RestrictionChanges: Flip applied to this user, if any
        """
        return await self._apply(
            session,
            self._restrict_stmt().where(User.id == user_id),
            self._unrestrict_stmt().where(User.id == user_id),
        )

    async def sweep(self, session: AsyncSession) -> RestrictionChanges:
        """
        Batch re-evaluation of every user.

        Returns:
            RestrictionChanges: All users restricted or unrestricted
        """
        changes = await self._apply(session, self._restrict_stmt(), self._unrestrict_stmt())
        logger.info(
            "restriction_sweep_completed",
            restricted=len(changes.restricted),
            unrestricted=len(changes.unrestricted),
        )
        return changes

    async def check_borrow_eligibility(self, session: AsyncSession, user_id: uuid.UUID) -> User:
        """
        Ensure a user may submit a new borrow request.

        Args:
            session: Database session
            user_id: Borrower

        Returns:
            User: The eligible user

        Raises:
            NotFoundError: If the user does not exist
            RestrictedError: If borrowing is locked
        """
        user = (
            await session.execute(
                select(User).where(User.id == user_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found", user_id=str(user_id))

        if user.is_restricted:
            raise RestrictedError(
                "Your borrowing privileges are restricted: "
                f"{user.restriction_reason or self.reason}. "
                "Pay your outstanding fines to borrow again.",
                user_id=str(user_id),
            )

        if self.policy.require_zero_balance_to_borrow and user.total_fines_owed > 0:
            raise RestrictedError(
                f"You have ${user.total_fines_owed} in unpaid fines. "
                "Pay them before borrowing another book.",
                user_id=str(user_id),
            )
        return user


async def publish_restriction_changes(
    audit: AuditTrail, changes: RestrictionChanges, reason: str
) -> None:
    """Audit and meter restriction flips after the unit of work committed."""
    metrics.record_restriction_change("restricted", len(changes.restricted))
    metrics.record_restriction_change("unrestricted", len(changes.unrestricted))
    for user_id in changes.restricted:
        await audit.record(
            AuditAction.USER_RESTRICTED,
            ActorType.SYSTEM,
            "user",
            user_id,
            details={"reason": reason},
        )
    for user_id in changes.unrestricted:
        await audit.record(AuditAction.USER_UNRESTRICTED, ActorType.SYSTEM, "user", user_id)


class RestrictionEngine:
    """Runs restriction evaluations as their own units of work."""

    def __init__(self, executor: AtomicExecutor, policy: RestrictionPolicy, audit: AuditTrail):
        self.executor = executor
        self.policy = policy
        self.audit = audit

    async def evaluate(self, user_id: uuid.UUID) -> Dict[str, Any]:
        async def operation(session: AsyncSession) -> RestrictionChanges:
            return await self.policy.evaluate_user(session, user_id)

        changes = await self.executor.run(operation, "evaluate_restriction")
        await publish_restriction_changes(self.audit, changes, self.policy.reason)
        return _changes_view(changes)

    async def run_sweep(self) -> Dict[str, Any]:
        """
        Batch sweep over all users.

        Returns:
            Dict[str, Any]: Counts and ids of users whose restriction changed
        """
        changes = await self.executor.run(self.policy.sweep, "restriction_sweep")
        await publish_restriction_changes(self.audit, changes, self.policy.reason)
        return _changes_view(changes)

    async def check_borrow_eligibility(self, user_id: uuid.UUID) -> Dict[str, Any]:
        try:
            await self.executor.run(
                lambda session: self.policy.check_borrow_eligibility(session, user_id),
                "check_borrow_eligibility",
            )
        except LendingError as e:
            return {"eligible": False, "reason": e.user_message, "code": e.error_code}
        return {"eligible": True, "reason": None, "code": None}


def _changes_view(changes: RestrictionChanges) -> Dict[str, Any]:
    return {
        "restricted": [str(user_id) for user_id in changes.restricted],
        "unrestricted": [str(user_id) for user_id in changes.unrestricted],
        "restricted_count": len(changes.restricted),
        "unrestricted_count": len(changes.unrestricted),
    }
