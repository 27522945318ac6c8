"""
Composition root: builds every lending component from Settings.

Nothing inside shelfwise.core constructs its own collaborators; the API and
the maintenance worker both obtain a LendingServices from build_services().
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from shelfwise.config import FeatureFlags, LendingPolicy, Settings, get_settings
from shelfwise.core.audit import AuditTrail
from shelfwise.core.borrowing import BorrowEngine
from shelfwise.core.executor import AtomicExecutor, build_executor
from shelfwise.core.fines import FineEngine
from shelfwise.core.idempotency import IdempotencyCache
from shelfwise.core.inventory import InventoryLedger
from shelfwise.core.kv_store import KeyValueStore, create_kv_store
from shelfwise.core.notifications import NotificationService
from shelfwise.core.payments import PaymentReconciler
from shelfwise.core.restrictions import RestrictionEngine, RestrictionPolicy
from shelfwise.core.returns import ReturnEngine
from shelfwise.database.connection import (
    build_engine,
    build_session_factory,
)
from shelfwise.database.models import utcnow
from shelfwise.integrations.email_dispatcher import NotificationDispatcher, create_dispatcher

logger = structlog.get_logger(__name__)


@dataclass
class LendingServices:
    settings: Settings
    flags: FeatureFlags
    policy: LendingPolicy
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    kv_store: KeyValueStore
    dispatcher: NotificationDispatcher
    executor: AtomicExecutor
    audit: AuditTrail
    idempotency: IdempotencyCache
    inventory: InventoryLedger
    restriction_policy: RestrictionPolicy
    restrictions: RestrictionEngine
    fines: FineEngine
    notifications: NotificationService
    payments: PaymentReconciler
    borrowing: BorrowEngine
    returns: ReturnEngine

    async def close(self) -> None:
        """Release network clients and pooled connections."""
        await self.dispatcher.close()
        await self.kv_store.close()
        await self.engine.dispose()


def build_services(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[AsyncEngine] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    kv_store: Optional[KeyValueStore] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    executor: Optional[AtomicExecutor] = None,
    flags: Optional[FeatureFlags] = None,
    policy: Optional[LendingPolicy] = None,
    clock: Callable[[], datetime] = utcnow,
) -> LendingServices:
    """
    Wire the lending engine.

    Every collaborator can be overridden, which is how tests swap in an
    in-memory store, a recording dispatcher or a fixed clock.

    Args:
        settings: Settings (defaults to get_settings())
        engine: Async engine (built from settings.database_url otherwise)
        session_factory: Session factory bound to engine
        kv_store: Key-value store (Redis or in-memory per settings)
        dispatcher: Notification dispatcher
        executor: Atomic executor (transactional with fallback by default)
        flags: Feature flags (settings.feature_flags() by default)
        policy: Lending constants
        clock: Source of "now"

    Returns:
        LendingServices: Fully wired components
    """
    settings = settings or get_settings()
    flags = flags or settings.feature_flags()
    policy = policy or settings.lending_policy()

    engine = engine or build_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    session_factory = session_factory or build_session_factory(engine)
    kv_store = kv_store or create_kv_store(settings.redis_url)
    dispatcher = dispatcher or create_dispatcher(
        settings.notification_service_url, settings.notification_timeout_seconds
    )
    executor = executor or build_executor(engine, session_factory)

    audit = AuditTrail(session_factory, flags)
    idempotency = IdempotencyCache(kv_store, flags, default_ttl=settings.idempotency_cache_ttl)
    inventory = InventoryLedger(flags)
    restriction_policy = RestrictionPolicy(policy, clock=clock)
    restrictions = RestrictionEngine(executor, restriction_policy, audit)
    fines = FineEngine(executor, restriction_policy, audit, flags, policy, clock=clock)
    notifications = NotificationService(dispatcher, executor, kv_store, flags, policy, clock=clock)
    payments = PaymentReconciler(
        executor,
        idempotency,
        restriction_policy,
        audit,
        payment_ttl=settings.admin_idempotency_ttl,
        clock=clock,
    )
    borrowing = BorrowEngine(
        executor,
        inventory,
        restriction_policy,
        idempotency,
        notifications,
        audit,
        policy,
        request_ttl=settings.idempotency_cache_ttl,
        clock=clock,
    )
    returns = ReturnEngine(
        executor,
        inventory,
        fines,
        idempotency,
        notifications,
        audit,
        flags,
        request_ttl=settings.idempotency_cache_ttl,
        clock=clock,
    )

    logger.info("lending_services_built", flags=flags.model_dump())
    return LendingServices(
        settings=settings,
        flags=flags,
        policy=policy,
        engine=engine,
        session_factory=session_factory,
        kv_store=kv_store,
        dispatcher=dispatcher,
        executor=executor,
        audit=audit,
        idempotency=idempotency,
        inventory=inventory,
        restriction_policy=restriction_policy,
        restrictions=restrictions,
        fines=fines,
        notifications=notifications,
        payments=payments,
        borrowing=borrowing,
        returns=returns,
    )
