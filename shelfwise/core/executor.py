"""
Atomic executors: run a unit of work with or without a transaction.

Business logic is written once as ``async def operation(session) -> T`` and
handed to an executor:

- TransactionalExecutor runs it inside a single database transaction.
- NonTransactionalExecutor runs it on an AUTOCOMMIT connection; every
  statement commits on its own. This is the reduced-safety mode for stores
  without multi-statement transactions.
- FallbackExecutor tries the transactional path and, only when the store
  reports that transactions are unsupported, retries once non-transactionally.
"""
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

import structlog
from sqlalchemy.exc import NotSupportedError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from shelfwise.core.errors import TransactionUnsupported

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Operation = Callable[[AsyncSession], Awaitable[T]]


class AtomicExecutor(Protocol):
    async def run(self, operation: Operation[T], name: str = "operation") -> T: ...


class TransactionalExecutor:
    """Runs each operation in its own session and transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def run(self, operation: Operation[T], name: str = "operation") -> T:
        async with self.session_factory() as session:
            async with session.begin():
                return await operation(session)


class NonTransactionalExecutor:
    """
    Runs each operation on an autocommit connection.

    Statements are not rolled back if a later step fails, so operations must
    order their writes so that an early failure leaves no partial state.
    """

    def __init__(self, engine: AsyncEngine):
        autocommit_engine = engine.execution_options(isolation_level="AUTOCOMMIT")
        self.session_factory = async_sessionmaker(
            autocommit_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def run(self, operation: Operation[T], name: str = "operation") -> T:
        async with self.session_factory() as session:
            result = await operation(session)
            await session.commit()
            return result


class FallbackExecutor:
    """
    Transactional first, non-transactional exactly once on unsupported stores.

    Only TransactionUnsupported and the DB-API NotSupportedError trigger the
    fallback; business errors and integrity errors propagate unchanged.
    """

    def __init__(
        self,
        primary: AtomicExecutor,
        fallback: Optional[AtomicExecutor] = None,
    ):
        self.primary = primary
        self.fallback = fallback

    async def run(self, operation: Operation[T], name: str = "operation") -> T:
        try:
            return await self.primary.run(operation, name)
        except (TransactionUnsupported, NotSupportedError) as e:
            if self.fallback is None:
                raise
            logger.warning(
                "transaction_unsupported_falling_back",
                operation=name,
                error=str(e),
            )
            return await self.fallback.run(operation, name)


def build_executor(
    engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]
) -> FallbackExecutor:
    """Default executor: transactional with a single non-transactional retry."""
    return FallbackExecutor(
        TransactionalExecutor(session_factory),
        NonTransactionalExecutor(engine),
    )
