"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, an in-memory key-value store,
a recording notification dispatcher and a clock it can move.
"""
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from shelfwise.config import FeatureFlags, LendingPolicy, Settings
from shelfwise.core.kv_store import InMemoryKeyValueStore
from shelfwise.database.connection import build_engine, init_db
from shelfwise.database.models import (
    Book,
    BorrowRecord,
    BorrowStatus,
    Fine,
    FineStatus,
    FineType,
    User,
)
from shelfwise.integrations.email_dispatcher import NotificationMessage
from shelfwise.services import LendingServices, build_services

WEBHOOK_SECRET = "whsec_test_fake_secret"


class FixedClock:
    """Clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int) -> None:
        self.now += timedelta(days=days)

    def today(self) -> date:
        return self.now.date()


class RecordingDispatcher:
    """Dispatcher that remembers every message it was handed."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.messages: List[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> bool:
        self.messages.append(message)
        return self.succeed

    async def close(self) -> None:
        return None

    def sent(self, template: str) -> List[NotificationMessage]:
        return [m for m in self.messages if m.body_template == template]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def failing_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher(succeed=False)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'shelfwise_test.db'}",
        redis_url=None,
        stripe_webhook_secret=WEBHOOK_SECRET,
        app_name="shelfwise-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Test engine with all tables created."""
    engine = build_engine(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def build(
    test_settings: Settings,
    engine: AsyncEngine,
    clock: FixedClock,
    dispatcher: RecordingDispatcher,
) -> Callable[..., LendingServices]:
    """
    Build services over the test database.

    Keyword arguments override FeatureFlags fields; policy and dispatcher
    can be replaced as well.
    """
    def _build(
        policy: Optional[LendingPolicy] = None,
        dispatcher_override: Any = None,
        **flag_overrides: bool,
    ) -> LendingServices:
        return build_services(
            test_settings,
            engine=engine,
            kv_store=InMemoryKeyValueStore(),
            dispatcher=dispatcher_override or dispatcher,
            flags=FeatureFlags(**flag_overrides),
            policy=policy,
            clock=clock,
        )

    return _build


@pytest.fixture
def services(build: Callable[..., LendingServices]) -> LendingServices:
    return build()


@pytest.fixture
def make_user(services: LendingServices) -> Callable[..., Awaitable[User]]:
    async def _make(
        full_name: str = "Ada Reader",
        total_fines_owed: Decimal = Decimal("0.00"),
        is_restricted: bool = False,
    ) -> User:
        user = User(
            id=uuid.uuid4(),
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            full_name=full_name,
            total_fines_owed=total_fines_owed,
            is_restricted=is_restricted,
            restriction_reason="Total fines exceed $60.00 threshold" if is_restricted else None,
        )
        async with services.session_factory() as session:
            async with session.begin():
                session.add(user)
        return user

    return _make


@pytest.fixture
def make_book(services: LendingServices) -> Callable[..., Awaitable[Book]]:
    async def _make(
        title: str = "The Left Hand of Darkness",
        total_copies: int = 1,
        available_copies: Optional[int] = None,
        price: Optional[Decimal] = Decimal("40.00"),
        reserve_on_request: bool = True,
    ) -> Book:
        book = Book(
            id=uuid.uuid4(),
            title=title,
            author="Ursula K. Le Guin",
            total_copies=total_copies,
            available_copies=total_copies if available_copies is None else available_copies,
            price=price,
            reserve_on_request=reserve_on_request,
        )
        async with services.session_factory() as session:
            async with session.begin():
                session.add(book)
        return book

    return _make


@pytest.fixture
def make_loan(services: LendingServices, clock: FixedClock) -> Callable[..., Awaitable[BorrowRecord]]:
    """Insert an active loan directly (the copy is taken off the shelf)."""
    async def _make(user: User, book: Book, due_date: date) -> BorrowRecord:
        record = BorrowRecord(
            id=uuid.uuid4(),
            user_id=user.id,
            book_id=book.id,
            borrow_date=clock() - timedelta(days=7),
            due_date=due_date,
            status=BorrowStatus.BORROWED.value,
        )
        async with services.session_factory() as session:
            async with session.begin():
                session.add(record)
                stored = await session.get(Book, book.id)
                stored.available_copies -= 1
        return record

    return _make


@pytest.fixture
def make_fine(services: LendingServices, clock: FixedClock) -> Callable[..., Awaitable[Fine]]:
    """Insert a PENDING fine on a returned loan and add it to the user's balance."""
    async def _make(user: User, book: Book, amount: Decimal) -> Fine:
        record = BorrowRecord(
            id=uuid.uuid4(),
            user_id=user.id,
            book_id=book.id,
            borrow_date=clock() - timedelta(days=30),
            due_date=clock().date() - timedelta(days=20),
            return_date=clock(),
            status=BorrowStatus.RETURNED.value,
        )
        fine = Fine(
            id=uuid.uuid4(),
            user_id=user.id,
            book_id=book.id,
            borrow_record_id=record.id,
            fine_type=FineType.LATE_RETURN.value,
            amount=amount,
            paid_amount=Decimal("0.00"),
            status=FineStatus.PENDING.value,
            days_overdue=10,
            is_book_lost=False,
            description="Late return penalty",
            due_date=record.due_date,
            calculation_date=clock().date(),
        )
        async with services.session_factory() as session:
            async with session.begin():
                session.add(record)
                await session.flush()
                session.add(fine)
                stored = await session.get(User, user.id)
                stored.total_fines_owed = Decimal(stored.total_fines_owed) + amount
        return fine

    return _make


@pytest.fixture
def fetch(services: LendingServices) -> Callable[..., Awaitable[Any]]:
    """Load a fresh copy of a row."""
    async def _fetch(model: Any, ident: Any) -> Any:
        async with services.session_factory() as session:
            return await session.get(model, ident)

    return _fetch
