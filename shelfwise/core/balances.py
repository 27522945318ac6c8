"""Atomic adjustments of User.total_fines_owed."""
import uuid
from decimal import Decimal

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from shelfwise.database.models import User


async def increase_fines_owed(session: AsyncSession, user_id: uuid.UUID, amount: Decimal) -> None:
    await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(total_fines_owed=User.total_fines_owed + amount)
        .execution_options(synchronize_session=False)
    )


async def decrease_fines_owed(session: AsyncSession, user_id: uuid.UUID, amount: Decimal) -> None:
    """Decrement in SQL, clamped at zero."""
    remaining = User.total_fines_owed - amount
    await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(total_fines_owed=case((remaining < 0, 0), else_=remaining))
        .execution_options(synchronize_session=False)
    )
