"""
shared/utils/store.py
Entity-store boundary helpers: commit with error wrapping, and the
two-phase "primary write, then best-effort side effect" pattern.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def commit(db: AsyncSession, operation: str) -> None:
    """Commit the primary write. Store failures become StoreError; no retry."""
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Commit failed during %s: %s", operation, exc)
        raise StoreError(operation, exc) from exc


async def best_effort(
    db: AsyncSession,
    description: str,
    side_effect: Callable[[], Awaitable[T]],
) -> Optional[T]:
    """
    Phase two: run a side effect after the primary entity is committed.

    The side effect runs inside a SAVEPOINT and must not commit itself.
    On failure only the savepoint is rolled back, so objects loaded by the
    primary operation stay usable; the failure is logged and None returned.
    """
    try:
        async with db.begin_nested():
            result = await side_effect()
        await db.commit()
        return result
    except Exception:
        logger.warning("Side effect failed: %s", description, exc_info=True)
        return None
