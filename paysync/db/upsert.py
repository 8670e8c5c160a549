"""Conditional insert-or-merge keyed by a unique constraint.

Dialect-neutral replacement for ON CONFLICT: read the row by its key, insert
inside a SAVEPOINT when absent, and if a concurrent writer wins the insert
(IntegrityError) re-read and merge into its row instead of failing.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import Select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT")


async def insert_or_merge(
    session: AsyncSession,
    lookup: Select,
    build: Callable[[], RowT],
    merge: Callable[[RowT], None],
) -> tuple[RowT, bool]:
    """Return ``(row, created)``.

    ``lookup`` must select at most one row by the unique key that ``build()``
    would collide on; ``merge`` applies the field-merge rule to an existing row.
    """
    existing = (await session.execute(lookup)).scalar_one_or_none()
    if existing is not None:
        merge(existing)
        await session.flush()
        return existing, False

    row = build()
    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError:
        logger.info("Insert lost a race on %s, merging into existing row", type(row).__name__)
        existing = (await session.execute(lookup)).scalar_one()
        merge(existing)
        await session.flush()
        return existing, False
    return row, True
