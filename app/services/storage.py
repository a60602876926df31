"""Conditional (compare-and-swap) updates.

Workers run in different processes and browsers, so exclusivity cannot come
from in-process locks. Every ownership transition is expressed as

    UPDATE <table> SET ... WHERE id = :id AND <each expected column> = :value

and the matched row count decides the outcome:

* 1 row  -> ``CasOutcome.APPLIED``
* 0 rows -> ``CasOutcome.LOST_RACE`` (someone else moved the row first, or it is gone)

Driver errors are not outcomes; they propagate to the caller.
"""
from __future__ import annotations

import enum
from typing import Any, Mapping

from sqlalchemy import Table, update
from sqlalchemy.orm import Session

from app.utils import get_logger

logger = get_logger(__name__)


class CasOutcome(str, enum.Enum):
    APPLIED = "applied"
    LOST_RACE = "lost_race"


def compare_and_swap(
    session: Session,
    table: Table,
    row_id: Any,
    expected: Mapping[str, Any],
    values: Mapping[str, Any],
    *,
    commit: bool = True,
) -> CasOutcome:
    """Apply ``values`` to row ``row_id`` only if every ``expected`` column still holds its value.

    ``None`` in ``expected`` means ``IS NULL``.
    """
    conditions = [table.c.id == row_id]
    for column, value in expected.items():
        col = table.c[column]
        conditions.append(col.is_(None) if value is None else col == value)
    result = session.execute(
        update(table).where(*conditions).values(**dict(values))
    )
    if commit:
        session.commit()
    if result.rowcount == 1:
        return CasOutcome.APPLIED
    if result.rowcount and result.rowcount > 1:  # pragma: no cover - id is the primary key
        raise RuntimeError(f"compare_and_swap matched {result.rowcount} rows in {table.name}")
    logger.debug("Conditional update lost race", table=table.name, row_id=row_id, expected=dict(expected))
    return CasOutcome.LOST_RACE


__all__ = ["CasOutcome", "compare_and_swap"]
