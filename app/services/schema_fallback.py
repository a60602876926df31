"""Schema-tolerant reads and writes.

Deployments do not always run migrations in lock-step with code, so some
tables may lack optional columns (``webhook_configs.description``,
``scheduler_jobs.request_payload``, ``stores.active_webhook_config_id`` ...).
Instead of probing ad hoc, callers describe an ordered list of field subsets,
richest first, minimal last:

    candidates = [
        {"name": n, "target_url": u, "description": d, "scope": s},
        {"name": n, "target_url": u, "scope": s},
        {"name": n, "target_url": u},
    ]

Each attempt that fails is classified with ``classify_db_error``:

* ``MISSING_COLUMN`` / ``MISSING_TABLE``: recoverable, roll back and try the next subset.
* ``UNIQUE_VIOLATION`` and ``FATAL``: raised immediately.

If the minimal subset also fails recoverably, ``SchemaFallbackExhausted`` is
raised; nothing else in this module swallows errors.

The classifier is a plain rule table (SQLSTATE codes first, driver message
patterns for engines that expose no codes) so it can be tested on its own.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import Table, insert, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from app.utils import get_logger

logger = get_logger(__name__)


class SchemaErrorKind(str, enum.Enum):
    MISSING_COLUMN = "missing_column"
    MISSING_TABLE = "missing_table"
    UNIQUE_VIOLATION = "unique_violation"
    FATAL = "fatal"


RECOVERABLE_KINDS = frozenset({SchemaErrorKind.MISSING_COLUMN, SchemaErrorKind.MISSING_TABLE})


@dataclass(frozen=True)
class SchemaErrorRule:
    kind: SchemaErrorKind
    sqlstates: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    compiled: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "compiled", tuple(re.compile(p, re.IGNORECASE) for p in self.patterns))

    def matches(self, sqlstate: str | None, message: str) -> bool:
        if sqlstate and sqlstate in self.sqlstates:
            return True
        return any(p.search(message) for p in self.compiled)


# Order matters: first matching rule wins.
SCHEMA_ERROR_RULES: tuple[SchemaErrorRule, ...] = (
    SchemaErrorRule(
        SchemaErrorKind.UNIQUE_VIOLATION,
        sqlstates=("23505",),
        patterns=(r"unique constraint failed", r"duplicate key value violates unique constraint"),
    ),
    SchemaErrorRule(
        SchemaErrorKind.MISSING_COLUMN,
        # 42703 undefined_column; PGRST204 PostgREST schema cache miss
        sqlstates=("42703", "PGRST204"),
        patterns=(r"has no column named \w+", r"no such column", r"column \S+ does not exist", r"could not find the '\w+' column"),
    ),
    SchemaErrorRule(
        SchemaErrorKind.MISSING_TABLE,
        sqlstates=("42P01", "PGRST205"),
        patterns=(r"no such table", r"relation \S+ does not exist"),
    ),
)


class SchemaFallbackExhausted(RuntimeError):
    """Even the minimal field subset could not be written/read."""

    def __init__(self, table: str, last_error: Exception):
        super().__init__(f"{table}: no compatible field subset ({last_error})")
        self.table = table
        self.last_error = last_error


def _sqlstate_of(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for attr in ("pgcode", "sqlstate", "code"):
        value = getattr(orig, attr, None)
        if isinstance(value, str) and value:
            return value
    return None


def classify_db_error(exc: BaseException, rules: Iterable[SchemaErrorRule] = SCHEMA_ERROR_RULES) -> SchemaErrorKind:
    """Map a driver/SQLAlchemy error to a SchemaErrorKind."""
    sqlstate = _sqlstate_of(exc)
    message = str(getattr(exc, "orig", None) or exc)
    for rule in rules:
        if rule.matches(sqlstate, message):
            return rule.kind
    return SchemaErrorKind.FATAL


def is_recoverable(exc: BaseException) -> bool:
    return classify_db_error(exc) in RECOVERABLE_KINDS


@dataclass
class FallbackOutcome:
    values: dict[str, Any]
    attempt: int
    rowcount: int = 0
    rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.attempt > 0


def _run_candidates(session: Session, table: Table, candidates: Sequence[Any], runner) -> FallbackOutcome:
    if not candidates:
        raise ValueError("at least one field subset is required")
    last_error: Exception | None = None
    for attempt, candidate in enumerate(candidates):
        try:
            return runner(attempt, candidate)
        except DBAPIError as exc:
            session.rollback()
            kind = classify_db_error(exc)
            if kind not in RECOVERABLE_KINDS:
                raise
            logger.warning(
                "Schema fallback: retrying with fewer fields",
                table=table.name,
                attempt=attempt,
                kind=kind.value,
                error=str(getattr(exc, "orig", exc)),
            )
            last_error = exc
    assert last_error is not None
    raise SchemaFallbackExhausted(table.name, last_error)


def insert_with_fallback(session: Session, table: Table, candidates: Sequence[Mapping[str, Any]], *, commit: bool = True) -> FallbackOutcome:
    """Insert one row using the first field subset the schema accepts."""

    def _insert(attempt: int, values: Mapping[str, Any]) -> FallbackOutcome:
        result = session.execute(insert(table).values(**dict(values)))
        if commit:
            session.commit()
        return FallbackOutcome(values=dict(values), attempt=attempt, rowcount=result.rowcount or 0)

    return _run_candidates(session, table, candidates, _insert)


def update_with_fallback(session: Session, table: Table, where: Sequence[Any], candidates: Sequence[Mapping[str, Any]], *, commit: bool = True) -> FallbackOutcome:
    """UPDATE ... WHERE <where> using the first accepted field subset."""

    def _update(attempt: int, values: Mapping[str, Any]) -> FallbackOutcome:
        result = session.execute(update(table).where(*where).values(**dict(values)))
        if commit:
            session.commit()
        return FallbackOutcome(values=dict(values), attempt=attempt, rowcount=result.rowcount or 0)

    return _run_candidates(session, table, candidates, _update)


def select_with_fallback(
    session: Session,
    table: Table,
    column_sets: Sequence[Sequence[str]],
    where: Sequence[Any] = (),
    *,
    order_by: Sequence[Any] = (),
    limit: int | None = None,
) -> FallbackOutcome:
    """SELECT the first column set the schema knows about; rows come back as plain dicts.

    Columns absent from the winning set are simply missing from the dicts.
    """

    def _select(attempt: int, columns: Sequence[str]) -> FallbackOutcome:
        stmt = select(*[table.c[name] for name in columns]).where(*where)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = [dict(row) for row in session.execute(stmt).mappings().all()]
        return FallbackOutcome(values={}, attempt=attempt, rowcount=len(rows), rows=rows)

    return _run_candidates(session, table, column_sets, _select)


def drop_fields(base: Mapping[str, Any], *optional_groups: Iterable[str]) -> list[dict[str, Any]]:
    """Build decreasing subsets: ``base``, then ``base`` minus each cumulative group.

    drop_fields(v, ["description"], ["scope"]) ->
        [v, v - {description}, v - {description, scope}]
    """
    subsets = [dict(base)]
    removed: set[str] = set()
    for group in optional_groups:
        removed.update(group)
        subsets.append({k: v for k, v in base.items() if k not in removed})
    return subsets


__all__ = [
    "SchemaErrorKind",
    "SchemaErrorRule",
    "SCHEMA_ERROR_RULES",
    "SchemaFallbackExhausted",
    "FallbackOutcome",
    "classify_db_error",
    "is_recoverable",
    "insert_with_fallback",
    "update_with_fallback",
    "select_with_fallback",
    "drop_fields",
]
