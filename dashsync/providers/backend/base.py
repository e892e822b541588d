from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from dashsync.services.optimistic import MutationOperation
from dashsync.services.query_keys import OrderBy


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: ChangeType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    commit_ts: float = field(default_factory=time.time)

    def record(self) -> dict[str, Any] | None:
        # The row a filter should be evaluated against.
        return self.new if self.new is not None else self.old

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "type": self.event_type.value,
            "new": self.new,
            "old": self.old,
            "commit_ts": self.commit_ts,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        return cls(
            table=str(payload["table"]),
            event_type=ChangeType(str(payload["type"]).upper()),
            new=payload.get("new"),
            old=payload.get("old"),
            commit_ts=float(payload.get("commit_ts") or time.time()),
        )


ChangeCallback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[BaseException], None]


class ChannelHandle(Protocol):
    async def close(self) -> None:
        ...


class DataBackend(Protocol):
    name: str

    async def query(
        self,
        table: str,
        filter: Mapping[str, Any] | None = None,
        order: Sequence[OrderBy] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        columns: str | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def mutate(
        self,
        table: str,
        operation: MutationOperation | str,
        payload: Mapping[str, Any],
        row_id: Any = None,
    ) -> dict[str, Any] | None:
        ...

    async def subscribe_changes(
        self,
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> ChannelHandle:
        ...

    async def aclose(self) -> None:
        ...


_OPERATORS = {"eq", "neq", "gt", "gte", "lt", "lte", "in"}


@dataclass(frozen=True)
class FilterExpression:
    column: str
    operator: str
    value: Any


def parse_filter_expression(expression: str) -> FilterExpression:
    """Parse a realtime predicate such as ``user_id=eq.42`` or ``status=in.(a,b)``."""
    column, sep, rest = expression.partition("=")
    operator, dot, raw_value = rest.partition(".")
    if not sep or not dot or not column.strip() or operator not in _OPERATORS:
        raise ValueError(f"invalid filter expression: {expression!r}")
    if operator == "in":
        inner = raw_value.strip()
        if not (inner.startswith("(") and inner.endswith(")")):
            raise ValueError(f"invalid in() filter: {expression!r}")
        values = tuple(part.strip() for part in inner[1:-1].split(",") if part.strip())
        return FilterExpression(column.strip(), operator, values)
    return FilterExpression(column.strip(), operator, raw_value)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _compare(left: Any, right: str) -> int:
    try:
        a, b = float(left), float(right)
    except (TypeError, ValueError):
        a, b = _as_text(left), right
    if a == b:
        return 0
    return -1 if a < b else 1


def evaluate_expression(row: Mapping[str, Any], expression: FilterExpression) -> bool:
    if expression.column not in row:
        return False
    value = row[expression.column]
    op = expression.operator
    if op == "in":
        return _as_text(value) in expression.value
    if op == "eq":
        return _as_text(value) == expression.value
    if op == "neq":
        return _as_text(value) != expression.value
    if value is None:
        return False
    result = _compare(value, expression.value)
    return {
        "gt": result > 0,
        "gte": result >= 0,
        "lt": result < 0,
        "lte": result <= 0,
    }[op]


def row_matches_filter(row: Mapping[str, Any] | None, filter: Mapping[str, Any] | str | None) -> bool:
    # Equality mappings come from QuerySpec; strings are realtime predicates.
    if filter is None:
        return True
    if row is None:
        return False
    if isinstance(filter, str):
        return evaluate_expression(row, parse_filter_expression(filter))
    return all(_matches_value(row, key, value) for key, value in filter.items())


def _matches_value(row: Mapping[str, Any], column: str, expected: Any) -> bool:
    # Same meaning as the query dialects: None is a null check, collections are membership.
    if expected is None:
        return row.get(column) is None
    if column not in row:
        return False
    if isinstance(expected, (list, tuple, set, frozenset)):
        return any(row[column] == item for item in expected)
    return row[column] == expected


def sort_rows(rows: Iterable[dict[str, Any]], order: Sequence[OrderBy] | None) -> list[dict[str, Any]]:
    result = list(rows)
    # Apply clauses from last to first so the first clause dominates (stable sort).
    for clause in reversed(list(order or ())):
        present = [row for row in result if row.get(clause.column) is not None]
        missing = [row for row in result if row.get(clause.column) is None]
        present.sort(key=lambda row: row[clause.column], reverse=not clause.ascending)
        result = present + missing
    return result


def project_columns(rows: Iterable[dict[str, Any]], columns: str | None) -> list[dict[str, Any]]:
    if not columns or columns.strip() == "*":
        return [dict(row) for row in rows]
    wanted = [column.strip() for column in columns.split(",") if column.strip()]
    return [{column: row.get(column) for column in wanted} for row in rows]
