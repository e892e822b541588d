from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class OrderBy:
    column: str
    ascending: bool = True


@dataclass(frozen=True)
class QuerySpec:
    """Describe one point query against a table.

    ``filter`` is an equality mapping (column -> value). Filter mappings are
    compared order-independently; ``order`` is a sequence and keeps its order.
    ``tags`` adds invalidation tags on top of the table name.
    """

    table: str
    filter: Mapping[str, Any] | None = None
    order: tuple[OrderBy, ...] = ()
    limit: int | None = None
    offset: int | None = None
    columns: str | None = None
    single: bool = False
    tags: frozenset[str] = field(default_factory=frozenset)

    def cache_key(self) -> str:
        return canonical_key(self)

    def cache_tags(self) -> frozenset[str]:
        return frozenset({self.table, *self.tags})


def _canonical(value: Any) -> Any:
    # Normalize nested containers so equal filters serialize identically.
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_canonical(v) for v in value), key=lambda v: json.dumps(v, sort_keys=True, default=str))
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def canonical_key(spec: QuerySpec) -> str:
    # Stable across processes so persisted snapshots map back to the same queries.
    payload = {
        "filter": _canonical(spec.filter or {}),
        "order": [[item.column, "asc" if item.ascending else "desc"] for item in spec.order],
        "limit": spec.limit,
        "offset": spec.offset,
        "columns": spec.columns or "*",
        "single": spec.single,
    }
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"{spec.table}:{serialized}"


def parse_order(value: str | None) -> tuple[OrderBy, ...]:
    """Parse ``"created_at.desc,name"`` into ordering clauses."""
    if not value:
        return ()
    clauses: list[OrderBy] = []
    for raw in value.split(","):
        raw = raw.strip()
        if not raw:
            continue
        column, _, direction = raw.partition(".")
        clauses.append(OrderBy(column=column, ascending=direction.lower() != "desc"))
    return tuple(clauses)


def parse_cache_key(key: str) -> tuple[str, dict[str, Any]] | None:
    """Split a canonical key back into its table and query parameters."""
    table, sep, rest = key.partition(":{")
    if not sep:
        return None
    try:
        payload = json.loads("{" + rest)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return table, payload


def key_matches_params(key: str, params: Mapping[str, Any], *, table: str | None = None) -> bool:
    # Each given column must appear in the query filter with the same value.
    parsed = parse_cache_key(key)
    if parsed is None:
        return False
    key_table, payload = parsed
    if table is not None and key_table != table:
        return False
    filter = payload.get("filter")
    if not isinstance(filter, dict):
        return False
    for column, value in params.items():
        comparable = json.loads(json.dumps(_canonical(value), default=str))
        if column not in filter or filter[column] != comparable:
            return False
    return True
