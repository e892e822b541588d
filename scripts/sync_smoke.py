from __future__ import annotations

import argparse
import asyncio
import json
import sys

from dashsync.core.errors import (
    BackendConfigError,
    BackendRejectionError,
    BackendTimeoutError,
    NetworkError,
)
from dashsync.core.logging import configure_logging
from dashsync.services.query_keys import QuerySpec, parse_order
from dashsync.services.sync_context import SyncContext


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read a table twice through the configured backend and print sync stats."
    )
    parser.add_argument("--table", required=True, help="Table name")
    parser.add_argument("--filter", action="append", default=[], help="Equality filter col=value (repeatable)")
    parser.add_argument("--order", default=None, help="Ordering, e.g. created_at.desc,name")
    parser.add_argument("--limit", type=int, default=10, help="Maximum rows to read")
    return parser


def _parse_filters(items: list[str]) -> dict[str, str]:
    filters: dict[str, str] = {}
    for item in items:
        column, sep, value = item.partition("=")
        if not sep or not column:
            raise ValueError(f"invalid filter {item!r}; expected col=value")
        filters[column] = value
    return filters


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map known sync failures to stable, actionable messages.
    if isinstance(exc, (BackendConfigError, ValueError)):
        return 2, f"BACKEND_CONFIG_INVALID: {exc}"
    if isinstance(exc, BackendRejectionError):
        return 3, f"BACKEND_REJECTED code={exc.code}: {exc}"
    if isinstance(exc, BackendTimeoutError):
        return 4, f"BACKEND_TIMEOUT: {exc}"
    if isinstance(exc, NetworkError):
        return 4, f"BACKEND_UNAVAILABLE: {exc}"
    return 1, f"UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    spec = QuerySpec(
        table=args.table,
        filter=_parse_filters(args.filter) or None,
        order=parse_order(args.order),
        limit=args.limit,
    )
    context = SyncContext.from_settings()
    try:
        first = await context.fetch(spec)
        second = await context.fetch(spec)
        print(f"rows={len(first.data or [])} first_from_cache={first.from_cache} second_from_cache={second.from_cache}")
        print(json.dumps(context.get_stats()["cache"], indent=2, sort_keys=True))
        if not second.from_cache:
            print("CACHE_MISS_ON_REPEAT: second read did not hit the cache", file=sys.stderr)
            return 5
    finally:
        await context.aclose()
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
