from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Sequence

from sqlalchemy import MetaData, Table, delete, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, NoSuchTableError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from dashsync.core.config import Settings, get_settings
from dashsync.core.errors import (
    BackendConfigError,
    BackendError,
    BackendRejectionError,
    NetworkError,
)
from dashsync.providers.backend.base import ChangeCallback, ChangeEvent, ChangeType, ChannelHandle, ErrorCallback
from dashsync.providers.backend.changes import RedisChangeFeed
from dashsync.services.optimistic import (
    MUTATION_ID_FIELD,
    OPTIMISTIC_FLAG,
    MutationOperation,
    is_temporary_id,
)
from dashsync.services.query_keys import OrderBy
from dashsync.services.telemetry import record_backend_call


logger = logging.getLogger(__name__)


def translate_db_error(exc: BaseException, operation: str, table: str) -> BackendError:
    # Map driver failures onto transient vs rejected so retries only hit the former.
    if isinstance(exc, IntegrityError):
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if not code:
            code = "23505" if "unique" in str(orig).lower() else "23000"
        return BackendRejectionError(str(orig), code=str(code), status_code=409)
    if isinstance(exc, OperationalError) or (isinstance(exc, DBAPIError) and exc.connection_invalidated):
        return NetworkError(f"{operation} on {table} failed: {exc.__class__.__name__}")
    if isinstance(exc, DBAPIError):
        code = getattr(exc.orig, "sqlstate", None)
        return BackendRejectionError(str(exc.orig), code=str(code) if code else None, status_code=400)
    return NetworkError(f"{operation} on {table} failed: {exc}")


class SqlBackend:
    """Data backend talking to the database directly through SQLAlchemy async.

    Tables are reflected on first use. Writes use RETURNING so callers get
    the committed row, and optionally publish a change event afterwards.
    """

    name = "sql"

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        database_url: str | None = None,
        change_feed: RedisChangeFeed | None = None,
        id_field: str = "id",
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._owns_engine = engine is None
        self._engine = engine or create_async_engine(database_url or settings.database_url, pool_pre_ping=True)
        self._change_feed = change_feed
        self._id_field = id_field
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}

    async def _table(self, conn: AsyncConnection, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table

        def _reflect(sync_conn: Any) -> Table:
            return Table(name, self._metadata, autoload_with=sync_conn)

        try:
            table = await conn.run_sync(_reflect)
        except NoSuchTableError as exc:
            raise BackendRejectionError(f'relation "{name}" does not exist', code="42P01", status_code=404) from exc
        self._tables[name] = table
        return table

    def _column(self, table: Table, name: str) -> Any:
        if name not in table.c:
            raise BackendRejectionError(
                f'column "{name}" does not exist on {table.name}',
                code="42703",
                status_code=400,
            )
        return table.c[name]

    def _values(self, table: Table, payload: Mapping[str, Any]) -> dict[str, Any]:
        values = {k: v for k, v in payload.items() if k not in (OPTIMISTIC_FLAG, MUTATION_ID_FIELD)}
        if is_temporary_id(values.get(self._id_field)):
            values.pop(self._id_field)
        for column in values:
            self._column(table, column)
        return values

    async def query(
        self,
        table: str,
        filter: Mapping[str, Any] | None = None,
        order: Sequence[OrderBy] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        columns: str | None = None,
    ) -> list[dict[str, Any]]:
        start = time.monotonic()
        success = False
        try:
            async with self._engine.connect() as conn:
                model = await self._table(conn, table)
                wanted = [c.strip() for c in (columns or "*").split(",") if c.strip() and c.strip() != "*"]
                stmt = select(*[self._column(model, name) for name in wanted]) if wanted else select(model)
                for name, value in (filter or {}).items():
                    column = self._column(model, name)
                    if value is None:
                        stmt = stmt.where(column.is_(None))
                    elif isinstance(value, (list, tuple, set, frozenset)):
                        stmt = stmt.where(column.in_(list(value)))
                    else:
                        stmt = stmt.where(column == value)
                for clause in order or ():
                    column = self._column(model, clause.column)
                    stmt = stmt.order_by(column.asc() if clause.ascending else column.desc())
                if limit is not None:
                    stmt = stmt.limit(limit)
                if offset:
                    stmt = stmt.offset(offset)
                result = await conn.execute(stmt)
                rows = [dict(row) for row in result.mappings()]
            success = True
            return rows
        except SQLAlchemyError as exc:
            raise translate_db_error(exc, "query", table) from exc
        except OSError as exc:
            raise NetworkError(f"query on {table} failed: {exc}") from exc
        finally:
            self._record("query", start, success)

    async def mutate(
        self,
        table: str,
        operation: MutationOperation | str,
        payload: Mapping[str, Any],
        row_id: Any = None,
    ) -> dict[str, Any] | None:
        operation = MutationOperation(operation)
        start = time.monotonic()
        success = False
        try:
            async with self._engine.begin() as conn:
                model = await self._table(conn, table)
                values = self._values(model, payload)
                if row_id is None and not is_temporary_id(payload.get(self._id_field)):
                    row_id = payload.get(self._id_field)
                event, row = await self._execute(conn, model, operation, values, row_id)
            success = True
        except SQLAlchemyError as exc:
            raise translate_db_error(exc, operation.value, table) from exc
        except OSError as exc:
            raise NetworkError(f"{operation.value} on {table} failed: {exc}") from exc
        finally:
            self._record(operation.value, start, success)
        if event is not None and self._change_feed is not None:
            await self._change_feed.publish(event)
        return row

    async def _execute(
        self,
        conn: AsyncConnection,
        model: Table,
        operation: MutationOperation,
        values: dict[str, Any],
        row_id: Any,
    ) -> tuple[ChangeEvent | None, dict[str, Any] | None]:
        id_column = self._column(model, self._id_field)
        old: dict[str, Any] | None = None
        if row_id is not None and operation is not MutationOperation.INSERT:
            found = await conn.execute(select(model).where(id_column == row_id))
            current = found.mappings().first()
            old = dict(current) if current is not None else None

        if operation is MutationOperation.UPSERT:
            operation = MutationOperation.UPDATE if old is not None else MutationOperation.INSERT

        if operation is MutationOperation.INSERT:
            result = await conn.execute(insert(model).values(**values).returning(*model.c))
            row = dict(result.mappings().one())
            return ChangeEvent(table=model.name, event_type=ChangeType.INSERT, new=row), row

        if row_id is None:
            raise ValueError(f"{operation.value} on {model.name} requires a row identity")

        if operation is MutationOperation.UPDATE:
            values.pop(self._id_field, None)
            if old is None:
                raise BackendRejectionError(
                    f"{model.name} row {row_id!r} not found",
                    code="PGRST116",
                    status_code=404,
                )
            if not values:
                return None, old
            result = await conn.execute(
                update(model).where(id_column == row_id).values(**values).returning(*model.c)
            )
            row = dict(result.mappings().one())
            return ChangeEvent(table=model.name, event_type=ChangeType.UPDATE, new=row, old=old), row

        if old is None:
            return None, None
        await conn.execute(delete(model).where(id_column == row_id))
        return ChangeEvent(table=model.name, event_type=ChangeType.DELETE, old=old), old

    def _record(self, operation: str, start: float, success: bool) -> None:
        record_backend_call(
            provider=self.name,
            operation=operation,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )

    async def subscribe_changes(
        self,
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> ChannelHandle:
        if self._change_feed is None:
            raise BackendConfigError("realtime requires CHANGE_FEED_ENABLED for the sql backend")
        return await self._change_feed.subscribe(table, filter, callback, on_error)

    async def aclose(self) -> None:
        if self._change_feed is not None:
            await self._change_feed.aclose()
        if self._owns_engine:
            await self._engine.dispose()
