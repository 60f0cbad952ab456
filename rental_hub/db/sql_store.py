from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from sqlalchemy import Table, delete, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from rental_hub.db.base import Base
from rental_hub.db.store import (
    ConditionFailed,
    DocumentNotFound,
    DocumentStore,
    Filter,
    PreconditionFailed,
    Transaction,
    WriteBatch,
    validate_filters,
)
from rental_hub.models.market_models import COLLECTIONS

T = TypeVar("T")


def _resolve(collection: str) -> tuple[Table, dict[str, str]]:
    try:
        model, fields = COLLECTIONS[collection]
    except KeyError as exc:
        raise ValueError(f"Unknown collection: {collection}") from exc
    return model.__table__, fields


def _column(table: Table, fields: dict[str, str], field: str):
    column_name = fields.get(field)
    if column_name is None:
        raise ValueError(f"Unknown field {table.name}.{field}")
    return table.c[column_name]


def _primary_key(table: Table, fields: dict[str, str]):
    return table.c[fields["id"]]


def _to_db_value(value: Any) -> Any:
    # Stored as naive UTC so SQLite string comparisons stay ordered.
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_columns(table: Table, fields: dict[str, str], data: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for field, value in data.items():
        column = _column(table, fields, field)
        values[column.name] = _to_db_value(value)
    return values


def _to_document(row, fields: dict[str, str]) -> dict:
    mapping = row._mapping
    return {field: _from_db_value(mapping[column_name]) for field, column_name in fields.items()}


def _condition(column, op: str, value: Any):
    value = [_to_db_value(item) for item in value] if op == "in" else _to_db_value(value)
    if op == "==":
        return column.is_(None) if value is None else column == value
    if op == "!=":
        return column.is_not(None) if value is None else column != value
    if op == "<":
        return column < value
    if op == "<=":
        return column <= value
    if op == ">":
        return column > value
    if op == ">=":
        return column >= value
    return column.in_(value)


async def _exists(session: AsyncSession, table: Table, fields: dict[str, str], doc_id: str) -> bool:
    pk = _primary_key(table, fields)
    row = (await session.execute(select(pk).where(pk == doc_id))).first()
    return row is not None


async def _apply_update(
    session: AsyncSession,
    collection: str,
    doc_id: str,
    data: dict[str, Any],
    expected: dict[str, Any] | None = None,
) -> None:
    table, fields = _resolve(collection)
    if "id" in data:
        raise ValueError("Document id cannot be updated.")
    stmt = update(table).where(_primary_key(table, fields) == doc_id)
    for field, value in (expected or {}).items():
        stmt = stmt.where(_condition(_column(table, fields, field), "==", value))
    stmt = stmt.values(**_to_columns(table, fields, data))
    result = await session.execute(stmt)
    if result.rowcount == 0:
        if not await _exists(session, table, fields, doc_id):
            raise DocumentNotFound(collection, doc_id)
        raise PreconditionFailed(collection, doc_id, dict(expected or {}))


class _SqlTransaction(Transaction):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, collection: str, doc_id: str) -> dict | None:
        table, fields = _resolve(collection)
        row = (
            await self._session.execute(select(table).where(_primary_key(table, fields) == doc_id))
        ).first()
        return _to_document(row, fields) if row else None

    async def adjust(
        self,
        collection: str,
        doc_id: str,
        field: str,
        delta: int,
        minimum: int | None = None,
    ) -> int:
        table, fields = _resolve(collection)
        pk = _primary_key(table, fields)
        column = _column(table, fields, field)
        stmt = update(table).where(pk == doc_id)
        if minimum is not None:
            stmt = stmt.where(column + delta >= minimum)
        stmt = stmt.values({column.name: column + delta})
        result = await self._session.execute(stmt)

        row = (await self._session.execute(select(column).where(pk == doc_id))).first()
        if row is None:
            raise DocumentNotFound(collection, doc_id)
        if result.rowcount == 0:
            raise ConditionFailed(collection, doc_id, field, row[0])
        return row[0]

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> None:
        await _apply_update(self._session, collection, doc_id, fields, expected)

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> dict:
        table, fields = _resolve(collection)
        document = {**data, "id": doc_id}
        await self._session.execute(insert(table).values(**_to_columns(table, fields, document)))
        return document


class _SqlWriteBatch(WriteBatch):
    def __init__(self, store: "SqlDocumentStore"):
        super().__init__()
        self._store = store

    async def commit(self) -> None:
        if not self._updates:
            return
        async with self._store.session() as session:
            async with session.begin():
                for collection, doc_id, fields, expected in self._updates:
                    await _apply_update(session, collection, doc_id, fields, expected)
        self._updates.clear()


class SqlDocumentStore(DocumentStore):
    """Document store on top of the relational tables in ``market_models``.

    Conditional ``UPDATE ... WHERE`` statements carry the atomic
    read-check-write semantics, so concurrent writers never act on a stale
    read even on databases without row locks.
    """

    name = "sql"

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
        )

    def session(self) -> AsyncSession:
        return self._sessionmaker()

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def get(self, collection: str, doc_id: str) -> dict | None:
        async with self.session() as session:
            return await _SqlTransaction(session).get(collection, doc_id)

    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[dict]:
        table, fields = _resolve(collection)
        stmt = select(table)
        for field, op, value in validate_filters(filters):
            stmt = stmt.where(_condition(_column(table, fields, field), op, value))
        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
        return [_to_document(row, fields) for row in rows]

    async def create(self, collection: str, data: dict[str, Any]) -> dict:
        table, fields = _resolve(collection)
        doc_id = data.get("id") or uuid.uuid4().hex
        values = _to_columns(table, fields, {**data, "id": doc_id})
        async with self.session() as session:
            async with session.begin():
                await session.execute(insert(table).values(**values))
        created = await self.get(collection, doc_id)
        if created is None:
            raise DocumentNotFound(collection, doc_id)
        return created

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        async with self.session() as session:
            async with session.begin():
                await _apply_update(session, collection, doc_id, fields)

    async def delete(self, collection: str, doc_id: str) -> None:
        table, fields = _resolve(collection)
        async with self.session() as session:
            async with session.begin():
                result = await session.execute(delete(table).where(_primary_key(table, fields) == doc_id))
        if result.rowcount == 0:
            raise DocumentNotFound(collection, doc_id)

    async def increment(self, collection: str, doc_id: str, field: str, delta: int) -> None:
        async with self.session() as session:
            async with session.begin():
                await _SqlTransaction(session).adjust(collection, doc_id, field, delta)

    def batch(self) -> WriteBatch:
        return _SqlWriteBatch(self)

    async def run_transaction(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.session() as session:
            async with session.begin():
                return await callback(_SqlTransaction(session))

    async def ping(self) -> None:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))

    async def close(self) -> None:
        await self._engine.dispose()
