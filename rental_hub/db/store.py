"""Document store contract shared by the SQL and Firestore backends.

Documents are plain dicts keyed by camelCase field names, always carrying
their generated ``id``. Every method is a coroutine; callers suspend at each
store round trip.
"""

from __future__ import annotations

import abc
from typing import Any, Awaitable, Callable, Iterable, TypeVar

EQUIPMENT = "equipment"
RENTALS = "rentals"

FILTER_OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "in"}

Filter = tuple[str, str, Any]
T = TypeVar("T")


class StoreError(Exception):
    pass


class DocumentNotFound(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class ConditionFailed(StoreError):
    """An adjust would have taken a field below its minimum."""

    def __init__(self, collection: str, doc_id: str, field: str, current: Any):
        super().__init__(f"{collection}/{doc_id}.{field} is {current}")
        self.collection = collection
        self.doc_id = doc_id
        self.field = field
        self.current = current


class PreconditionFailed(StoreError):
    """The expected field values of a conditional update no longer hold."""

    def __init__(self, collection: str, doc_id: str, expected: dict[str, Any]):
        super().__init__(f"{collection}/{doc_id} no longer matches {expected}")
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected


def validate_filters(filters: Iterable[Filter]) -> list[Filter]:
    checked = []
    for field, op, value in filters:
        if op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        checked.append((field, op, value))
    return checked


class Transaction(abc.ABC):
    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict | None:
        ...

    @abc.abstractmethod
    async def adjust(
        self,
        collection: str,
        doc_id: str,
        field: str,
        delta: int,
        minimum: int | None = None,
    ) -> int:
        """Add ``delta`` to a numeric field and return the new value.

        Raises ``ConditionFailed`` when the result would drop below
        ``minimum`` and ``DocumentNotFound`` when the document is missing.
        """

    @abc.abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> None:
        """Write ``fields`` if every ``expected`` value still matches."""

    @abc.abstractmethod
    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> dict:
        """Stage a new document under ``doc_id``."""


class WriteBatch(abc.ABC):
    def __init__(self) -> None:
        self._updates: list[tuple[str, str, dict[str, Any], dict[str, Any] | None]] = []

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> None:
        self._updates.append((collection, doc_id, dict(fields), dict(expected) if expected else None))

    def __len__(self) -> int:
        return len(self._updates)

    @abc.abstractmethod
    async def commit(self) -> None:
        """Apply every staged update, or none of them.

        Raises ``PreconditionFailed`` if any ``expected`` values no longer hold.
        """


class DocumentStore(abc.ABC):
    name = "store"

    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict | None:
        ...

    @abc.abstractmethod
    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[dict]:
        ...

    @abc.abstractmethod
    async def create(self, collection: str, data: dict[str, Any]) -> dict:
        ...

    @abc.abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abc.abstractmethod
    async def increment(self, collection: str, doc_id: str, field: str, delta: int) -> None:
        ...

    @abc.abstractmethod
    def batch(self) -> WriteBatch:
        ...

    @abc.abstractmethod
    async def run_transaction(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``callback`` so that all of its reads and writes apply atomically.

        Reads must happen before writes inside the callback.
        """

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None
