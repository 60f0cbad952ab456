from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import firebase_admin
from firebase_admin import firestore_async
from google.api_core.exceptions import NotFound as FirestoreNotFound
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

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

STORE_LOGGER = logging.getLogger("rental_hub.store")
T = TypeVar("T")


def _to_document(snapshot) -> dict | None:
    if not snapshot.exists:
        return None
    data = snapshot.to_dict() or {}
    data["id"] = snapshot.id
    return data


def _without_id(fields: dict[str, Any]) -> dict[str, Any]:
    if "id" in fields:
        raise ValueError("Document id cannot be updated.")
    return fields


class _FirestoreTransaction(Transaction):
    def __init__(self, client, transaction):
        self._client = client
        self._transaction = transaction
        self._seen: dict[tuple[str, str], dict | None] = {}

    async def get(self, collection: str, doc_id: str) -> dict | None:
        ref = self._client.collection(collection).document(doc_id)
        document = _to_document(await ref.get(transaction=self._transaction))
        self._seen[(collection, doc_id)] = document
        return document

    async def adjust(
        self,
        collection: str,
        doc_id: str,
        field: str,
        delta: int,
        minimum: int | None = None,
    ) -> int:
        key = (collection, doc_id)
        document = self._seen[key] if key in self._seen else await self.get(collection, doc_id)
        if document is None:
            raise DocumentNotFound(collection, doc_id)
        current = int(document.get(field) or 0)
        if minimum is not None and current + delta < minimum:
            raise ConditionFailed(collection, doc_id, field, current)
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.update(ref, {field: current + delta})
        return current + delta

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> None:
        key = (collection, doc_id)
        if key in self._seen:
            document = self._seen[key]
        else:
            document = await self.get(collection, doc_id)
        if document is None:
            raise DocumentNotFound(collection, doc_id)
        for field, value in (expected or {}).items():
            if document.get(field) != value:
                raise PreconditionFailed(collection, doc_id, dict(expected))
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.update(ref, _without_id(dict(fields)))

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> dict:
        payload = {key: value for key, value in data.items() if key != "id"}
        self._transaction.create(self._client.collection(collection).document(doc_id), payload)
        return {**payload, "id": doc_id}


class _FirestoreWriteBatch(WriteBatch):
    def __init__(self, client):
        super().__init__()
        self._client = client

    async def commit(self) -> None:
        if not self._updates:
            return
        if any(expected for _, _, _, expected in self._updates):
            await self._commit_checked()
        else:
            batch = self._client.batch()
            for collection, doc_id, fields, _ in self._updates:
                batch.update(self._client.collection(collection).document(doc_id), _without_id(fields))
            await batch.commit()
        self._updates.clear()

    async def _commit_checked(self) -> None:
        # Field preconditions need the current documents, so read them in a transaction.
        updates = list(self._updates)

        @firestore.async_transactional
        async def _run(transaction):
            txn = _FirestoreTransaction(self._client, transaction)
            for collection, doc_id, _, _ in updates:
                await txn.get(collection, doc_id)
            for collection, doc_id, fields, expected in updates:
                await txn.update(collection, doc_id, fields, expected)

        await _run(self._client.transaction())


class FirestoreDocumentStore(DocumentStore):
    """Document store backed by Cloud Firestore through ``firebase_admin``."""

    name = "firestore"

    def __init__(self, app: firebase_admin.App, client=None):
        self._app = app
        self._client = client or firestore_async.client(app)

    async def get(self, collection: str, doc_id: str) -> dict | None:
        snapshot = await self._client.collection(collection).document(doc_id).get()
        return _to_document(snapshot)

    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> list[dict]:
        query = self._client.collection(collection)
        for field, op, value in validate_filters(filters):
            if field == "id":
                raise ValueError("Filter on document id is not supported, use get().")
            query = query.where(filter=FieldFilter(field, op, value))
        documents = []
        async for snapshot in query.stream():
            documents.append(_to_document(snapshot))
        return documents

    async def create(self, collection: str, data: dict[str, Any]) -> dict:
        payload = dict(data)
        doc_id = payload.pop("id", None)
        if doc_id:
            ref = self._client.collection(collection).document(doc_id)
            await ref.create(payload)
        else:
            _, ref = await self._client.collection(collection).add(payload)
        return {**payload, "id": ref.id}

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._client.collection(collection).document(doc_id).update(_without_id(dict(fields)))
        except FirestoreNotFound as exc:
            raise DocumentNotFound(collection, doc_id) from exc

    async def delete(self, collection: str, doc_id: str) -> None:
        ref = self._client.collection(collection).document(doc_id)
        snapshot = await ref.get()
        if not snapshot.exists:
            raise DocumentNotFound(collection, doc_id)
        await ref.delete()

    async def increment(self, collection: str, doc_id: str, field: str, delta: int) -> None:
        try:
            await self._client.collection(collection).document(doc_id).update({field: firestore.Increment(delta)})
        except FirestoreNotFound as exc:
            raise DocumentNotFound(collection, doc_id) from exc

    def batch(self) -> WriteBatch:
        return _FirestoreWriteBatch(self._client)

    async def run_transaction(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        @firestore.async_transactional
        async def _run(transaction):
            return await callback(_FirestoreTransaction(self._client, transaction))

        return await _run(self._client.transaction())

    async def ping(self) -> None:
        async for _ in self._client.collection("equipment").limit(1).stream():
            break

    async def close(self) -> None:
        firebase_admin.delete_app(self._app)
        STORE_LOGGER.info("Firestore client closed")
