"""
docrel Kernel — Storage Layer

The relation engine talks to a document database only through DocumentStore.
Every method takes an optional `session`, which is passed through to the
driver untouched; the engine never opens a transaction on its own.

Implement with MongoDB for production (MongoStore), or in-memory for tests.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from docrel.kernel.query import (
    aggregate_documents,
    apply_update,
    filter_documents,
    match_filter,
    sort_documents,
)


@dataclass(frozen=True)
class UpdateOutcome:
    matched: int
    modified: int


# ---------------------------------------------------------------------------
# Storage protocol
# ---------------------------------------------------------------------------


class DocumentStore:
    """
    Abstract document store.
    Implement with MongoDB for production, or in-memory for tests.
    """

    async def find(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        sort: dict[str, int] | None = None,
        skip: int = 0,
        limit: int | None = None,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        session: Any = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    async def count(self, collection: str, filter: dict[str, Any] | None = None, *, session: Any = None) -> int:
        raise NotImplementedError

    async def insert_one(self, collection: str, document: dict[str, Any], *, session: Any = None) -> Any:
        """Insert `document`, assigning an ObjectId `_id` if it has none. Returns the `_id`."""
        raise NotImplementedError

    async def update_one(
        self,
        collection: str,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        array_filters: list[dict[str, Any]] | None = None,
        session: Any = None,
    ) -> UpdateOutcome:
        raise NotImplementedError

    async def update_many(
        self,
        collection: str,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        array_filters: list[dict[str, Any]] | None = None,
        session: Any = None,
    ) -> UpdateOutcome:
        raise NotImplementedError

    async def find_one_and_update(
        self,
        collection: str,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        session: Any = None,
    ) -> dict[str, Any] | None:
        """Apply `update` to the first match and return the document after the update."""
        raise NotImplementedError

    async def delete_one(self, collection: str, filter: dict[str, Any], *, session: Any = None) -> int:
        raise NotImplementedError

    async def delete_many(self, collection: str, filter: dict[str, Any], *, session: Any = None) -> int:
        raise NotImplementedError

    async def aggregate(
        self,
        collection: str,
        pipeline: list[dict[str, Any]],
        *,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def session(self):
        """Async context manager yielding a session handle inside a transaction."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class MemorySession:
    """Session marker for MemoryStore. Writes are applied immediately; there is no rollback."""

    def __init__(self) -> None:
        self.active = True


class MemoryStore(DocumentStore):
    """In-memory store for testing. Documents are copied on the way in and out."""

    def __init__(self) -> None:
        self.collections: dict[str, list[dict[str, Any]]] = {}

    def _docs(self, collection: str) -> list[dict[str, Any]]:
        return self.collections.setdefault(collection, [])

    async def find(self, collection, filter=None, *, sort=None, skip=0, limit=None, session=None):
        docs = sort_documents(filter_documents(self._docs(collection), filter), sort)
        if skip:
            docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def find_one(self, collection, filter=None, *, session=None):
        for doc in self._docs(collection):
            if match_filter(doc, filter):
                return copy.deepcopy(doc)
        return None

    async def count(self, collection, filter=None, *, session=None):
        return len(filter_documents(self._docs(collection), filter))

    async def insert_one(self, collection, document, *, session=None):
        doc = copy.deepcopy(document)
        doc.setdefault("_id", ObjectId())
        docs = self._docs(collection)
        if any(existing["_id"] == doc["_id"] for existing in docs):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {collection} dup key: {{ _id: {doc['_id']!r} }}")
        docs.append(doc)
        return doc["_id"]

    def _update(self, collection, filter, update, array_filters, *, many: bool) -> UpdateOutcome:
        docs = self._docs(collection)
        matched = modified = 0
        for index, doc in enumerate(docs):
            if not match_filter(doc, filter):
                continue
            matched += 1
            new_doc = apply_update(doc, update, array_filters)
            if new_doc != doc:
                docs[index] = new_doc
                modified += 1
            if not many:
                break
        return UpdateOutcome(matched=matched, modified=modified)

    async def update_one(self, collection, filter, update, *, array_filters=None, session=None):
        return self._update(collection, filter, update, array_filters, many=False)

    async def update_many(self, collection, filter, update, *, array_filters=None, session=None):
        return self._update(collection, filter, update, array_filters, many=True)

    async def find_one_and_update(self, collection, filter, update, *, session=None):
        docs = self._docs(collection)
        for index, doc in enumerate(docs):
            if match_filter(doc, filter):
                docs[index] = apply_update(doc, update)
                return copy.deepcopy(docs[index])
        return None

    async def delete_one(self, collection, filter, *, session=None):
        docs = self._docs(collection)
        for index, doc in enumerate(docs):
            if match_filter(doc, filter):
                del docs[index]
                return 1
        return 0

    async def delete_many(self, collection, filter, *, session=None):
        docs = self._docs(collection)
        keep = [d for d in docs if not match_filter(d, filter)]
        removed = len(docs) - len(keep)
        self.collections[collection] = keep
        return removed

    async def aggregate(self, collection, pipeline, *, session=None):
        return aggregate_documents(copy.deepcopy(self._docs(collection)), pipeline, self._docs)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[MemorySession]:
        s = MemorySession()
        try:
            yield s
        finally:
            s.active = False
