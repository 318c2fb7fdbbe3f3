"""
MongoStore adapter for the docrel storage layer.

Implements the DocumentStore protocol on PyMongo's asyncio API. Filter,
update, and pipeline documents are sent to the server exactly as the engine
built them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.asynchronous.client_session import AsyncClientSession
from pymongo.asynchronous.database import AsyncDatabase

from docrel.kernel.storage import DocumentStore, UpdateOutcome


class MongoStore(DocumentStore):
    """
    MongoDB-backed document store.

    One instance per database. Sessions come from the database's client and
    always open a transaction, so the server must be a replica set.
    """

    def __init__(self, database: AsyncDatabase):
        self.database = database

    async def find(self, collection, filter=None, *, sort=None, skip=0, limit=None, session=None):
        cursor = self.database[collection].find(filter or {}, session=session)
        if sort:
            cursor = cursor.sort(list(sort.items()))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(None)

    async def find_one(self, collection, filter=None, *, session=None):
        return await self.database[collection].find_one(filter or {}, session=session)

    async def count(self, collection, filter=None, *, session=None):
        return await self.database[collection].count_documents(filter or {}, session=session)

    async def insert_one(self, collection, document, *, session=None):
        doc = dict(document)
        doc.setdefault("_id", ObjectId())
        result = await self.database[collection].insert_one(doc, session=session)
        return result.inserted_id

    async def update_one(self, collection, filter, update, *, array_filters=None, session=None):
        result = await self.database[collection].update_one(
            filter, update, array_filters=array_filters, session=session
        )
        return UpdateOutcome(matched=result.matched_count, modified=result.modified_count)

    async def update_many(self, collection, filter, update, *, array_filters=None, session=None):
        result = await self.database[collection].update_many(
            filter, update, array_filters=array_filters, session=session
        )
        return UpdateOutcome(matched=result.matched_count, modified=result.modified_count)

    async def find_one_and_update(self, collection, filter, update, *, session=None):
        return await self.database[collection].find_one_and_update(
            filter,
            update,
            return_document=ReturnDocument.AFTER,
            session=session,
        )

    async def delete_one(self, collection, filter, *, session=None):
        result = await self.database[collection].delete_one(filter, session=session)
        return result.deleted_count

    async def delete_many(self, collection, filter, *, session=None):
        result = await self.database[collection].delete_many(filter, session=session)
        return result.deleted_count

    async def aggregate(self, collection, pipeline, *, session=None):
        cursor = await self.database[collection].aggregate(pipeline, session=session)
        return await cursor.to_list(None)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncClientSession]:
        """
        Open a client session with a transaction.

        Usage:
            async with store.session() as s:
                await store.update_many("posts", {...}, {...}, session=s)

        Commits on clean exit, aborts if the block raises.
        """
        async with self.database.client.start_session() as s:
            async with await s.start_transaction():
                yield s
