"""
MongoDB client lifecycle.

One AsyncMongoClient per process. All database handles come from
get_database(); never construct a client outside this module.
"""

from __future__ import annotations

from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase

from docrel.config import settings

client: AsyncMongoClient | None = None


async def init_client(uri: str | None = None) -> AsyncMongoClient:
    """
    Create the client and ping the server.
    Run once at startup, before any get_database().
    """
    global client
    uri = uri or settings.MONGO_URI
    if not uri:
        raise RuntimeError("MONGO_URI environment variable is required")
    client = AsyncMongoClient(uri, tz_aware=True)
    await client.admin.command("ping")
    return client


async def close_client() -> None:
    """
    Close the client. Safe to call when none is open.
    """
    global client
    if client is not None:
        await client.close()
        client = None


def get_database(name: str | None = None) -> AsyncDatabase:
    """
    Database handle on the process client.

    Raises:
        RuntimeError: init_client() has not run
    """
    if client is None:
        raise RuntimeError("Mongo client not initialized. Call init_client() first.")
    return client[name or settings.MONGO_DB]
