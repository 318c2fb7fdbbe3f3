"""
Pytest configuration and fixtures for docrel service tests.

Everything runs against MemoryStore. Its methods never suspend, so an async
propagation job cannot run until the test itself awaits something that
yields (queue.join()).

Schema used across the tests:

  authors ──embed(sync, watch name/avatar)──▶ posts.author      (separate)
  tags    ──embed(keep_fresh)────────────────▶ posts.tags        (array)
  posts   ──embed(keep_fresh)────────────────▶ feeds.post        (separate, second level)
  directories ─embed(keep_fresh)─────────────▶ files.directory   (in-place)
  products ──embed(no reverse)───────────────▶ orders.product    (historical snapshot)
  categories ─embed(async)───────────────────▶ articles.category (separate)
"""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from bson import ObjectId

from docrel.kernel.storage import MemoryStore
from docrel.models import CollectionDef, ReverseConfig, embed, lookup, reference
from docrel.orm import Orm


def build_collections() -> list[CollectionDef]:
    authors = CollectionDef(name="authors")
    tags = CollectionDef(name="tags")
    comments = CollectionDef(name="comments")
    posts = CollectionDef(
        name="posts",
        public_id_field="public_id",
        public_id_prefix="post",
        relations={
            "author": embed(
                authors,
                source_path="author_id",
                fields=["name", "avatar"],
                reverse=ReverseConfig(watch_fields=["name", "avatar"]),
            ),
            "tags": embed(tags, source_path="tag_ids", fields=["name", "color"], keep_fresh=True),
            "primary_tag": embed(tags, source_path="tag_slug", fields=["name"], embed_id_field="slug"),
            "owner": reference(authors, local_field="author_id"),
            "writer": lookup(authors, local_field="author_id", one=True, select=["name"]),
            "comments": lookup(comments, local_field="_id", foreign_field="post_id", sort={"n": 1}),
        },
    )
    feeds = CollectionDef(
        name="feeds",
        relations={"post": embed(posts, source_path="post_id", fields=["title", "author"], keep_fresh=True)},
    )
    directories = CollectionDef(name="directories")
    files = CollectionDef(
        name="files",
        relations={
            "directory": embed(directories, source_path="directory._id", fields=["name", "path"], keep_fresh=True)
        },
    )
    products = CollectionDef(name="products")
    orders = CollectionDef(
        name="orders",
        relations={"product": embed(products, source_path="product_id", fields=["name", "price"])},
    )
    categories = CollectionDef(name="categories")
    articles = CollectionDef(
        name="articles",
        relations={
            "category": embed(
                categories,
                source_path="category_id",
                fields=["name"],
                reverse=ReverseConfig(strategy="async"),
            )
        },
    )
    return [authors, tags, comments, posts, feeds, directories, files, products, orders, categories, articles]


# ============================================================================
# Stores
# ============================================================================


class RecordingStore(MemoryStore):
    """MemoryStore that records every find and update_many call."""

    def __init__(self) -> None:
        super().__init__()
        self.finds: list[tuple[str, dict[str, Any]]] = []
        self.updates: list[dict[str, Any]] = []

    async def find(self, collection, filter=None, **kwargs):
        self.finds.append((collection, filter))
        return await super().find(collection, filter, **kwargs)

    async def update_many(self, collection, filter, update, *, array_filters=None, session=None):
        self.updates.append(
            {
                "collection": collection,
                "filter": filter,
                "update": update,
                "array_filters": array_filters,
                "session": session,
            }
        )
        return await super().update_many(collection, filter, update, array_filters=array_filters, session=session)


class FailingStore(MemoryStore):
    """MemoryStore whose writes to the named collections raise."""

    def __init__(self, fail_on: set[str]) -> None:
        super().__init__()
        self.fail_on = fail_on

    async def update_many(self, collection, filter, update, *, array_filters=None, session=None):
        if collection in self.fail_on:
            raise RuntimeError(f"write to {collection} failed")
        return await super().update_many(collection, filter, update, array_filters=array_filters, session=session)

    async def delete_many(self, collection, filter, *, session=None):
        if collection in self.fail_on:
            raise RuntimeError(f"delete from {collection} failed")
        return await super().delete_many(collection, filter, session=session)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def collections():
    return build_collections()


@pytest.fixture
def store():
    return RecordingStore()


@pytest_asyncio.fixture
async def orm(store, collections):
    orm = Orm(store, collections, workers=2, queue_size=100)
    yield orm
    await orm.close()


@pytest.fixture
def db(orm):
    return orm.with_context(orm.context(user={"id": "u_test"}))


@pytest_asyncio.fixture
async def seeded(db):
    """One author, two tags, two directories, one product, one category."""
    author = await db.authors.create({"_id": ObjectId(), "name": "Ada", "avatar": "ada.png", "post_count": 0})
    t1 = await db.tags.create({"_id": ObjectId(), "name": "python", "color": "blue", "slug": "python"})
    t2 = await db.tags.create({"_id": ObjectId(), "name": "mongo", "color": "green", "slug": "mongo"})
    docs_dir = await db.directories.create({"_id": ObjectId(), "name": "Docs", "path": "/docs"})
    product = await db.products.create({"_id": ObjectId(), "name": "Lamp", "price": 40})
    category = await db.categories.create({"_id": ObjectId(), "name": "News"})
    return {
        "author": author,
        "tags": [t1, t2],
        "directory": docs_dir,
        "product": product,
        "category": category,
    }


@pytest.fixture
def failing_store():
    """Factory: a MemoryStore whose writes to the given collections raise."""

    def make(*fail_on: str) -> FailingStore:
        return FailingStore(set(fail_on))

    return make


@pytest_asyncio.fixture
async def orm_factory():
    """Factory: Orm over any store and schema, closed at teardown."""
    created: list[Orm] = []

    def make(store, collections=None, **kwargs) -> Orm:
        instance = Orm(store, collections if collections is not None else build_collections(), **kwargs)
        created.append(instance)
        return instance

    yield make
    for instance in created:
        await instance.close()
