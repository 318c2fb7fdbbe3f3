"""
docrel ORM — entry point.

Builds the catalog and relation registry once, owns the propagation queue,
and hands out context-bound repositories:

    orm = Orm(MongoStore(get_database()), [authors, posts])
    db = orm.with_context(orm.context(user=user))
    post = await db.posts.create({"title": "Hello", "author_id": author_id})

    async with orm.transaction(orm.context()) as tx:
        await orm.with_context(tx).authors.update_by_id(author_id, {"name": "Ada"})
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from docrel.kernel.registry import RelationRegistry, build_registry
from docrel.kernel.storage import DocumentStore
from docrel.middleware.chain import Middleware
from docrel.models.collection import Catalog, CollectionDef
from docrel.models.context import OrmContext
from docrel.repos.collection_repo import CollectionRepo
from docrel.services.delete_cascade import DeleteCascadeHandler
from docrel.services.embed_refresh import EmbedRefresher
from docrel.services.forward_embed import ForwardEmbedProcessor
from docrel.services.references import ReferenceValidator
from docrel.services.reverse_embed import ReversePropagator

logger = logging.getLogger(__name__)


class BoundDatabase:
    """Repositories for every collection, bound to one context. `db.posts` or `db["posts"]`."""

    def __init__(self, orm: Orm, ctx: OrmContext):
        self._orm = orm
        self.ctx = ctx

    def __getitem__(self, name: str) -> CollectionRepo:
        return self._orm.repo(name, self.ctx)

    def __getattr__(self, name: str) -> CollectionRepo:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._orm.catalog:
            raise AttributeError(f"No collection named '{name}'")
        return self._orm.repo(name, self.ctx)


class Orm:
    def __init__(
        self,
        store: DocumentStore,
        collections: Iterable[CollectionDef] | Catalog,
        *,
        workers: int | None = None,
        queue_size: int | None = None,
        middlewares: Iterable[Middleware] = (),
    ):
        self.store = store
        self.middlewares = list(middlewares)
        self.catalog = collections if isinstance(collections, Catalog) else Catalog(collections)
        self.registry: RelationRegistry = build_registry(self.catalog)

        self.forward = ForwardEmbedProcessor(store)
        self.propagator = ReversePropagator(store, self.registry, workers=workers, queue_size=queue_size)
        self.queue = self.propagator.queue
        self.cascade = DeleteCascadeHandler(store, self.registry)
        self.refresher = EmbedRefresher(store, self.forward)
        self.validator = ReferenceValidator(store)

        logger.info(
            "orm: %d collections, %d embed sources",
            len(self.catalog),
            len(self.registry.sources()),
        )

    def context(self, **kwargs: Any) -> OrmContext:
        return OrmContext(**kwargs)

    def repo(self, name: str, ctx: OrmContext | None = None) -> CollectionRepo:
        return CollectionRepo(
            self.store,
            self.catalog.get(name),
            ctx or self.context(),
            catalog=self.catalog,
            registry=self.registry,
            propagator=self.propagator,
            forward=self.forward,
            cascade=self.cascade,
            refresher=self.refresher,
            validator=self.validator,
            middlewares=self.middlewares,
        )

    def with_context(self, ctx: OrmContext | None = None) -> BoundDatabase:
        return BoundDatabase(self, ctx or self.context())

    @asynccontextmanager
    async def transaction(self, ctx: OrmContext | None = None) -> AsyncIterator[OrmContext]:
        """
        Scope a block to one store session.

        Yields a copy of `ctx` carrying the session. Commits on clean exit,
        aborts if the block raises. Async propagation never joins it.
        """
        async with self.store.session() as session:
            yield (ctx or self.context()).with_session(session)

    async def start(self) -> None:
        self.queue.start()

    async def close(self) -> None:
        """Drain pending async propagation and stop the workers."""
        await self.queue.stop(drain=True)
