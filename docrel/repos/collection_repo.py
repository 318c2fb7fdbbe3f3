"""Repository for documents in one collection, bound to a request context."""

from __future__ import annotations

import inspect
import secrets
from datetime import UTC, datetime
from typing import Any

from bson import ObjectId

from docrel.config import settings
from docrel.kernel.errors import PolicyDeniedError, RelationConfigError
from docrel.kernel.paths import to_native_id
from docrel.kernel.pipeline import IncludeTree, build_pipeline
from docrel.kernel.registry import RelationRegistry
from docrel.kernel.storage import DocumentStore
from docrel.kernel.types import RefreshStats
from docrel.middleware.chain import CallNext, Middleware, OperationCall, run_chain
from docrel.models.collection import Catalog, CollectionDef
from docrel.models.context import OrmContext
from docrel.services.delete_cascade import DeleteCascadeHandler
from docrel.services.embed_refresh import EmbedRefresher
from docrel.services.forward_embed import ForwardEmbedProcessor
from docrel.services.references import ReferenceValidator
from docrel.services.reverse_embed import ReversePropagator


async def _call(fn: Any, *args: Any) -> Any:
    """Run a hook or policy that may be sync or async."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CollectionRepo:
    """
    CRUD for one collection, with the relation engine wired into each path.

    create / update: hooks → policy → reference validation → forward embeds → write
    update (after write): reverse propagation to dependents
    delete (after a document was removed): delete cascade

    Every store call carries ctx.session. Each public operation runs inside
    the middleware chain: Orm-level middlewares, then the collection's own.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: CollectionDef,
        ctx: OrmContext,
        *,
        catalog: Catalog,
        registry: RelationRegistry,
        propagator: ReversePropagator,
        forward: ForwardEmbedProcessor | None = None,
        cascade: DeleteCascadeHandler | None = None,
        refresher: EmbedRefresher | None = None,
        validator: ReferenceValidator | None = None,
        middlewares: list[Middleware] | None = None,
    ):
        self.store = store
        self.collection = collection
        self.ctx = ctx
        self.catalog = catalog
        self.registry = registry
        self.propagator = propagator
        self.forward = forward or ForwardEmbedProcessor(store)
        self.cascade = cascade or DeleteCascadeHandler(store, registry)
        self.refresher = refresher or EmbedRefresher(store, self.forward)
        self.validator = validator or ReferenceValidator(store)
        self.middlewares = [*(middlewares or []), *collection.middlewares]

    @property
    def name(self) -> str:
        return self.collection.name

    @property
    def session(self) -> Any:
        return self.ctx.session

    # -----------------------------------------------------------------------
    # Filters
    # -----------------------------------------------------------------------

    def id_filter(self, id: Any) -> dict[str, Any]:
        """
        Filter for an ObjectId, a public id, or a string id.

        A string containing "_" is treated as a public id when the collection
        has a public id field. A 24-char hex string becomes an ObjectId.
        """
        if isinstance(id, ObjectId):
            return {"_id": id}
        if isinstance(id, str) and "_" in id and self.collection.public_id_field:
            return {self.collection.public_id_field: id}
        return {"_id": to_native_id(id)}

    def scoped(self, filter: dict[str, Any] | None) -> dict[str, Any]:
        """AND the collection's read_filter policy into `filter`."""
        flt = filter or {}
        read_filter = self.collection.policies.read_filter
        if read_filter is None:
            return flt
        return {"$and": [flt, read_filter(self.ctx)]}

    def _new_public_id(self) -> str:
        token = secrets.token_urlsafe(settings.PUBLIC_ID_LENGTH)
        prefix = self.collection.public_id_prefix
        return f"{prefix}_{token}" if prefix else token

    async def _run(
        self,
        operation: str,
        run: CallNext,
        *,
        filter: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        **options: Any,
    ) -> Any:
        """Run one public operation through the middleware chain."""
        if not self.middlewares:
            return await run()
        call = OperationCall(
            ctx=self.ctx,
            collection=self.name,
            operation=operation,
            filter=filter,
            data=data,
            options={k: v for k, v in options.items() if v is not None},
        )
        return await run_chain(self.middlewares, call, run)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def find_by_id(self, id: Any, *, include: IncludeTree | None = None) -> dict[str, Any] | None:
        flt = self.id_filter(id)
        return await self._run("find_by_id", lambda: self._find_one(flt, include), filter=flt, include=include)

    async def find_one(
        self,
        filter: dict[str, Any] | None = None,
        *,
        include: IncludeTree | None = None,
    ) -> dict[str, Any] | None:
        return await self._run("find_one", lambda: self._find_one(filter, include), filter=filter, include=include)

    async def _find_one(self, filter: dict[str, Any] | None, include: IncludeTree | None) -> dict[str, Any] | None:
        flt = self.scoped(filter)
        if include:
            pipeline = [{"$match": flt}, *build_pipeline(self.collection, include, self.catalog), {"$limit": 1}]
            results = await self.store.aggregate(self.name, pipeline, session=self.session)
            return results[0] if results else None
        return await self.store.find_one(self.name, flt, session=self.session)

    async def find_many(
        self,
        filter: dict[str, Any] | None = None,
        *,
        include: IncludeTree | None = None,
        sort: dict[str, int] | None = None,
        skip: int = 0,
        limit: int | None = None,
        refresh_embeds: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Find documents, optionally joining relations and refreshing embeds.

        Args:
            filter: Query filter (read_filter policy is ANDed in)
            include: Relation name or include tree, resolved with $lookup
            sort, skip, limit: Applied before any join
            refresh_embeds: Embed relations to recompute on the results.
                The stored documents are not changed.

        Returns:
            List of documents
        """

        async def run() -> list[dict[str, Any]]:
            flt = self.scoped(filter)
            if include:
                pipeline: list[dict[str, Any]] = [{"$match": flt}]
                if sort:
                    pipeline.append({"$sort": sort})
                if skip:
                    pipeline.append({"$skip": skip})
                if limit:
                    pipeline.append({"$limit": limit})
                pipeline.extend(build_pipeline(self.collection, include, self.catalog))
                results = await self.store.aggregate(self.name, pipeline, session=self.session)
            else:
                results = await self.store.find(
                    self.name, flt, sort=sort, skip=skip, limit=limit, session=self.session
                )

            if refresh_embeds:
                results = await self.refresher.refresh_documents(
                    self.collection, results, refresh_embeds, session=self.session
                )
            return results

        return await self._run(
            "find_many",
            run,
            filter=filter,
            include=include,
            sort=sort,
            skip=skip or None,
            limit=limit,
            refresh_embeds=refresh_embeds,
        )

    async def count(self, filter: dict[str, Any] | None = None) -> int:
        return await self._run(
            "count",
            lambda: self.store.count(self.name, self.scoped(filter), session=self.session),
            filter=filter,
        )

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Run a raw pipeline. Policies are not applied."""
        return await self._run(
            "aggregate",
            lambda: self.store.aggregate(self.name, pipeline, session=self.session),
            pipeline=pipeline,
        )

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a document with its embeds resolved.

        Returns:
            The inserted document, including `_id`

        Raises:
            PolicyDeniedError: can_insert returned False
            InvalidReferenceError: A reference field points nowhere
        """
        return await self._run("create", lambda: self._create(data), data=data)

    async def _create(self, data: dict[str, Any]) -> dict[str, Any]:
        doc = dict(data)
        field = self.collection.public_id_field
        if field and not doc.get(field):
            doc[field] = self._new_public_id()

        hooks = self.collection.hooks
        policies = self.collection.policies

        if hooks.before_insert:
            doc = await _call(hooks.before_insert, self.ctx, doc)
        if policies.can_insert and not await _call(policies.can_insert, self.ctx, doc):
            raise PolicyDeniedError("insert", self.name)

        await self.validator.validate(self.collection, doc, session=self.session)
        doc = await self.forward.apply(doc, self.collection.embeds(), session=self.session)

        inserted_id = await self.store.insert_one(self.name, doc, session=self.session)
        inserted = {"_id": inserted_id, **{k: v for k, v in doc.items() if k != "_id"}}

        if hooks.after_insert:
            await _call(hooks.after_insert, self.ctx, inserted)
        return inserted

    async def update_by_id(self, id: Any, data: dict[str, Any]) -> dict[str, Any] | None:
        flt = self.id_filter(id)
        return await self._run("update_by_id", lambda: self._update_one(flt, data), filter=flt, data=data)

    async def update_one(self, filter: dict[str, Any], data: dict[str, Any]) -> dict[str, Any] | None:
        """
        $set `data` on the first match and propagate to dependents.

        Embeds whose source path starts at a field in `data` are re-resolved
        before the write. Dependents of this collection are refreshed after
        it, inline for sync relations.

        Returns:
            The document after the update, or None if nothing matched

        Raises:
            PolicyDeniedError: can_update returned False
            InvalidReferenceError: A reference field points nowhere
            PropagationError: A sync dependent could not be refreshed
        """
        return await self._run("update_one", lambda: self._update_one(filter, data), filter=filter, data=data)

    async def _update_one(self, filter: dict[str, Any], data: dict[str, Any]) -> dict[str, Any] | None:
        old = await self.store.find_one(self.name, self.scoped(filter), session=self.session)
        if old is None:
            return None

        hooks = self.collection.hooks
        policies = self.collection.policies
        update = dict(data)

        if hooks.before_update:
            update = await _call(hooks.before_update, self.ctx, old, update)
        if policies.can_update and not await _call(policies.can_update, self.ctx, old, update):
            raise PolicyDeniedError("update", self.name)

        await self.validator.validate(self.collection, update, session=self.session)
        touched = [(n, r) for n, r in self.collection.embeds() if r.path.top_field in update]
        if touched:
            update = await self.forward.apply(update, touched, session=self.session)

        new = await self.store.find_one_and_update(
            self.name,
            {"_id": old["_id"]},
            {"$set": update},
            session=self.session,
        )
        if new is None:
            return None

        if hooks.after_update:
            await _call(hooks.after_update, self.ctx, old, new)

        await self.propagator.propagate(self.name, new, list(update), session=self.session)
        return new

    async def update_many(self, filter: dict[str, Any], data: dict[str, Any]) -> int:
        """
        $set `data` on every match. Returns the modified count.

        Bulk path: no hooks, embeds, or reverse propagation. Use refresh_embeds
        on dependents afterwards if embedded fields changed.
        """

        async def run() -> int:
            outcome = await self.store.update_many(
                self.name, self.scoped(filter), {"$set": dict(data)}, session=self.session
            )
            return outcome.modified

        return await self._run("update_many", run, filter=filter, data=data)

    # -----------------------------------------------------------------------
    # Deletes
    # -----------------------------------------------------------------------

    async def delete_by_id(self, id: Any) -> bool:
        flt = self.id_filter(id)
        return await self._run("delete_by_id", lambda: self._delete_one(flt), filter=flt)

    async def delete_one(self, filter: dict[str, Any]) -> bool:
        """
        Delete the first match, then run delete actions on dependents.

        Raises:
            PolicyDeniedError: can_delete returned False
            CascadeError: A delete action failed inside a session
        """
        return await self._run("delete_one", lambda: self._delete_one(filter), filter=filter)

    async def _delete_one(self, filter: dict[str, Any]) -> bool:
        doc = await self.store.find_one(self.name, self.scoped(filter), session=self.session)
        if doc is None:
            return False

        hooks = self.collection.hooks
        policies = self.collection.policies

        if hooks.before_delete:
            await _call(hooks.before_delete, self.ctx, doc)
        if policies.can_delete and not await _call(policies.can_delete, self.ctx, doc):
            raise PolicyDeniedError("delete", self.name)

        deleted = await self.store.delete_one(self.name, {"_id": doc["_id"]}, session=self.session)
        if not deleted:
            return False

        if hooks.after_delete:
            await _call(hooks.after_delete, self.ctx, doc)
        await self.cascade.on_delete(self.name, doc, session=self.session)
        return True

    async def delete_many(self, filter: dict[str, Any]) -> int:
        """Delete every match. Bulk path: no hooks and no delete actions."""
        return await self._run(
            "delete_many",
            lambda: self.store.delete_many(self.name, self.scoped(filter), session=self.session),
            filter=filter,
        )

    def _soft_delete_field(self) -> str:
        field = self.collection.soft_delete_field
        if not field:
            raise RelationConfigError(f"Soft delete not configured for collection '{self.name}'")
        return field

    async def soft_delete(self, id: Any) -> dict[str, Any] | None:
        """
        Stamp the soft delete field with the current time.

        Runs as an update, so hooks, policies, and reverse propagation apply.
        Delete actions do not.
        """
        flt = self.id_filter(id)
        data = {self._soft_delete_field(): datetime.now(UTC)}
        return await self._run("soft_delete", lambda: self._update_one(flt, data), filter=flt, data=data)

    async def restore(self, id: Any) -> dict[str, Any] | None:
        flt = self.id_filter(id)
        data = {self._soft_delete_field(): None}
        return await self._run("restore", lambda: self._update_one(flt, data), filter=flt, data=data)

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    async def refresh_embeds(
        self,
        relation_name: str,
        *,
        filter: dict[str, Any] | None = None,
        batch_size: int | None = None,
        dry_run: bool = False,
    ) -> RefreshStats:
        return await self._run(
            "refresh_embeds",
            lambda: self.refresher.refresh_embeds(
                self.collection,
                relation_name,
                filter=self.scoped(filter),
                batch_size=batch_size,
                dry_run=dry_run,
                session=self.session,
            ),
            filter=filter,
            relation=relation_name,
            dry_run=dry_run or None,
        )
