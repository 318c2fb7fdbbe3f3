"""
Embed refresh — recomputes embed snapshots from current source data.

Two entry points:
  refresh_documents — on in-memory query results; never persisted
  refresh_embeds    — batch maintenance over a collection; persisted unless dry_run
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from docrel.config import settings
from docrel.kernel.errors import RelationConfigError
from docrel.kernel.paths import get_path
from docrel.kernel.storage import DocumentStore
from docrel.kernel.types import RefreshStats
from docrel.models.collection import CollectionDef
from docrel.services.forward_embed import ForwardEmbedProcessor

logger = logging.getLogger(__name__)


class EmbedRefresher:
    """Re-resolves embeds with the same projection rules used on write."""

    def __init__(self, store: DocumentStore, forward: ForwardEmbedProcessor | None = None):
        self.store = store
        self.forward = forward or ForwardEmbedProcessor(store)

    async def refresh_documents(
        self,
        collection: CollectionDef,
        documents: list[dict[str, Any]],
        relation_names: list[str],
        *,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        """
        Return copies of `documents` with the named embeds recomputed.

        Unknown names and non-embed relations are skipped.
        """
        relations = []
        for name in relation_names:
            relation = collection.relations.get(name)
            if relation is None or relation.kind != "embed":
                logger.debug("embed_refresh: %s.%s is not an embed relation, skipping", collection.name, name)
                continue
            relations.append((name, relation))

        refreshed = []
        for doc in documents:
            refreshed.append(await self.forward.apply(copy.deepcopy(doc), relations, session=session))
        return refreshed

    async def refresh_embeds(
        self,
        collection: CollectionDef,
        relation_name: str,
        *,
        filter: dict[str, Any] | None = None,
        batch_size: int | None = None,
        dry_run: bool = False,
        session: Any = None,
    ) -> RefreshStats:
        """
        Recompute one embed relation across every matching document.

        Args:
            collection: Collection holding the embeds
            relation_name: Embed relation to refresh
            filter: Restrict to matching documents
            batch_size: Page size (default REFRESH_BATCH_SIZE)
            dry_run: Count what would change without writing

        Returns:
            RefreshStats with matched, updated, errors, skipped

        Raises:
            UnknownRelationError: Relation not declared on the collection
            RelationConfigError: Relation is not an embed
        """
        relation = collection.relation(relation_name)
        if relation.kind != "embed":
            raise RelationConfigError(
                f"Relation '{relation_name}' on '{collection.name}' is a {relation.kind} relation, not an embed"
            )

        size = batch_size or settings.REFRESH_BATCH_SIZE
        if size <= 0:
            raise ValueError("batch_size must be positive")

        stored_field = relation.path.top_field if relation.path.is_in_place else relation.target_field(relation_name)
        stats = RefreshStats(matched=await self.store.count(collection.name, filter, session=session))

        # Page by _id; refreshed documents can drop out of `filter`.
        last_id: Any = None
        while True:
            page_filter = filter or {}
            if last_id is not None:
                page_filter = {"$and": [page_filter, {"_id": {"$gt": last_id}}]}
            page = await self.store.find(
                collection.name,
                page_filter,
                sort={"_id": 1},
                limit=size,
                session=session,
            )
            if not page:
                break

            for doc in page:
                try:
                    resolution = await self.forward.resolve(doc, relation_name, relation, session=session)
                    if not resolution.requested or not resolution.found:
                        stats.skipped += 1
                        continue
                    if not dry_run:
                        await self.store.update_one(
                            collection.name,
                            {"_id": doc["_id"]},
                            {"$set": {stored_field: get_path(resolution.document, stored_field)}},
                            session=session,
                        )
                    stats.updated += 1
                except Exception:
                    stats.errors += 1
                    logger.exception(
                        "embed_refresh: failed to refresh %s.%s for %s",
                        collection.name,
                        relation_name,
                        doc.get("_id"),
                    )

            last_id = page[-1]["_id"]
            if len(page) < size:
                break

        logger.info(
            "embed_refresh: %s.%s%s matched=%d updated=%d errors=%d skipped=%d",
            collection.name,
            relation_name,
            " (dry run)" if dry_run else "",
            stats.matched,
            stats.updated,
            stats.errors,
            stats.skipped,
        )
        return stats
