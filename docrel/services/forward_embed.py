"""Forward embed processor — resolves embed snapshots onto a document before it is written."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from docrel.kernel.paths import extract_ids, get_path, has_path, id_candidates, merge_at, to_string_id
from docrel.kernel.projection import project_snapshot
from docrel.kernel.storage import DocumentStore
from docrel.models.relations import EmbedRelation

logger = logging.getLogger(__name__)


@dataclass
class EmbedResolution:
    """One relation resolved against one document."""

    document: dict[str, Any]
    requested: list[str] = field(default_factory=list)
    found: list[str] = field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        return [i for i in self.requested if i not in self.found]


def _query_values(ids: list[str]) -> list[Any]:
    values: list[Any] = []
    for sid in ids:
        for candidate in id_candidates(sid):
            if candidate not in values:
                values.append(candidate)
    return values


class ForwardEmbedProcessor:
    """
    Fetches source documents for a document's embed relations and writes
    their snapshots into it. Reads the source collections only; the caller
    persists the result.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def apply(
        self,
        document: dict[str, Any],
        relations: list[tuple[str, EmbedRelation]],
        *,
        session: Any = None,
    ) -> dict[str, Any]:
        """
        Resolve every relation in `relations` onto `document`.

        Args:
            document: Document (or $set payload) about to be written
            relations: (relation name, EmbedRelation) pairs

        Returns:
            New document with snapshots merged in
        """
        for name, relation in relations:
            resolution = await self.resolve(document, name, relation, session=session)
            document = resolution.document
        return document

    async def resolve(
        self,
        document: dict[str, Any],
        name: str,
        relation: EmbedRelation,
        *,
        session: Any = None,
    ) -> EmbedResolution:
        ids = extract_ids(document, relation.path)
        if not ids:
            return EmbedResolution(document=document)

        id_field = relation.embed_id_field
        sources = await self.store.find(
            relation.source,
            {id_field: {"$in": _query_values(ids)}},
            session=session,
        )

        snapshots: dict[str, dict[str, Any]] = {}
        for src in sources:
            if not has_path(src, id_field):
                continue
            snapshots[to_string_id(get_path(src, id_field))] = project_snapshot(src, relation.fields, id_field)

        resolution = EmbedResolution(
            document=merge_at(document, relation.path, snapshots, relation.target_field(name)),
            requested=ids,
            found=[i for i in ids if i in snapshots],
        )
        if resolution.missing:
            logger.warning(
                "forward_embed: %s not found in %s for relation %s",
                ", ".join(resolution.missing),
                relation.source,
                name,
            )
        return resolution
