"""
Delete cascade handler — applies each embed relation's on_source_delete action
once a source document is gone.

    cascade  delete every dependent that embeds the source
    nullify  set snapshot and reference to None (array: pull both)
    clear    drop the snapshot fields, keep the reference

Every action is one batched update_many / delete_many per dependent relation.
"""

from __future__ import annotations

import logging
from typing import Any

from docrel.kernel.errors import CascadeError
from docrel.kernel.paths import array_filters_for, get_path, has_path, id_candidates, positional_path, to_string_id
from docrel.kernel.projection import inclusion_fields, project_snapshot
from docrel.kernel.registry import RegistryEntry, RelationRegistry
from docrel.kernel.storage import DocumentStore
from docrel.kernel.types import SNAPSHOT_ID_KEY, CascadeReport, DeleteAction, EmbedStrategy, PathSegment
from docrel.services.reverse_embed import dependent_filter

logger = logging.getLogger(__name__)


def pull_spec(segments: tuple[PathSegment, ...], candidates: list[Any]) -> tuple[str, Any]:
    """
    ($pull path, condition) removing `candidates` from a reference path.

    tag_ids             → ("tag_ids", {"$in": [...]})
    items[].product_id  → ("items", {"product_id": {"$in": [...]}})
    """
    fan_outs = [i for i, seg in enumerate(segments) if seg.fan_out]
    if not fan_outs:
        return ".".join(seg.field for seg in segments), {"$in": candidates}

    last = fan_outs[-1]
    parts: list[str] = []
    for seg in segments[:last]:
        parts.append(seg.field)
        if seg.fan_out:
            parts.append("$[]")
    parts.append(segments[last].field)
    rest = ".".join(seg.field for seg in segments[last + 1 :])
    condition = {rest: {"$in": candidates}} if rest else {"$in": candidates}
    return ".".join(parts), condition


class DeleteCascadeHandler:
    """
    Runs delete actions for every relation that embeds the deleted document.

    Every target is attempted even if an earlier one fails. Inside a session
    any failure raises CascadeError afterwards so the transaction aborts;
    without one the cascade is best-effort and the report lists the failures.
    """

    def __init__(self, store: DocumentStore, registry: RelationRegistry):
        self.store = store
        self.registry = registry

    async def on_delete(
        self,
        source: str,
        deleted: dict[str, Any],
        *,
        session: Any = None,
    ) -> CascadeReport:
        report = CascadeReport(source=source)
        for entry in self.registry.cascade_targets(source):
            action = entry.relation.on_source_delete
            target = (entry.dependent, entry.relation_name, str(action))
            try:
                await self._apply(entry, action, deleted, session=session)
            except Exception:
                logger.exception(
                    "delete_cascade: %s on %s.%s failed for %s",
                    action,
                    entry.dependent,
                    entry.relation_name,
                    source,
                )
                report.failed.append(target)
            else:
                report.applied.append(target)

        if report.failed and session is not None:
            raise CascadeError(source, report.failed)
        return report

    async def _apply(self, entry: RegistryEntry, action: DeleteAction, deleted: dict[str, Any], *, session: Any) -> None:
        relation = entry.relation
        if not has_path(deleted, relation.embed_id_field):
            logger.warning(
                "delete_cascade: deleted %s document has no %s, skipping %s.%s",
                relation.source,
                relation.embed_id_field,
                entry.dependent,
                entry.relation_name,
            )
            return

        source_id = get_path(deleted, relation.embed_id_field)
        target = entry.target_field
        flt = dependent_filter(relation, target, source_id)

        if action is DeleteAction.CASCADE:
            count = await self.store.delete_many(entry.dependent, flt, session=session)
            logger.info("delete_cascade: removed %d %s documents", count, entry.dependent)
            return

        if relation.strategy is EmbedStrategy.IN_PLACE:
            await self._apply_in_place(entry, action, deleted, source_id, flt, session=session)
            return

        sid = to_string_id(source_id)
        candidates = id_candidates(source_id)
        path = relation.path

        if relation.strategy is EmbedStrategy.ARRAY:
            await self.store.update_many(
                entry.dependent,
                flt,
                {"$pull": {target: {SNAPSHOT_ID_KEY: sid}}},
                session=session,
            )
            if action is DeleteAction.NULLIFY:
                ref_path, condition = pull_spec(path.segments, candidates)
                await self.store.update_many(
                    entry.dependent,
                    {path.query_path: {"$in": candidates}},
                    {"$pull": {ref_path: condition}},
                    session=session,
                )
            return

        if action is DeleteAction.NULLIFY:
            update = {"$set": {target: None, path.query_path: None}}
        else:
            update = {"$unset": {target: ""}}
        await self.store.update_many(entry.dependent, flt, update, session=session)

    async def _apply_in_place(
        self,
        entry: RegistryEntry,
        action: DeleteAction,
        deleted: dict[str, Any],
        source_id: Any,
        flt: dict[str, Any],
        *,
        session: Any,
    ) -> None:
        path = entry.relation.path
        base, idents = positional_path(path.base_segments)
        array_filters = array_filters_for(path.base_segments, path.id_key, id_candidates(source_id)) if idents else None

        if action is DeleteAction.NULLIFY:
            update: dict[str, Any] = {"$set": {base: None}}
        else:
            relation = entry.relation
            names = inclusion_fields(relation.fields)
            if names is None:
                # Exclusion selection: the snapshot fields are whatever the deleted source carried.
                names = list(project_snapshot(deleted, relation.fields, relation.embed_id_field))
            fields = [n for n in names if n not in (SNAPSHOT_ID_KEY, path.id_key)]
            if not fields:
                return
            update = {"$unset": {f"{base}.{n}": "" for n in fields}}

        await self.store.update_many(entry.dependent, flt, update, array_filters=array_filters, session=session)
