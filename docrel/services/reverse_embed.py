"""
Reverse embed propagator — refreshes dependent snapshots after a source update.

Query shapes per strategy (sid = string form of the source identifier):

    separate  {target._id: sid}       {$set: {target: snapshot}}
    array     {target._id: sid}       {$set: {target.$[elem]: snapshot}}  arrayFilters [{elem._id: sid}]
    in-place  {$or: [{base.id: sid}, {base.id: native}]}
                                      {$set: {base.field: value, ...}}

Only the directly embedding collections are touched. If C embeds B which
embeds A, an update to A refreshes B and leaves C alone.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable
from typing import Any

from docrel.kernel.errors import PropagationError
from docrel.kernel.paths import (
    array_filters_for,
    get_path,
    has_path,
    id_candidates,
    positional_path,
    to_string_id,
)
from docrel.kernel.projection import includes_id, inclusion_fields, project_snapshot
from docrel.kernel.registry import RegistryEntry, RelationRegistry
from docrel.kernel.storage import DocumentStore, UpdateOutcome
from docrel.kernel.types import SNAPSHOT_ID_KEY, EmbedStrategy, PropagationStrategy
from docrel.models.relations import EmbedRelation
from docrel.services.propagation_queue import PropagationJob, PropagationQueue

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared query helpers
# ---------------------------------------------------------------------------


def dependent_filter(relation: EmbedRelation, target_field: str, source_id: Any) -> dict[str, Any]:
    """Filter matching every dependent document that embeds `source_id`."""
    path = relation.path
    if path.is_in_place:
        key = f"{path.base_path}.{path.id_key}"
        return {"$or": [{key: candidate} for candidate in id_candidates(source_id)]}
    if includes_id(relation.fields):
        return {f"{target_field}.{SNAPSHOT_ID_KEY}": to_string_id(source_id)}
    # Snapshots without _id can only be found through the reference field.
    return {path.query_path: {"$in": id_candidates(source_id)}}


def watch_gate(watch_fields: Iterable[str], updated_fields: Iterable[str]) -> bool:
    """
    True when an update touching `updated_fields` should propagate.

    An empty watch list always passes. A dotted update (`profile.avatar`)
    touches a watched parent (`profile`) and the other way round.
    """
    watched = list(watch_fields)
    if not watched:
        return True
    for updated in updated_fields:
        for field in watched:
            if updated == field or updated.startswith(f"{field}.") or field.startswith(f"{updated}."):
                return True
    return False


# ---------------------------------------------------------------------------
# Propagator
# ---------------------------------------------------------------------------


class ReversePropagator:
    """Pushes a source document's fresh snapshot into every dependent collection."""

    def __init__(
        self,
        store: DocumentStore,
        registry: RelationRegistry,
        *,
        workers: int | None = None,
        queue_size: int | None = None,
    ):
        self.store = store
        self.registry = registry
        self.queue = PropagationQueue(self.run_job, workers=workers, maxsize=queue_size)

    async def propagate(
        self,
        source: str,
        document: dict[str, Any],
        updated_fields: Iterable[str],
        *,
        session: Any = None,
    ) -> None:
        """
        Propagate an update of `document` in `source` to its dependents.

        Sync relations are updated before this returns; async relations are
        queued and updated without the caller's session.

        Args:
            source: Name of the collection `document` lives in
            document: The source document as it is after the update
            updated_fields: Top-level or dotted field names the update set

        Raises:
            PropagationError: A sync relation could not be updated
        """
        entries = self.registry.propagation_targets(source)
        if not entries:
            return

        updated = list(updated_fields)
        for entry in entries:
            config = entry.relation.reverse_config
            if not watch_gate(config.watch_fields, updated):
                logger.debug(
                    "reverse_embed: %s -> %s.%s skipped, no watched field in %s",
                    source,
                    entry.dependent,
                    entry.relation_name,
                    updated,
                )
                continue

            if config.strategy is PropagationStrategy.ASYNC:
                self.queue.enqueue(PropagationJob(source=source, entry=entry, document=copy.deepcopy(document)))
                continue

            try:
                await self.apply(entry, document, session=session)
            except Exception as e:
                raise PropagationError(source, entry.dependent, entry.relation_name) from e

    async def run_job(self, job: PropagationJob) -> UpdateOutcome | None:
        return await self.apply(job.entry, job.document)

    async def apply(
        self,
        entry: RegistryEntry,
        document: dict[str, Any],
        *,
        session: Any = None,
    ) -> UpdateOutcome | None:
        """Run the batched update for one dependent relation."""
        relation = entry.relation
        if not has_path(document, relation.embed_id_field):
            logger.warning(
                "reverse_embed: source document has no %s, cannot refresh %s.%s",
                relation.embed_id_field,
                entry.dependent,
                entry.relation_name,
            )
            return None

        source_id = get_path(document, relation.embed_id_field)
        sid = to_string_id(source_id)
        snapshot = project_snapshot(document, relation.fields, relation.embed_id_field)
        target = entry.target_field
        flt = dependent_filter(relation, target, source_id)
        array_filters: list[dict[str, Any]] | None = None

        if relation.strategy is EmbedStrategy.SEPARATE:
            update: dict[str, Any] = {"$set": {target: snapshot}}
        elif relation.strategy is EmbedStrategy.ARRAY:
            update = {"$set": {f"{target}.$[elem]": snapshot}}
            array_filters = [{f"elem.{SNAPSHOT_ID_KEY}": sid}]
        else:
            path = relation.path
            base, idents = positional_path(path.base_segments)
            if idents:
                array_filters = array_filters_for(path.base_segments, path.id_key, id_candidates(source_id))
            id_keys = (SNAPSHOT_ID_KEY, path.id_key)
            update = {}
            to_set = {f"{base}.{k}": v for k, v in snapshot.items() if k not in id_keys}
            if to_set:
                update["$set"] = to_set
            names = inclusion_fields(relation.fields) or []
            to_unset = {f"{base}.{k}": "" for k in names if k not in id_keys and not has_path(document, k)}
            if to_unset:
                update["$unset"] = to_unset
            if not update:
                return None

        outcome = await self.store.update_many(
            entry.dependent,
            flt,
            update,
            array_filters=array_filters,
            session=session,
        )
        logger.debug(
            "reverse_embed: %s %s -> %s.%s matched=%d modified=%d",
            relation.source,
            sid,
            entry.dependent,
            entry.relation_name,
            outcome.matched,
            outcome.modified,
        )
        return outcome
