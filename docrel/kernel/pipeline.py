"""
docrel Kernel — Lookup Pipeline Builder

Compiles an include tree into aggregation stages:

    "author"                                  → one relation with defaults
    {"author": True, "comments": {...}}       → several, with per-relation overrides

Override keys: select, where, sort, limit, include (recursive).

Stage shapes are part of the wire contract with MongoDB and with tests that
assert on them, so key order is fixed:

    {"$lookup": {"from", "localField", "foreignField", "as"[, "pipeline"]}}
    {"$unwind": {"path": "$<name>", "preserveNullAndEmptyArrays": True}}

Pure: no IO, no mutation of its inputs.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from docrel.kernel.errors import RelationConfigError, UnknownRelationError

if TYPE_CHECKING:
    from docrel.models.collection import Catalog, CollectionDef

IncludeTree = str | Mapping[str, Any]

_OVERRIDE_KEYS = frozenset({"select", "where", "sort", "limit", "include"})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_pipeline(
    collection: CollectionDef,
    include: IncludeTree,
    catalog: Catalog | None = None,
) -> list[dict[str, Any]]:
    """
    Build the $lookup / $unwind stages for `include` on `collection`.

    Args:
        collection: The collection whose relations are being included.
        include: A relation name, or a mapping of relation name to True or an
            override dict.
        catalog: Resolves lookup targets for nested includes.

    Returns:
        Ordered list of stage documents.

    Raises:
        UnknownRelationError: If the tree names a relation `collection` lacks.
    """
    stages: list[dict[str, Any]] = []

    if isinstance(include, str):
        relation = _relation_or_raise(collection, include)
        stages.extend(_stages_for(include, relation, None, catalog))
        return stages

    if not isinstance(include, Mapping):
        raise RelationConfigError(f"Include must be a relation name or a mapping, got {type(include).__name__}")

    for name, config in include.items():
        relation = _relation_or_raise(collection, name)
        if config is False or config is None:
            continue
        overrides = None if config is True else _check_overrides(name, config)
        stages.extend(_stages_for(name, relation, overrides, catalog))

    return stages


def build_projection(select: list[str] | Mapping[str, int | bool]) -> dict[str, Any]:
    """
    $project document for a field selection.

    A list always includes `_id` first. A map includes `_id` first unless it
    sets `_id` to 0, then copies its own entries in order.
    """
    if isinstance(select, list):
        projection: dict[str, Any] = {"_id": 1}
        for name in select:
            projection[name] = 1
        return projection

    projection = {}
    if select.get("_id") != 0:
        projection["_id"] = 1
    for name, flag in select.items():
        projection[name] = flag
    return projection


def merge_where(default: dict[str, Any] | None, query: dict[str, Any] | None) -> dict[str, Any] | None:
    """AND a relation's default filter with a query-time filter."""
    if default is None and query is None:
        return None
    if default is None:
        return query
    if query is None:
        return default
    return {"$and": [default, query]}


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _relation_or_raise(collection: CollectionDef, name: str):
    if name not in collection.relations:
        raise UnknownRelationError(collection.name, name)
    return collection.relations[name]


def _check_overrides(name: str, config: Any) -> Mapping[str, Any]:
    if not isinstance(config, Mapping):
        raise RelationConfigError(f"Include entry '{name}' must be True or a mapping")
    unknown = set(config) - _OVERRIDE_KEYS
    if unknown:
        raise RelationConfigError(f"Include entry '{name}' has unknown keys: {sorted(unknown)}")
    return config


def _unwind(name: str) -> dict[str, Any]:
    return {"$unwind": {"path": f"${name}", "preserveNullAndEmptyArrays": True}}


def _stages_for(
    name: str,
    relation: Any,
    overrides: Mapping[str, Any] | None,
    catalog: Catalog | None,
) -> list[dict[str, Any]]:
    kind = relation.kind

    if kind == "embed":
        return []

    if kind == "reference":
        return [
            {
                "$lookup": {
                    "from": relation.target,
                    "localField": relation.local_field,
                    "foreignField": relation.foreign_field,
                    "as": name,
                }
            },
            _unwind(name),
        ]

    if kind != "lookup":
        raise RelationConfigError(f"Unsupported relation kind {kind!r} for '{name}'")

    overrides = overrides or {}
    sub: list[dict[str, Any]] = []

    where = merge_where(relation.where, overrides.get("where"))
    if where is not None:
        sub.append({"$match": copy.deepcopy(where)})

    sort = overrides.get("sort")
    if sort is None:
        sort = relation.sort
    if sort is not None:
        sub.append({"$sort": dict(sort)})

    limit = overrides.get("limit")
    if limit is None:
        limit = relation.limit
    if limit:
        sub.append({"$limit": limit})

    select = overrides.get("select")
    if select is None:
        select = relation.select
    if select is not None:
        sub.append({"$project": build_projection(select)})

    nested = overrides.get("include")
    if nested:
        if catalog is None:
            raise RelationConfigError(f"Nested include under '{name}' needs a catalog")
        sub.extend(build_pipeline(catalog.get(relation.target), nested, catalog))

    lookup_stage: dict[str, Any] = {
        "$lookup": {
            "from": relation.target,
            "localField": relation.local_field,
            "foreignField": relation.foreign_field,
            "as": name,
        }
    }
    if sub:
        lookup_stage["$lookup"]["pipeline"] = sub

    stages = [lookup_stage]
    if relation.one:
        stages.append(_unwind(name))
    return stages
