"""
docrel Kernel — In-memory Query Engine

Evaluates the subset of MongoDB's query, update, and aggregation grammar that
the relation engine emits, against plain Python dicts. Backs MemoryStore so
the engine can be tested without a server.

Filters:     $and $or $nor, $eq $ne $gt $gte $lt $lte $in $nin $exists
             $size $all $elemMatch $regex $not, implicit array traversal
Updates:     $set $unset $inc $push $pull, with `$[]`, `$[ident]` +
             array_filters, and numeric indices
Aggregation: $match $sort $skip $limit $project $lookup $unwind $count

Anything else raises QueryError rather than being silently ignored.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

from bson import ObjectId

from docrel.kernel.errors import QueryError
from docrel.kernel.paths import get_path, has_path, set_path, unset_path

_LOGICAL = {"$and", "$or", "$nor"}


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _candidates(value: Any, parts: list[str]) -> list[Any]:
    """Every value a dotted path reaches, traversing arrays implicitly."""
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, dict):
        if head in value:
            return _candidates(value[head], rest)
        return []
    if isinstance(value, list):
        if head.isdigit():
            index = int(head)
            return _candidates(value[index], rest) if index < len(value) else []
        out: list[Any] = []
        for item in value:
            if isinstance(item, dict):
                out.extend(_candidates(item, parts))
        return out
    return []


def _expanded(candidates: list[Any]) -> list[Any]:
    """Candidates plus the elements of any array candidate."""
    out: list[Any] = []
    for value in candidates:
        out.append(value)
        if isinstance(value, list):
            out.extend(value)
    return out


def _is_operator_doc(cond: Any) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)


def _comparable(a: Any, b: Any) -> bool:
    numeric = (int, float)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, numeric) and isinstance(b, numeric):
        return True
    return type(a) is type(b) and isinstance(a, (str, datetime, ObjectId))


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def match_filter(doc: dict[str, Any], query: dict[str, Any] | None) -> bool:
    """True when `doc` satisfies the filter document `query`."""
    if not query:
        return True
    if not isinstance(query, dict):
        raise QueryError("Filter must be a dict")
    for key, cond in query.items():
        if key in _LOGICAL:
            if not isinstance(cond, list):
                raise QueryError(f"{key} requires a list of clauses")
            results = (match_filter(doc, clause) for clause in cond)
            if key == "$and" and not all(results):
                return False
            if key == "$or" and not any(results):
                return False
            if key == "$nor" and any(results):
                return False
        elif key.startswith("$"):
            raise QueryError(f"Unsupported top-level operator: {key}")
        else:
            values = _candidates(doc, key.split("."))
            if _is_operator_doc(cond):
                if not _eval_operators(values, cond):
                    return False
            elif not _eq(values, cond):
                return False
    return True


def _eq(values: list[Any], arg: Any) -> bool:
    if not values:
        return arg is None
    return any(v == arg for v in _expanded(values))


def _in(values: list[Any], arg: Any) -> bool:
    if not isinstance(arg, list):
        raise QueryError("$in / $nin require a list")
    return any(_eq(values, item) for item in arg)


def _compare(values: list[Any], op: str, arg: Any) -> bool:
    for v in _expanded(values):
        if not _comparable(v, arg):
            continue
        if op == "$gt" and v > arg:
            return True
        if op == "$gte" and v >= arg:
            return True
        if op == "$lt" and v < arg:
            return True
        if op == "$lte" and v <= arg:
            return True
    return False


def _regex(values: list[Any], pattern: Any, options: str) -> bool:
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, flags)
    return any(isinstance(v, str) and compiled.search(v) for v in _expanded(values))


def _elem_match(values: list[Any], arg: dict[str, Any]) -> bool:
    for value in values:
        if not isinstance(value, list):
            continue
        for item in value:
            if _is_operator_doc(arg):
                if _eval_operators([item], arg):
                    return True
            elif isinstance(item, dict) and match_filter(item, arg):
                return True
    return False


def _eval_operators(values: list[Any], cond: dict[str, Any]) -> bool:
    for op, arg in cond.items():
        if op == "$eq":
            ok = _eq(values, arg)
        elif op == "$ne":
            ok = not _eq(values, arg)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = _compare(values, op, arg)
        elif op == "$in":
            ok = _in(values, arg)
        elif op == "$nin":
            ok = not _in(values, arg)
        elif op == "$exists":
            ok = bool(values) == bool(arg)
        elif op == "$size":
            ok = any(isinstance(v, list) and len(v) == arg for v in values)
        elif op == "$all":
            ok = any(isinstance(v, list) and all(item in v for item in arg) for v in values)
        elif op == "$elemMatch":
            ok = _elem_match(values, arg)
        elif op == "$regex":
            ok = _regex(values, arg, cond.get("$options", ""))
        elif op == "$options":
            continue
        elif op == "$not":
            ok = not _eval_operators(values, arg)
        else:
            raise QueryError(f"Unsupported query operator: {op}")
        if not ok:
            return False
    return True


def filter_documents(docs: list[dict[str, Any]], query: dict[str, Any] | None) -> list[dict[str, Any]]:
    return [d for d in docs if match_filter(d, query)]


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


def _is_positional(part: str) -> bool:
    return part.startswith("$[") and part.endswith("]")


def _index_filters(array_filters: list[dict[str, Any]] | None) -> dict[str, dict[str, Any]]:
    """Group arrayFilters documents by the identifier their keys start with."""
    by_ident: dict[str, dict[str, Any]] = {}
    for flt in array_filters or []:
        for key, cond in flt.items():
            ident = key.split(".", 1)[0]
            by_ident.setdefault(ident, {})[key] = cond
    return by_ident


def _element_matches(item: Any, ident: str, filters: dict[str, dict[str, Any]]) -> bool:
    if ident not in filters:
        raise QueryError(f"No array filter found for identifier '{ident}'")
    return match_filter({ident: item}, filters[ident])


def _locations(
    node: Any,
    parts: list[str],
    filters: dict[str, dict[str, Any]],
    create: bool,
) -> Iterator[tuple[Any, Any]]:
    """Yield (container, key) for every slot an update path addresses."""
    head, rest = parts[0], parts[1:]

    if _is_positional(head):
        if not isinstance(node, list):
            return
        ident = head[2:-1]
        for index, item in enumerate(node):
            if ident and not _element_matches(item, ident, filters):
                continue
            if rest:
                yield from _locations(item, rest, filters, create)
            else:
                yield node, index
        return

    if isinstance(node, list):
        if not head.isdigit():
            if create:
                raise QueryError(f"Cannot address array element with '{head}'")
            return
        index = int(head)
        if not rest:
            yield node, index
        elif index < len(node):
            yield from _locations(node[index], rest, filters, create)
        return

    if not isinstance(node, dict):
        if create:
            raise QueryError(f"Cannot create field '{head}' in non-document value")
        return

    if not rest:
        yield node, head
        return

    child = node.get(head)
    if child is None:
        if not create:
            return
        if _is_positional(rest[0]):
            raise QueryError(f"The path '{head}' must exist to apply array updates")
        child = node[head] = {}
    yield from _locations(child, rest, filters, create)


def _read(container: Any, key: Any, default: Any = None) -> Any:
    if isinstance(container, list):
        return container[key] if key < len(container) else default
    return container.get(key, default)


def _write(container: Any, key: Any, value: Any) -> None:
    if isinstance(container, list):
        while len(container) <= key:
            container.append(None)
    container[key] = value


def _pull_matches(item: Any, cond: Any) -> bool:
    if _is_operator_doc(cond):
        return _eval_operators([item], cond)
    if isinstance(cond, dict):
        return isinstance(item, dict) and match_filter(item, cond)
    return item == cond


def apply_update(
    doc: dict[str, Any],
    update: dict[str, Any],
    array_filters: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Return a copy of `doc` with the update operators applied."""
    if not update or not all(op.startswith("$") for op in update):
        raise QueryError("Update must be a non-empty dict of operators")

    result = copy.deepcopy(doc)
    filters = _index_filters(array_filters)

    for op, changes in update.items():
        for path, value in changes.items():
            parts = path.split(".")
            if op == "$set":
                for container, key in list(_locations(result, parts, filters, create=True)):
                    _write(container, key, copy.deepcopy(value))
            elif op == "$unset":
                for container, key in list(_locations(result, parts, filters, create=False)):
                    if isinstance(container, list):
                        if key < len(container):
                            container[key] = None
                    else:
                        container.pop(key, None)
            elif op == "$inc":
                for container, key in list(_locations(result, parts, filters, create=True)):
                    current = _read(container, key, 0)
                    if not isinstance(current, (int, float)):
                        raise QueryError(f"$inc requires a numeric field: {path}")
                    _write(container, key, current + value)
            elif op == "$push":
                items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                for container, key in list(_locations(result, parts, filters, create=True)):
                    current = _read(container, key)
                    if current is None:
                        current = []
                    if not isinstance(current, list):
                        raise QueryError(f"$push requires an array field: {path}")
                    current.extend(copy.deepcopy(items))
                    _write(container, key, current)
            elif op == "$pull":
                for container, key in list(_locations(result, parts, filters, create=False)):
                    current = _read(container, key)
                    if not isinstance(current, list):
                        continue
                    _write(container, key, [x for x in current if not _pull_matches(x, value)])
            else:
                raise QueryError(f"Unsupported update operator: {op}")

    if "_id" in doc and result.get("_id") != doc["_id"]:
        raise QueryError("Performing an update on the path '_id' would modify the immutable field '_id'")
    return result


# ---------------------------------------------------------------------------
# Sort / project
# ---------------------------------------------------------------------------


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (1, 0)
    if isinstance(value, bool):
        return (8, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, dict):
        return (4, repr(value))
    if isinstance(value, list):
        return (5, repr(value))
    if isinstance(value, ObjectId):
        return (7, value)
    if isinstance(value, datetime):
        return (9, value)
    return (10, repr(value))


def sort_documents(docs: list[dict[str, Any]], sort: dict[str, int] | list[tuple[str, int]] | None) -> list[dict[str, Any]]:
    if not sort:
        return list(docs)
    keys = list(sort.items()) if isinstance(sort, dict) else list(sort)
    out = list(docs)
    for key, direction in reversed(keys):
        out.sort(key=lambda d, k=key: _sort_key(get_path(d, k)), reverse=direction < 0)
    return out


def project_document(doc: dict[str, Any], projection: dict[str, Any]) -> dict[str, Any]:
    """Apply an inclusion or exclusion projection. `_id` is kept unless set to 0."""
    fields = {k: v for k, v in projection.items() if k != "_id"}
    keep_id = projection.get("_id", 1) not in (0, False)
    inclusion = any(v not in (0, False) for v in fields.values())

    if inclusion:
        out: dict[str, Any] = {}
        if keep_id and "_id" in doc:
            out["_id"] = copy.deepcopy(doc["_id"])
        for key, flag in fields.items():
            if flag in (0, False):
                raise QueryError("Cannot mix inclusion and exclusion in a projection")
            if has_path(doc, key):
                set_path(out, key, copy.deepcopy(get_path(doc, key)))
        return out

    out = copy.deepcopy(doc)
    for key in fields:
        unset_path(out, key)
    if not keep_id:
        out.pop("_id", None)
    return out


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

CollectionResolver = Callable[[str], list[dict[str, Any]]]


def _lookup(docs: list[dict[str, Any]], spec: dict[str, Any], resolve: CollectionResolver) -> list[dict[str, Any]]:
    foreign_docs = resolve(spec["from"])
    local_field = spec.get("localField")
    foreign_field = spec.get("foreignField")
    sub_pipeline = spec.get("pipeline") or []
    name = spec["as"]

    out: list[dict[str, Any]] = []
    for doc in docs:
        if local_field is not None:
            local_values = _expanded(_candidates(doc, local_field.split("."))) or [None]
            joined = [
                f
                for f in foreign_docs
                if any(
                    lv == fv
                    for lv in local_values
                    for fv in (_expanded(_candidates(f, foreign_field.split("."))) or [None])
                )
            ]
        else:
            joined = list(foreign_docs)
        joined = aggregate_documents(copy.deepcopy(joined), sub_pipeline, resolve)
        new_doc = copy.deepcopy(doc)
        set_path(new_doc, name, joined)
        out.append(new_doc)
    return out


def _unwind(docs: list[dict[str, Any]], spec: str | dict[str, Any]) -> list[dict[str, Any]]:
    path = spec if isinstance(spec, str) else spec["path"]
    preserve = False if isinstance(spec, str) else bool(spec.get("preserveNullAndEmptyArrays", False))
    if not path.startswith("$"):
        raise QueryError("$unwind path must start with '$'")
    field = path[1:]

    out: list[dict[str, Any]] = []
    for doc in docs:
        value = get_path(doc, field)
        if isinstance(value, list):
            if value:
                for item in value:
                    new_doc = copy.deepcopy(doc)
                    set_path(new_doc, field, copy.deepcopy(item))
                    out.append(new_doc)
            elif preserve:
                new_doc = copy.deepcopy(doc)
                unset_path(new_doc, field)
                out.append(new_doc)
        elif value is None:
            if preserve:
                out.append(copy.deepcopy(doc))
        else:
            out.append(copy.deepcopy(doc))
    return out


def aggregate_documents(
    docs: list[dict[str, Any]],
    pipeline: list[dict[str, Any]],
    resolve: CollectionResolver,
) -> list[dict[str, Any]]:
    """Run `pipeline` over `docs`. `resolve` returns the documents of a named collection."""
    out = list(docs)
    for stage in pipeline:
        if not isinstance(stage, dict) or len(stage) != 1:
            raise QueryError("Each pipeline stage must be a single-key dict")
        op, spec = next(iter(stage.items()))
        if op == "$match":
            out = filter_documents(out, spec)
        elif op == "$sort":
            out = sort_documents(out, spec)
        elif op == "$skip":
            out = out[spec:]
        elif op == "$limit":
            out = out[:spec]
        elif op == "$project":
            out = [project_document(d, spec) for d in out]
        elif op == "$lookup":
            out = _lookup(out, spec, resolve)
        elif op == "$unwind":
            out = _unwind(out, spec)
        elif op == "$count":
            out = [{spec: len(out)}] if out else []
        else:
            raise QueryError(f"Unsupported aggregation stage: {op}")
    return out
