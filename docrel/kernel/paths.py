"""
docrel Kernel — Path Navigator

Pure functions over a single document:
  parse_embed_path  — embed source path string → EmbedPath (once, at declaration)
  extract_ids       — identifiers found at a path, as canonical strings
  merge_at          — write snapshots back at the path (separate / array / in-place)

No IO. Missing intermediate fields skip that branch instead of failing.
"""

from __future__ import annotations

import copy
from typing import Any

from bson import ObjectId

from docrel.kernel.errors import RelationConfigError
from docrel.kernel.types import (
    FAN_OUT_MARKER,
    SNAPSHOT_ID_KEY,
    EmbedPath,
    EmbedStrategy,
    PathSegment,
)

_MISSING = object()


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def to_string_id(value: Any) -> str:
    """Canonical string form of an identifier. ObjectIds render as 24-char hex."""
    if isinstance(value, str):
        return value
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict) and SNAPSHOT_ID_KEY in value:
        return to_string_id(value[SNAPSHOT_ID_KEY])
    return str(value)


def to_native_id(value: Any) -> Any:
    """The ObjectId for a 24-char hex string, otherwise the value unchanged."""
    if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def id_candidates(value: Any) -> list[Any]:
    """
    Every stored form an identifier may take: its string form first, then the
    native form (ObjectId, int, ...) when that differs.
    """
    if isinstance(value, dict) and SNAPSHOT_ID_KEY in value:
        value = value[SNAPSHOT_ID_KEY]
    sid = to_string_id(value)
    native = to_native_id(value) if isinstance(value, str) else value
    if native is None or native == sid:
        return [sid]
    return [sid, native]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_embed_path(path: str, *, id_field: str = "_id", many: bool | None = None) -> EmbedPath:
    """
    Parse an embed source path into segments and resolve its strategy.

    In-place iff the terminal segment is the identifier key (`_id` or
    `id_field`) nested under at least one other segment. Array iff any segment
    fans out, `many` is True, or (with `many` unset) the terminal field is a
    plural identifier name such as `tag_ids` / `tagIds`.
    """
    if not isinstance(path, str) or not path.strip():
        raise RelationConfigError("Embed source path must be a non-empty string")

    segments: list[PathSegment] = []
    for part in path.strip().split("."):
        part = part.strip()
        fan_out = part.endswith(FAN_OUT_MARKER)
        name = part[: -len(FAN_OUT_MARKER)] if fan_out else part
        if not name or "[" in name or "]" in name:
            raise RelationConfigError(f"Invalid segment {part!r} in embed path {path!r}")
        segments.append(PathSegment(field=name, fan_out=fan_out))

    terminal = segments[-1]
    id_keys = {SNAPSHOT_ID_KEY, id_field}

    if len(segments) > 1 and not terminal.fan_out and terminal.field in id_keys:
        return EmbedPath(
            raw=path,
            segments=tuple(segments),
            strategy=EmbedStrategy.IN_PLACE,
            id_key=terminal.field,
        )

    if any(seg.fan_out for seg in segments) or many is True:
        strategy = EmbedStrategy.ARRAY
    elif many is None and terminal.field.lower().endswith("ids"):
        strategy = EmbedStrategy.ARRAY
    else:
        strategy = EmbedStrategy.SEPARATE

    return EmbedPath(raw=path, segments=tuple(segments), strategy=strategy)


def _as_path(path: EmbedPath | str) -> EmbedPath:
    return path if isinstance(path, EmbedPath) else parse_embed_path(path)


# ---------------------------------------------------------------------------
# Dotted field helpers
# ---------------------------------------------------------------------------


def get_path(doc: dict[str, Any], dotted: str, default: Any = None) -> Any:
    cur: Any = doc
    for part in dotted.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def has_path(doc: dict[str, Any], dotted: str) -> bool:
    return get_path(doc, dotted, _MISSING) is not _MISSING


def set_path(doc: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    cur = doc
    for part in parts[:-1]:
        if not isinstance(cur.get(part), dict):
            cur[part] = {}
        cur = cur[part]
    cur[parts[-1]] = value


def unset_path(doc: dict[str, Any], dotted: str) -> None:
    parts = dotted.split(".")
    cur = doc
    for part in parts[:-1]:
        if not isinstance(cur.get(part), dict):
            return
        cur = cur[part]
    cur.pop(parts[-1], None)


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


def _walk(values: list[Any], segments: tuple[PathSegment, ...]) -> list[Any]:
    """Follow segments from each starting value, fanning out across `[]` markers."""
    for seg in segments:
        next_values: list[Any] = []
        for value in values:
            if not isinstance(value, dict) or seg.field not in value:
                continue
            child = value[seg.field]
            if seg.fan_out:
                if isinstance(child, list):
                    next_values.extend(child)
            else:
                next_values.append(child)
        values = next_values
    return values


def resolve_values(document: dict[str, Any], path: EmbedPath | str) -> list[Any]:
    """Terminal values at `path`, before identifier conversion."""
    return _walk([document], _as_path(path).segments)


def extract_ids(document: dict[str, Any], path: EmbedPath | str) -> list[str]:
    """
    Identifiers at `path` as canonical strings, in document order.

    A terminal value that is itself a list contributes each element, which is
    what gives `tag_ids` array cardinality without an explicit marker.
    """
    result: list[str] = []
    for value in resolve_values(document, path):
        if value is None:
            continue
        if isinstance(value, list):
            result.extend(to_string_id(v) for v in value if v is not None)
        else:
            result.append(to_string_id(value))
    return result


def is_multi_valued(document: dict[str, Any], path: EmbedPath | str) -> bool:
    """True when the resolved source value holds several identifiers."""
    parsed = _as_path(path)
    if parsed.has_fan_out:
        return True
    return any(isinstance(v, list) for v in resolve_values(document, parsed))


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def merge_at(
    document: dict[str, Any],
    path: EmbedPath | str,
    id_to_snapshot: dict[str, dict[str, Any]],
    target_field: str,
) -> dict[str, Any]:
    """
    Return a copy of `document` with snapshots written at `path`.

    Separate: the snapshot of the first identifier under `target_field`.
    Array: snapshots in identifier order under `target_field`; identifiers
    with no snapshot are dropped. In-place: snapshot fields (minus the
    identifier keys) merged into each nested object, siblings preserved.
    A slot with nothing to write is left as it was.
    """
    parsed = _as_path(path)
    result = copy.deepcopy(document)

    if parsed.is_in_place:
        for nested in _walk([result], parsed.base_segments):
            if not isinstance(nested, dict) or parsed.id_key not in nested:
                continue
            snapshot = id_to_snapshot.get(to_string_id(nested[parsed.id_key]))
            if snapshot is None:
                continue
            for key, value in snapshot.items():
                if key in (SNAPSHOT_ID_KEY, parsed.id_key):
                    continue
                nested[key] = copy.deepcopy(value)
        return result

    ids = extract_ids(result, parsed)
    if not ids:
        return result

    if is_multi_valued(result, parsed):
        embeds = [copy.deepcopy(id_to_snapshot[i]) for i in ids if i in id_to_snapshot]
        if embeds:
            set_path(result, target_field, embeds)
    else:
        snapshot = id_to_snapshot.get(ids[0])
        if snapshot is not None:
            set_path(result, target_field, copy.deepcopy(snapshot))
    return result


# ---------------------------------------------------------------------------
# Update-path helpers (positional operators for dependents)
# ---------------------------------------------------------------------------


def positional_path(segments: tuple[PathSegment, ...]) -> tuple[str, list[str]]:
    """
    Dotted update path for `segments`, with each fan-out segment followed by a
    filtered positional operator. Returns (path, identifiers).

    (items[], ref) → ("items.$[e0].ref", ["e0"])
    """
    parts: list[str] = []
    idents: list[str] = []
    for seg in segments:
        parts.append(seg.field)
        if seg.fan_out:
            ident = f"e{len(idents)}"
            idents.append(ident)
            parts.append(f"$[{ident}]")
    return ".".join(parts), idents


def array_filters_for(
    segments: tuple[PathSegment, ...],
    leaf: str,
    candidates: list[Any],
) -> list[dict[str, Any]]:
    """
    arrayFilters matching the identifiers produced by `positional_path`.
    Each filter constrains its element by the remaining path down to `leaf`.
    """
    filters: list[dict[str, Any]] = []
    count = 0
    for index, seg in enumerate(segments):
        if not seg.fan_out:
            continue
        rest = [s.field for s in segments[index + 1 :]] + [leaf]
        filters.append({f"e{count}.{'.'.join(rest)}": {"$in": list(candidates)}})
        count += 1
    return filters
