"""
docrel Kernel — Snapshot Projection

Builds the embedded snapshot of a source document. Shared by forward
resolution, reverse propagation, and refresh so every path writes the
same shape.
"""

from __future__ import annotations

import copy
from typing import Any

from docrel.kernel.paths import get_path, has_path, set_path, to_string_id
from docrel.kernel.types import SNAPSHOT_ID_KEY

FieldSelection = list[str] | dict[str, int | bool]


def _is_included(flag: int | bool) -> bool:
    return flag not in (0, False)


def inclusion_fields(fields: FieldSelection) -> list[str] | None:
    """
    Field names a selection copies, in order. None for exclusion-style maps,
    whose output depends on the source document.
    """
    if isinstance(fields, list):
        return [f for f in fields if f != SNAPSHOT_ID_KEY]
    included = [k for k, v in fields.items() if k != SNAPSHOT_ID_KEY and _is_included(v)]
    excluded = [k for k, v in fields.items() if k != SNAPSHOT_ID_KEY and not _is_included(v)]
    if excluded and not included:
        return None
    return included


def includes_id(fields: FieldSelection) -> bool:
    if isinstance(fields, list):
        return True
    return _is_included(fields.get(SNAPSHOT_ID_KEY, 1))


def project_snapshot(
    doc: dict[str, Any],
    fields: FieldSelection,
    embed_id_field: str = "_id",
) -> dict[str, Any]:
    """
    Project `doc` into an embed snapshot.

    `_id` comes first and holds the string form of `doc[embed_id_field]`
    unless the selection map sets `_id: 0`. Fields missing on the source
    are omitted rather than written as None.
    """
    result: dict[str, Any] = {}

    if includes_id(fields) and has_path(doc, embed_id_field):
        result[SNAPSHOT_ID_KEY] = to_string_id(get_path(doc, embed_id_field))

    names = inclusion_fields(fields)
    if names is None:
        excluded = {k for k, v in fields.items() if not _is_included(v)}
        for key, value in doc.items():
            if key in excluded or key in (SNAPSHOT_ID_KEY, embed_id_field):
                continue
            result[key] = copy.deepcopy(value)
        return result

    for name in names:
        if name == embed_id_field or not has_path(doc, name):
            continue
        set_path(result, name, copy.deepcopy(get_path(doc, name)))
    return result
