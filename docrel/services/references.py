"""Reference validation — rejects writes whose reference fields point at missing documents."""

from __future__ import annotations

from typing import Any

from docrel.kernel.errors import InvalidReferenceError
from docrel.kernel.paths import get_path, has_path, id_candidates, to_string_id
from docrel.kernel.storage import DocumentStore
from docrel.models.collection import CollectionDef


class ReferenceValidator:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def validate(self, collection: CollectionDef, data: dict[str, Any], *, session: Any = None) -> None:
        """
        Check every reference relation whose local field is present in `data`.
        None values are allowed. List values must resolve element by element.

        Raises:
            InvalidReferenceError: First value with no matching target document
        """
        for _name, relation in collection.references():
            if not has_path(data, relation.local_field):
                continue
            value = get_path(data, relation.local_field)
            if value is None:
                continue

            values = [v for v in (value if isinstance(value, list) else [value]) if v is not None]
            if not values:
                continue

            query_values: list[Any] = []
            for v in values:
                for candidate in id_candidates(v):
                    if candidate not in query_values:
                        query_values.append(candidate)

            found_docs = await self.store.find(
                relation.target,
                {relation.foreign_field: {"$in": query_values}},
                session=session,
            )
            found = {to_string_id(get_path(d, relation.foreign_field)) for d in found_docs}
            for v in values:
                if to_string_id(v) not in found:
                    raise InvalidReferenceError(relation.local_field, relation.target, v)
