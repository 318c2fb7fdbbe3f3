"""Collection definitions: relations, hooks, policies, and the catalog."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field, model_validator

from docrel.kernel.errors import UnknownCollectionError, UnknownRelationError
from docrel.models.relations import EmbedRelation, LookupRelation, ReferenceRelation, Relation


class Hooks(BaseModel):
    """
    Lifecycle callbacks run by the CRUD facade, never by the relation core.
    Each may be a plain function or a coroutine function.

    before_insert(ctx, doc) -> doc
    after_insert(ctx, doc)
    before_update(ctx, old_doc, update) -> update
    after_update(ctx, old_doc, new_doc)
    before_delete(ctx, doc)
    after_delete(ctx, doc)
    """

    model_config = {"extra": "forbid"}

    before_insert: Callable[..., Any] | None = None
    after_insert: Callable[..., Any] | None = None
    before_update: Callable[..., Any] | None = None
    after_update: Callable[..., Any] | None = None
    before_delete: Callable[..., Any] | None = None
    after_delete: Callable[..., Any] | None = None


class Policies(BaseModel):
    """
    Access rules run by the CRUD facade.

    read_filter(ctx) -> filter ANDed into every read and write filter
    can_insert(ctx, doc) / can_update(ctx, old_doc, update) / can_delete(ctx, doc) -> bool
    """

    model_config = {"extra": "forbid"}

    read_filter: Callable[..., dict[str, Any]] | None = None
    can_insert: Callable[..., Any] | None = None
    can_update: Callable[..., Any] | None = None
    can_delete: Callable[..., Any] | None = None


class CollectionDef(BaseModel):
    """A named document collection and the relations it declares."""

    model_config = {"extra": "forbid"}

    name: str = Field(min_length=1)
    relations: dict[str, Relation] = Field(default_factory=dict)
    hooks: Hooks = Field(default_factory=Hooks)
    policies: Policies = Field(default_factory=Policies)
    public_id_field: str | None = None
    public_id_prefix: str | None = None
    soft_delete_field: str | None = None
    middlewares: list[Callable[..., Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _prefix_needs_field(self) -> CollectionDef:
        if self.public_id_prefix and not self.public_id_field:
            raise ValueError("public_id_prefix requires public_id_field")
        return self

    def relation(self, name: str) -> Relation:
        try:
            return self.relations[name]
        except KeyError:
            raise UnknownRelationError(self.name, name) from None

    def embeds(self) -> list[tuple[str, EmbedRelation]]:
        return [(n, r) for n, r in self.relations.items() if isinstance(r, EmbedRelation)]

    def references(self) -> list[tuple[str, ReferenceRelation]]:
        return [(n, r) for n, r in self.relations.items() if isinstance(r, ReferenceRelation)]

    def lookups(self) -> list[tuple[str, LookupRelation]]:
        return [(n, r) for n, r in self.relations.items() if isinstance(r, LookupRelation)]


class Catalog:
    """
    Every collection known to the process, by name. Built once at startup
    and read-only afterwards.
    """

    def __init__(self, collections: Iterable[CollectionDef]) -> None:
        self._by_name: dict[str, CollectionDef] = {}
        for coll in collections:
            if coll.name in self._by_name:
                raise ValueError(f"Duplicate collection name: {coll.name}")
            self._by_name[coll.name] = coll

    def get(self, name: str) -> CollectionDef:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownCollectionError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self):
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def names(self) -> list[str]:
        return list(self._by_name)
