"""Relation declarations: reference, lookup, and embed."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from docrel.kernel.paths import parse_embed_path
from docrel.kernel.types import DeleteAction, EmbedPath, EmbedStrategy, PropagationStrategy

if TYPE_CHECKING:
    from docrel.models.collection import CollectionDef


class ReverseConfig(BaseModel):
    """How an embed stays fresh when its source document changes."""

    model_config = {"extra": "forbid"}

    enabled: bool = True
    strategy: PropagationStrategy = PropagationStrategy.SYNC
    watch_fields: list[str] = Field(default_factory=list)


class ReferenceRelation(BaseModel):
    """Existence-validated foreign key. No storage side effect."""

    model_config = {"extra": "forbid"}

    kind: Literal["reference"] = "reference"
    target: str
    local_field: str
    foreign_field: str = "_id"


class LookupRelation(BaseModel):
    """Virtual join resolved at query time via $lookup. Never persisted."""

    model_config = {"extra": "forbid"}

    kind: Literal["lookup"] = "lookup"
    target: str
    local_field: str
    foreign_field: str = "_id"
    one: bool = False
    where: dict[str, Any] | None = None
    sort: dict[str, int] | None = None
    limit: int | None = Field(default=None, gt=0)
    select: list[str] | dict[str, int] | None = None


class EmbedRelation(BaseModel):
    """
    Write-time denormalized copy of a source document.

    `source_path` locates the source identifier(s) on the referencing
    document and is parsed once here; the strategy (separate / array /
    in-place) follows from its shape. The snapshot is stored under `into`,
    defaulting to the relation name.
    """

    model_config = {"extra": "forbid"}

    kind: Literal["embed"] = "embed"
    source: str
    source_path: str
    fields: list[str] | dict[str, int]
    into: str | None = None
    embed_id_field: str = "_id"
    many: bool | None = None
    reverse: ReverseConfig | None = None
    keep_fresh: bool = False
    on_source_delete: DeleteAction | None = None

    _path: EmbedPath = PrivateAttr()

    @field_validator("fields")
    @classmethod
    def _no_mixed_projection(cls, v: list[str] | dict[str, int]) -> list[str] | dict[str, int]:
        if isinstance(v, dict):
            flags = {bool(flag) for key, flag in v.items() if key != "_id"}
            if len(flags) > 1:
                raise ValueError("field selection cannot mix inclusion and exclusion")
        return v

    def model_post_init(self, __context: Any) -> None:
        self._path = parse_embed_path(self.source_path, id_field=self.embed_id_field, many=self.many)

    @property
    def path(self) -> EmbedPath:
        return self._path

    @property
    def strategy(self) -> EmbedStrategy:
        return self._path.strategy

    @property
    def reverse_config(self) -> ReverseConfig | None:
        """Effective reverse config; `keep_fresh` is shorthand for sync."""
        if self.keep_fresh:
            return ReverseConfig(enabled=True, strategy=PropagationStrategy.SYNC)
        if self.reverse is not None and self.reverse.enabled:
            return self.reverse
        return None

    def target_field(self, relation_name: str) -> str:
        return self.into or relation_name


Relation = Annotated[
    ReferenceRelation | LookupRelation | EmbedRelation,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _name_of(collection: str | CollectionDef) -> str:
    return collection if isinstance(collection, str) else collection.name


def reference(
    target: str | CollectionDef,
    *,
    local_field: str,
    foreign_field: str = "_id",
) -> ReferenceRelation:
    """
    Declare a reference relation.

    Usage:
        relations={"owner": reference("users", local_field="owner_id")}
    """
    return ReferenceRelation(target=_name_of(target), local_field=local_field, foreign_field=foreign_field)


def lookup(target: str | CollectionDef, *, local_field: str, **config: Any) -> LookupRelation:
    """
    Declare a lookup relation populated at query time.

    Usage:
        relations={"comments": lookup("comments", local_field="_id", foreign_field="post_id")}
    """
    return LookupRelation(target=_name_of(target), local_field=local_field, **config)


def embed(
    source: str | CollectionDef,
    *,
    source_path: str,
    fields: list[str] | dict[str, int],
    **config: Any,
) -> EmbedRelation:
    """
    Declare an embed relation.

    Usage:
        relations={
            "author": embed("authors", source_path="author_id", fields=["name", "avatar"],
                            reverse=ReverseConfig(watch_fields=["name", "avatar"])),
            "tags": embed("tags", source_path="tag_ids", fields=["name"]),
            "directory_embed": embed("directories", source_path="directory._id", fields=["name"]),
        }
    """
    return EmbedRelation(source=_name_of(source), source_path=source_path, fields=fields, **config)
