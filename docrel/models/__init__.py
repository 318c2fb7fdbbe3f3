"""
Pydantic models for docrel.

Schema declarations and request context. No imports from services or repos.
"""

from docrel.models.collection import Catalog, CollectionDef, Hooks, Policies
from docrel.models.context import OrmContext
from docrel.models.relations import (
    EmbedRelation,
    LookupRelation,
    ReferenceRelation,
    Relation,
    ReverseConfig,
    embed,
    lookup,
    reference,
)

__all__ = [
    "Catalog",
    "CollectionDef",
    "EmbedRelation",
    "Hooks",
    "LookupRelation",
    "OrmContext",
    "Policies",
    "ReferenceRelation",
    "Relation",
    "ReverseConfig",
    "embed",
    "lookup",
    "reference",
]
