"""
docrel Kernel — Relation Registry

Maps each source collection to the embed relations that copy from it:

    source collection → (dependent collection, relation name, relation), ...

Built once from the catalog at startup and read-only afterwards. Reverse
propagation reads the reverse-enabled entries, delete cascade reads the
entries that declare a delete action. Components receive it by
constructor so tests can hand in synthetic registries.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docrel.models.collection import CollectionDef
    from docrel.models.relations import EmbedRelation


@dataclass(frozen=True)
class RegistryEntry:
    """One embed relation seen from its source collection."""

    dependent: str
    relation_name: str
    relation: EmbedRelation

    @property
    def target_field(self) -> str:
        return self.relation.target_field(self.relation_name)


@dataclass(frozen=True)
class RelationRegistry:
    entries: Mapping[str, tuple[RegistryEntry, ...]] = field(default_factory=lambda: MappingProxyType({}))

    def dependents_of(self, source: str) -> tuple[RegistryEntry, ...]:
        return self.entries.get(source, ())

    def propagation_targets(self, source: str) -> tuple[RegistryEntry, ...]:
        """Entries whose relation keeps its snapshots fresh."""
        return tuple(e for e in self.dependents_of(source) if e.relation.reverse_config is not None)

    def cascade_targets(self, source: str) -> tuple[RegistryEntry, ...]:
        """Entries whose relation reacts to the source being deleted."""
        return tuple(e for e in self.dependents_of(source) if e.relation.on_source_delete is not None)

    def sources(self) -> list[str]:
        return list(self.entries)


def build_registry(collections: Iterable[CollectionDef]) -> RelationRegistry:
    """Index every embed relation in `collections` by its source collection."""
    index: dict[str, list[RegistryEntry]] = {}
    for coll in collections:
        for name, relation in coll.relations.items():
            if relation.kind != "embed":
                continue
            index.setdefault(relation.source, []).append(
                RegistryEntry(dependent=coll.name, relation_name=name, relation=relation)
            )
    frozen = {source: tuple(items) for source, items in index.items()}
    return RelationRegistry(entries=MappingProxyType(frozen))
