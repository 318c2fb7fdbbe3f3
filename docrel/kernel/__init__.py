"""
docrel Kernel — the relation engine's pure core and storage seam.

Components:
  paths      — embed path parsing, identifier extraction, snapshot merge
  projection — embed snapshot projection
  pipeline   — include tree → $lookup / $unwind stages
  registry   — source collection → embedding relations (built once)
  query      — in-memory evaluation of filters, updates, and pipelines
  storage    — DocumentStore protocol and MemoryStore

MongoStore lives in kernel.mongo_storage.
"""

from docrel.kernel.paths import extract_ids, merge_at, parse_embed_path, to_string_id
from docrel.kernel.pipeline import build_pipeline
from docrel.kernel.projection import project_snapshot
from docrel.kernel.registry import RegistryEntry, RelationRegistry, build_registry
from docrel.kernel.storage import DocumentStore, MemoryStore
from docrel.kernel.types import (
    CascadeReport,
    DeleteAction,
    EmbedPath,
    EmbedStrategy,
    PropagationStrategy,
    RefreshStats,
)

__all__ = [
    "parse_embed_path",
    "extract_ids",
    "merge_at",
    "to_string_id",
    "project_snapshot",
    "build_pipeline",
    "build_registry",
    "RegistryEntry",
    "RelationRegistry",
    "DocumentStore",
    "MemoryStore",
    "CascadeReport",
    "DeleteAction",
    "EmbedPath",
    "EmbedStrategy",
    "PropagationStrategy",
    "RefreshStats",
]
