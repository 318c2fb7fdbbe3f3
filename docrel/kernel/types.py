"""
docrel Kernel — Shared Types

Data classes used across the path navigator, projection, registry, and the
embed services. These are the contracts that bind the kernel together.

Embed paths are parsed once, when a relation is declared:
- `author_id`                  → separate (one snapshot under the target field)
- `tag_ids` / `items[].ref_id` → array (list of snapshots under the target field)
- `directory._id`              → in-place (snapshot merged into `directory`)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FAN_OUT_MARKER = "[]"
SNAPSHOT_ID_KEY = "_id"
DEFAULT_BATCH_SIZE = 100


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EmbedStrategy(StrEnum):
    """Where an embed snapshot lives relative to the referencing document."""

    SEPARATE = "separate"
    ARRAY = "array"
    IN_PLACE = "in_place"


class PropagationStrategy(StrEnum):
    SYNC = "sync"
    ASYNC = "async"


class DeleteAction(StrEnum):
    """What happens to dependents when an embedded source document is deleted."""

    CASCADE = "cascade"
    NULLIFY = "nullify"
    CLEAR = "clear"


# ---------------------------------------------------------------------------
# Embed path AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PathSegment:
    """One dotted segment. `fan_out` means "for each element of this array field"."""

    field: str
    fan_out: bool = False

    def __str__(self) -> str:
        return f"{self.field}{FAN_OUT_MARKER}" if self.fan_out else self.field


@dataclass(frozen=True)
class EmbedPath:
    """
    A parsed embed source path.

    `id_key` is the identifier key of the nested object for in-place paths
    (the terminal segment), and None otherwise.
    """

    raw: str
    segments: tuple[PathSegment, ...]
    strategy: EmbedStrategy
    id_key: str | None = None

    @property
    def is_in_place(self) -> bool:
        return self.strategy is EmbedStrategy.IN_PLACE

    @property
    def has_fan_out(self) -> bool:
        return any(seg.fan_out for seg in self.segments)

    @property
    def top_field(self) -> str:
        """The top-level document field this path starts at."""
        return self.segments[0].field

    @property
    def query_path(self) -> str:
        """Dotted path with fan-out markers stripped, as a filter key."""
        return ".".join(seg.field for seg in self.segments)

    @property
    def base_segments(self) -> tuple[PathSegment, ...]:
        """Segments leading to the nested object of an in-place path."""
        if self.is_in_place:
            return self.segments[:-1]
        return self.segments

    @property
    def base_path(self) -> str:
        return ".".join(seg.field for seg in self.base_segments)

    def __str__(self) -> str:
        return self.raw


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class RefreshStats:
    """Counts returned by a persisted batch refresh."""

    matched: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "matched": self.matched,
            "updated": self.updated,
            "errors": self.errors,
            "skipped": self.skipped,
        }


@dataclass
class CascadeReport:
    """Outcome of one delete cascade. `failed` holds (dependent, relation, action)."""

    source: str
    applied: list[tuple[str, str, str]] = field(default_factory=list)
    failed: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "applied": [list(t) for t in self.applied],
            "failed": [list(t) for t in self.failed],
        }
