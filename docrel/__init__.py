"""docrel — relation resolution and embed consistency for MongoDB documents."""

from docrel.models import (
    Catalog,
    CollectionDef,
    Hooks,
    OrmContext,
    Policies,
    ReverseConfig,
    embed,
    lookup,
    reference,
)
from docrel.orm import Orm

__version__ = "0.1.0"

__all__ = [
    "Orm",
    "Catalog",
    "CollectionDef",
    "Hooks",
    "Policies",
    "OrmContext",
    "ReverseConfig",
    "embed",
    "lookup",
    "reference",
]
