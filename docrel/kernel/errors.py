"""
docrel Kernel — Exceptions

Every error the relation engine raises on purpose derives from DocrelError.
Driver errors (pymongo) are chained, never swallowed.
"""

from __future__ import annotations


class DocrelError(Exception):
    """Base class for docrel errors."""

    pass


class RelationConfigError(DocrelError):
    """A relation declaration or embed path is malformed, or used with the wrong kind."""

    pass


class UnknownRelationError(DocrelError):
    """An include tree or refresh call names a relation the collection does not declare."""

    def __init__(self, collection: str, relation: str) -> None:
        super().__init__(f"Relation '{relation}' not found on collection '{collection}'")
        self.collection = collection
        self.relation = relation


class UnknownCollectionError(DocrelError):
    """A collection name is missing from the catalog."""

    def __init__(self, collection: str) -> None:
        super().__init__(f"Collection '{collection}' not found in catalog")
        self.collection = collection


class InvalidReferenceError(DocrelError):
    """A reference field points at a document that does not exist."""

    def __init__(self, local_field: str, target: str, value: object) -> None:
        super().__init__(
            f"Invalid reference: {local_field}={value!r} references non-existent document in {target}"
        )
        self.local_field = local_field
        self.target = target
        self.value = value


class PolicyDeniedError(DocrelError):
    """A collection policy guard rejected the operation."""

    def __init__(self, operation: str, collection: str) -> None:
        super().__init__(f"{operation.capitalize()} not allowed by policy on '{collection}'")
        self.operation = operation
        self.collection = collection


class PropagationError(DocrelError):
    """Synchronous reverse propagation failed; the dependents may be stale."""

    def __init__(self, source: str, dependent: str, relation: str) -> None:
        super().__init__(
            f"Reverse embed propagation {source} -> {dependent}.{relation} failed"
        )
        self.source = source
        self.dependent = dependent
        self.relation = relation


class CascadeError(DocrelError):
    """One or more delete-cascade targets failed inside a session."""

    def __init__(self, source: str, failures: list[tuple[str, str, str]]) -> None:
        targets = ", ".join(f"{dep}.{rel} ({action})" for dep, rel, action in failures)
        super().__init__(f"Delete cascade from '{source}' failed for: {targets}")
        self.source = source
        self.failures = failures


class QueryError(DocrelError):
    """The in-memory store was handed a filter, update, or stage it does not support."""

    pass
