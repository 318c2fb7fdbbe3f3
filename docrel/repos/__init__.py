"""
Repository layer for docrel.

All document writes made on a caller's behalf go through here.
"""

from docrel.repos.collection_repo import CollectionRepo

__all__ = [
    "CollectionRepo",
]
