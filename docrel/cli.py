"""
docrel command line.

Usage:
  docrel refresh <module:catalog> <collection> <relation> [--filter JSON]
                 [--batch-size N] [--dry-run]

  <module:catalog> names an importable attribute holding a Catalog or a list
  of CollectionDef, e.g. myapp.schema:collections.

Environment:
  MONGO_URI   Connection string (required)
  MONGO_DB    Database name (default: docrel)
  LOG_LEVEL   Logging level (default: INFO)

Prints the refresh stats as JSON. Exits 1 if any document failed.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from typing import Any

from bson import json_util

from docrel import db
from docrel.config import settings
from docrel.kernel.errors import DocrelError
from docrel.kernel.mongo_storage import MongoStore
from docrel.kernel.storage import DocumentStore
from docrel.models.collection import Catalog
from docrel.orm import Orm

logger = logging.getLogger(__name__)


def load_catalog(target: str) -> Catalog:
    """
    Import `module:attribute` and return it as a Catalog.

    Raises:
        ValueError: Malformed target or the attribute is not a catalog
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected <module:attribute>, got {target!r}")
    module = importlib.import_module(module_name)
    value = getattr(module, attr)
    if isinstance(value, Catalog):
        return value
    if isinstance(value, (list, tuple)):
        return Catalog(value)
    raise ValueError(f"{target} is a {type(value).__name__}, expected a Catalog or a list of CollectionDef")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docrel", description="docrel maintenance commands")
    sub = parser.add_subparsers(dest="command", required=True)

    refresh = sub.add_parser("refresh", help="Recompute an embed relation across a collection")
    refresh.add_argument("catalog", help="module:attribute holding the collection definitions")
    refresh.add_argument("collection", help="Collection holding the embeds")
    refresh.add_argument("relation", help="Embed relation to refresh")
    refresh.add_argument("--filter", default=None, help="Extended JSON filter selecting documents")
    refresh.add_argument("--batch-size", type=int, default=settings.REFRESH_BATCH_SIZE)
    refresh.add_argument("--dry-run", action="store_true", help="Count changes without writing")
    return parser


async def run_refresh(args: argparse.Namespace, store: DocumentStore | None = None) -> dict[str, Any]:
    """
    Run a batch refresh and return the stats dict.

    With no `store`, connects to MONGO_URI and closes the client afterwards.
    """
    catalog = load_catalog(args.catalog)
    flt = json_util.loads(args.filter) if args.filter else None

    owns_client = store is None
    if owns_client:
        await db.init_client()
        store = MongoStore(db.get_database())

    orm = Orm(store, catalog)
    try:
        stats = await orm.repo(args.collection).refresh_embeds(
            args.relation,
            filter=flt,
            batch_size=args.batch_size,
            dry_run=args.dry_run,
        )
    finally:
        await orm.close()
        if owns_client:
            await db.close_client()
    return stats.to_dict()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        stats = asyncio.run(run_refresh(args))
    except (DocrelError, ValueError, ImportError, AttributeError) as e:
        logger.error("refresh failed: %s", e)
        return 2

    print(json.dumps(stats))
    return 1 if stats["errors"] > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
