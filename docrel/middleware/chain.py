"""
Middleware chain — wraps every CollectionRepo operation.

A middleware is an async callable taking the operation call and a
`call_next` that runs the rest of the chain:

    async def timing(call: OperationCall, call_next: CallNext) -> Any:
        result = await call_next()
        ...
        return result

Orm-level middlewares run first, then the collection's own, then the
operation. A middleware may skip `call_next` (a cache hit) or call it more
than once (a retry).
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from docrel.models.context import OrmContext

READ_OPERATIONS = frozenset({"find_one", "find_by_id", "find_many", "aggregate", "count"})

CallNext = Callable[[], Awaitable[Any]]
Middleware = Callable[["OperationCall", CallNext], Awaitable[Any]]


@dataclass
class OperationCall:
    """What a middleware sees about the operation it wraps."""

    ctx: OrmContext
    collection: str
    operation: str
    filter: dict[str, Any] | None = None
    data: dict[str, Any] | None = None
    options: dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.perf_counter)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_read(self) -> bool:
        return self.operation in READ_OPERATIONS

    @property
    def label(self) -> str:
        return f"{self.collection}.{self.operation}"


def compose(*middlewares: Middleware) -> Middleware:
    """One middleware that runs `middlewares` in order."""

    async def composed(call: OperationCall, call_next: CallNext) -> Any:
        async def dispatch(i: int) -> Any:
            if i == len(middlewares):
                return await call_next()
            return await middlewares[i](call, lambda: dispatch(i + 1))

        return await dispatch(0)

    return composed


async def run_chain(middlewares: Sequence[Middleware], call: OperationCall, operation: CallNext) -> Any:
    if not middlewares:
        return await operation()
    return await compose(*middlewares)(call, operation)


# ---------------------------------------------------------------------------
# Conditional application
# ---------------------------------------------------------------------------


def when(predicate: Callable[[OperationCall], bool], middleware: Middleware) -> Middleware:
    async def conditional(call: OperationCall, call_next: CallNext) -> Any:
        if predicate(call):
            return await middleware(call, call_next)
        return await call_next()

    return conditional


def on_operations(operations: Iterable[str], middleware: Middleware) -> Middleware:
    names = frozenset(operations)
    return when(lambda call: call.operation in names, middleware)


def on_reads(middleware: Middleware) -> Middleware:
    return when(lambda call: call.is_read, middleware)


def on_writes(middleware: Middleware) -> Middleware:
    return when(lambda call: not call.is_read, middleware)


def on_collections(collections: Iterable[str], middleware: Middleware) -> Middleware:
    names = frozenset(collections)
    return when(lambda call: call.collection in names, middleware)
