"""
Built-in middlewares: logging, performance, caching, retry.

    orm = Orm(store, collections, middlewares=[
        logging_middleware(),
        performance_middleware(slow_threshold_ms=500),
        caching_middleware(MemoryCache(), ttl=30),
        retry_middleware(max_retries=2),
    ])
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from bson import json_util
from pymongo.errors import ConnectionFailure, PyMongoError

from docrel.middleware.chain import CallNext, Middleware, OperationCall

logger = logging.getLogger(__name__)

# Transient driver errors that warrant a retry
_RETRYABLE = (ConnectionFailure,)


def _elapsed_ms(call: OperationCall) -> float:
    return (time.perf_counter() - call.started_at) * 1000


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def logging_middleware(
    *,
    level: int = logging.INFO,
    include_timings: bool = True,
    include_details: bool = False,
) -> Middleware:
    """
    Log every operation, its duration, and any failure.

    Filters and data are only logged with include_details, at DEBUG.
    """

    async def log_operation(call: OperationCall, call_next: CallNext) -> Any:
        request_id = call.ctx.request_id
        if include_details:
            logger.debug(
                "middleware: [%s] %s filter=%s data=%s options=%s",
                request_id,
                call.label,
                call.filter,
                call.data,
                call.options,
            )
        else:
            logger.log(level, "middleware: [%s] %s", request_id, call.label)

        try:
            result = await call_next()
        except Exception:
            logger.exception("middleware: [%s] %s failed (%.0fms)", request_id, call.label, _elapsed_ms(call))
            raise

        if include_timings:
            logger.log(level, "middleware: [%s] %s done (%.0fms)", request_id, call.label, _elapsed_ms(call))
        return result

    return log_operation


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------


def performance_middleware(
    *,
    slow_threshold_ms: float = 1000,
    on_slow: Callable[[float, OperationCall], Any] | None = None,
    on_complete: Callable[[float, OperationCall], Any] | None = None,
) -> Middleware:
    """
    Time each operation.

    on_complete(duration_ms, call) runs for every operation, failed or not.
    Operations over slow_threshold_ms go to on_slow, or a warning log when
    none is given.
    """

    async def time_operation(call: OperationCall, call_next: CallNext) -> Any:
        start = time.perf_counter()
        try:
            return await call_next()
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            if on_complete is not None:
                on_complete(duration_ms, call)
            if duration_ms > slow_threshold_ms:
                if on_slow is not None:
                    on_slow(duration_ms, call)
                else:
                    logger.warning(
                        "middleware: slow operation %s took %.0fms (threshold %.0fms)",
                        call.label,
                        duration_ms,
                        slow_threshold_ms,
                    )

    return time_operation


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------


class CacheStore(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl: float) -> None: ...

    async def clear(self, prefix: str = "") -> None: ...


class MemoryCache:
    """In-process cache with per-entry expiry. Values are copied in and out."""

    def __init__(self) -> None:
        # key -> (expires_at, value)
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() > expires_at:
            del self._entries[key]
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (time.monotonic() + ttl, copy.deepcopy(value))

    async def clear(self, prefix: str = "") -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


def cache_key(call: OperationCall) -> str:
    parts = [
        call.collection,
        call.operation,
        json_util.dumps(call.filter or {}, sort_keys=True),
        json_util.dumps(call.options, sort_keys=True),
    ]
    return "docrel:" + ":".join(parts)


def caching_middleware(
    cache: CacheStore,
    *,
    ttl: float = 60,
    key: Callable[[OperationCall], str] = cache_key,
    operations: Iterable[str] | None = None,
) -> Middleware:
    """
    Serve repeated reads from `cache`.

    Caches read operations unless `operations` names others. A None result
    is never cached. Any write clears the whole cache; its propagation and
    delete actions reach other collections.
    """
    cached_ops = frozenset(operations) if operations is not None else None

    async def cache_operation(call: OperationCall, call_next: CallNext) -> Any:
        should_cache = call.operation in cached_ops if cached_ops is not None else call.is_read
        if not should_cache:
            result = await call_next()
            if not call.is_read:
                await cache.clear()
            return result

        cache_id = key(call)
        hit = await cache.get(cache_id)
        if hit is not None:
            call.metadata["cache_hit"] = True
            return hit

        result = await call_next()
        if result is not None:
            await cache.set(cache_id, result, ttl)
        return result

    return cache_operation


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def is_transient(error: Exception) -> bool:
    if isinstance(error, _RETRYABLE):
        return True
    return isinstance(error, PyMongoError) and error.has_error_label("RetryableWriteError")


def retry_middleware(
    *,
    max_retries: int = 3,
    backoff: Callable[[int], float] = lambda attempt: 0.1 * 2**attempt,
    retry_if: Callable[[Exception], bool] = is_transient,
    operations: Iterable[str] | None = None,
) -> Middleware:
    """
    Re-run an operation that failed with a transient error.

    backoff(attempt) is the delay in seconds before retry number attempt + 1.
    The last error is raised once retries are exhausted.
    """
    retried_ops = frozenset(operations) if operations is not None else None

    async def retry_operation(call: OperationCall, call_next: CallNext) -> Any:
        if retried_ops is not None and call.operation not in retried_ops:
            return await call_next()

        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                return await call_next()
            except Exception as e:
                last_error = e
                if attempt >= max_retries or not retry_if(e):
                    break
                delay = backoff(attempt)
                logger.warning(
                    "middleware: %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    call.label,
                    attempt + 1,
                    max_retries + 1,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)
        raise last_error  # type: ignore[misc]

    return retry_operation
