from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy.exc import DBAPIError, OperationalError

from skillmesh.core.config import get_settings
from skillmesh.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, OperationalError)


_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock: asyncio.Lock | None = None


async def get_redis() -> Redis | None:
    # Reuse one Redis client per event loop for invalidation broadcasts.
    global _redis_client, _redis_loop, _redis_lock
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _redis_client is not None and _redis_loop is current_loop:
        return _redis_client
    if _redis_loop is not current_loop:
        # Drop loop-bound clients and locks to avoid cross-loop errors in tests.
        _redis_client = None
        _redis_lock = asyncio.Lock()
        _redis_loop = current_loop
    assert _redis_lock is not None
    async with _redis_lock:
        if _redis_client is None:
            try:
                settings = get_settings()
                _redis_client = Redis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=settings.redis_connect_timeout_s,
                )
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("redis_unavailable", exc_info=exc)
                return None
    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_loop
    client = _redis_client
    _redis_client = None
    _redis_loop = None
    if client is not None:
        await client.aclose()


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def migration_retry_policy() -> RetryPolicy:
    # Bulk copies restart from an empty destination, so a transient failure retries the whole copy.
    return RetryPolicy(timeout_ms=3600000, max_attempts=3, backoff_ms=200)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("retrying_transient_failure attempt=%s sleep_s=%.3f", attempt, sleep_s)
            await asyncio.sleep(sleep_s)
            attempt += 1
