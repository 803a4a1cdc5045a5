from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from chatkernel.config import get_settings, reset_settings_cache
from chatkernel.logging import get_logger
from chatkernel.service.conversations import ConversationService
from chatkernel.service.gateway import CompletionGateway
from chatkernel.service.jobs import JobService
from chatkernel.service.provider import CompletionOptions, build_provider
from chatkernel.service.usage import UsageAccountant
from chatkernel.service.worker import AsyncCompletionWorker, RetryPolicy
from chatkernel.storage.memory import MemoryStore
from chatkernel.storage.postgres import PostgresStore
from chatkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(snapshot_path=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for chat rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.provider = build_provider(self.settings)
        self.conversations = ConversationService(
            self.store, history_limit=self.settings.history_limit
        )
        self.usage = UsageAccountant(self.store)
        self.jobs = JobService(
            self.store,
            self.conversations,
            max_attempts=self.settings.job_max_attempts,
        )
        self.gateway = CompletionGateway(
            self.conversations,
            self.usage,
            self.provider,
            default_options=CompletionOptions(
                model=self.settings.default_model,
                max_tokens=self.settings.default_max_tokens,
                temperature=self.settings.default_temperature,
            ),
            history_limit=self.settings.history_limit,
            jobs=self.jobs,
        )
        self.worker = AsyncCompletionWorker(
            self.store,
            self.gateway,
            retry_policy=RetryPolicy(
                max_attempts=self.settings.job_max_attempts,
                backoff_base=self.settings.job_backoff_base,
                backoff_multiplier=self.settings.job_backoff_multiplier,
                max_backoff=self.settings.job_backoff_max,
            ),
            concurrency=self.settings.worker_concurrency,
            poll_interval=self.settings.worker_poll_interval,
            lease_seconds=self.settings.job_lease_seconds,
        )
        self.jobs.on_enqueue = self.worker.notify

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            provider=self.provider.name,
            default_model=self.settings.default_model,
            redis_enabled=self.cache is not None,
            worker_enabled=self.settings.worker_enabled,
        )

    async def shutdown(self) -> None:
        await self.worker.stop()
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit; in-process when Redis is unavailable."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
