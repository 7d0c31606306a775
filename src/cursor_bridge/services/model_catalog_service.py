from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from cursor_core.agent_cli import CursorCliModel, list_cursor_cli_models


MODEL_CACHE_TTL_SECONDS = 5 * 60

ModelLister = Callable[[], Awaitable[list[CursorCliModel]]]


@dataclass(frozen=True)
class ModelCache:
    fetched_at: float
    models: tuple[CursorCliModel, ...]


class ModelCatalogService:
    """Caches ``--list-models`` results for the lifetime of one bridge instance.

    Refreshes are single-flight: requests that find the cache stale while a
    refresh is running wait for it instead of invoking the CLI again.
    """

    def __init__(
        self,
        *,
        agent_bin: str,
        logger: logging.Logger,
        lister: ModelLister | None = None,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = MODEL_CACHE_TTL_SECONDS,
    ) -> None:
        self._agent_bin = agent_bin
        self._logger = logger
        self._lister = lister or self._list_from_cli
        self._clock = clock
        self._ttl_seconds = ttl_seconds
        self._cache: ModelCache | None = None
        self._lock = asyncio.Lock()

    @property
    def cache(self) -> ModelCache | None:
        return self._cache

    async def _list_from_cli(self) -> list[CursorCliModel]:
        return await list_cursor_cli_models(self._agent_bin)

    def _is_fresh(self, cache: ModelCache | None) -> bool:
        return cache is not None and self._clock() - cache.fetched_at <= self._ttl_seconds

    async def models(self) -> tuple[CursorCliModel, ...]:
        cache = self._cache
        if self._is_fresh(cache):
            return cache.models
        async with self._lock:
            if self._is_fresh(self._cache):
                return self._cache.models
            started = self._clock()
            models = await self._lister()
            self._cache = ModelCache(fetched_at=self._clock(), models=tuple(models))
            self._logger.info(
                "Refreshed model catalog with %s models",
                len(models),
                extra={
                    "component": "models",
                    "operation": "refresh",
                    "result": "ok",
                    "duration_ms": int((self._clock() - started) * 1000),
                },
            )
            return self._cache.models
