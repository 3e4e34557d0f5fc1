"""Fan a routing plan out to its source adapters under one deadline."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.models.sources import QuerySpec, RoutingPlan, SourceKind, SourceResult
from retrieval_engine.tools import exa_search, market_data, perplexity_search, wikipedia_search
from retrieval_engine.tools.web_utils import error_message

Fetcher = Callable[..., Awaitable[SourceResult]]
ResultCallback = Callable[[SourceResult], None]

DEFAULT_FETCHERS: dict[SourceKind, Fetcher] = {
    SourceKind.EXA: exa_search.fetch,
    SourceKind.PERPLEXITY: perplexity_search.fetch,
    SourceKind.WIKIPEDIA: wikipedia_search.fetch,
    SourceKind.FINANCIAL: market_data.fetch,
}


class SourceOrchestrator:
    def __init__(self, fetchers: Mapping[SourceKind, Fetcher] | None = None):
        self.fetchers: dict[SourceKind, Fetcher] = dict(DEFAULT_FETCHERS if fetchers is None else fetchers)

    async def _run_one(self, kind: SourceKind, spec: QuerySpec, on_result: ResultCallback | None) -> SourceResult:
        started = time.perf_counter()
        fetcher = self.fetchers.get(kind)
        try:
            if fetcher is None:
                raise LookupError(f"no adapter registered for {kind.value}")
            result = await fetcher(spec, timeout=settings.provider_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"Adapter for {kind.value} raised")
            result = SourceResult.failure(
                kind,
                f"{kind.value} failed: {error_message(exc)}",
                int((time.perf_counter() - started) * 1000),
            )
        if on_result is not None:
            on_result(result)
        return result

    async def execute(
        self,
        plan: RoutingPlan,
        *,
        deadline: float | None = None,
        on_result: ResultCallback | None = None,
    ) -> list[SourceResult]:
        """Run every executable source concurrently; exactly one result per source, in plan order."""
        kinds = plan.executable_sources()
        if not kinds:
            return []
        deadline = settings.gather_deadline_seconds if deadline is None else deadline

        started = time.perf_counter()
        tasks: dict[SourceKind, asyncio.Task[Any]] = {
            kind: asyncio.create_task(self._run_one(kind, plan.search_queries[kind], on_result), name=f"source:{kind.value}")
            for kind in kinds
        }
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=deadline)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        results: list[SourceResult] = []
        for kind, task in tasks.items():
            if task in pending:
                result = SourceResult.failure(
                    kind, f"timeout: {kind.value} did not respond within {deadline:g}s", elapsed_ms
                )
                if on_result is not None:
                    on_result(result)
            elif task.cancelled():
                result = SourceResult.failure(kind, f"{kind.value} failed: cancelled", elapsed_ms)
            else:
                exc = task.exception()
                result = task.result() if exc is None else SourceResult.failure(
                    kind, f"{kind.value} failed: {error_message(exc)}", elapsed_ms
                )
            results.append(result)

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            f"Gathered {len(results)} sources in {elapsed_ms}ms: {succeeded} succeeded, "
            f"{len(results) - succeeded} failed "
            f"({', '.join(f'{r.source.value}={r.elapsed_ms}ms' for r in results)})"
        )
        return results
