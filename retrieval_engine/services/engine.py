"""Query pipeline: plan, gather, synthesize, streamed as status events."""
from __future__ import annotations

import asyncio
import time
from typing import AsyncGenerator, Sequence

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.errors import EngineError
from retrieval_engine.models.events import SSEEvent
from retrieval_engine.models.knowledge import KnowledgeContext
from retrieval_engine.models.resolution import ResolutionOutcome
from retrieval_engine.models.sources import SourceResult
from retrieval_engine.services import streaming
from retrieval_engine.services.knowledge_base import KnowledgeBase
from retrieval_engine.services.logger import log_event
from retrieval_engine.services.planner import QueryPlanner
from retrieval_engine.services.source_orchestrator import SourceOrchestrator
from retrieval_engine.services.synthesizer import ResponseSynthesizer


class RetrievalEngine:
    def __init__(
        self,
        planner: QueryPlanner | None = None,
        orchestrator: SourceOrchestrator | None = None,
        synthesizer: ResponseSynthesizer | None = None,
        knowledge_base: KnowledgeBase | None = None,
        *,
        request_timeout: float | None = None,
    ):
        self.planner = planner or QueryPlanner()
        self.orchestrator = orchestrator or SourceOrchestrator()
        self.synthesizer = synthesizer or ResponseSynthesizer()
        self.knowledge_base = knowledge_base
        self.request_timeout = request_timeout or settings.request_timeout_seconds

    async def _knowledge(self, conversation_id: str, query: str, project_id: str | None) -> KnowledgeContext:
        if self.knowledge_base is None:
            return KnowledgeContext()
        try:
            return await self.knowledge_base.get_context(conversation_id, query, project_id=project_id)
        except Exception as exc:
            logger.warning(f"Knowledge lookup failed for {conversation_id}: {exc}")
            return KnowledgeContext()

    async def _await_knowledge(self, task: asyncio.Task[KnowledgeContext], budget: float) -> KnowledgeContext:
        budget = max(budget, 0.0)
        done, _ = await asyncio.wait({task}, timeout=budget)
        if task in done:
            return task.result()
        task.cancel()
        logger.warning(f"Knowledge lookup still running after {budget:.2f}s; answering without it")
        return KnowledgeContext()

    async def run_query(
        self,
        text: str,
        conversation_id: str,
        project_id: str | None = None,
        history: Sequence[dict[str, str]] = (),
    ) -> AsyncGenerator[SSEEvent, None]:
        """Yield planning, gathering, synthesizing and finally one complete or error event."""
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        expires_at = loop.time() + self.request_timeout

        def remaining() -> float:
            return max(expires_at - loop.time(), 0.0)

        knowledge_task: asyncio.Task[KnowledgeContext] | None = None
        gather_task: asyncio.Task[list[SourceResult]] | None = None
        log_event("query", "Query received", conversation_id=conversation_id, project_id=project_id)
        yield streaming.planning()
        try:
            knowledge_task = asyncio.create_task(self._knowledge(conversation_id, text, project_id))
            planned = await asyncio.wait_for(self.planner.build(text, history), timeout=remaining())
            plan = planned.plan
            yield streaming.plan_ready(plan)

            disambiguation = None
            if planned.resolution is not None and planned.resolution.outcome == ResolutionOutcome.NOT_FOUND:
                disambiguation = planned.resolution.disambiguation()

            results: list[SourceResult] = []
            kinds = [kind.value for kind in plan.executable_sources()]
            if kinds:
                yield streaming.gathering(kinds)
                completed: asyncio.Queue[SourceResult] = asyncio.Queue()
                gather_task = asyncio.create_task(
                    self.orchestrator.execute(
                        plan,
                        deadline=min(settings.gather_deadline_seconds, remaining()),
                        on_result=completed.put_nowait,
                    )
                )
                while not gather_task.done() or not completed.empty():
                    getter = asyncio.ensure_future(completed.get())
                    done, _ = await asyncio.wait({getter, gather_task}, return_when=asyncio.FIRST_COMPLETED)
                    if getter in done:
                        yield streaming.source_completed(getter.result())
                    else:
                        getter.cancel()
                results = await gather_task

            knowledge = await self._await_knowledge(
                knowledge_task,
                min(settings.knowledge_timeout_seconds, remaining() - settings.synthesis_reserve_seconds),
            )

            if results:
                yield streaming.synthesizing(sum(1 for r in results if r.ok))
                synthesis = await asyncio.wait_for(
                    self.synthesizer.synthesize(text, results, history, knowledge, shape=plan.expected_shape),
                    timeout=remaining(),
                )
            elif disambiguation is not None:
                message = planned.resolution.failure_reason or "Could not identify the asset you meant."
                yield streaming.complete(
                    message,
                    [],
                    [],
                    no_results=True,
                    disambiguation=disambiguation,
                    runtime_ms=int((time.perf_counter() - started) * 1000),
                )
                return
            else:
                yield streaming.synthesizing(0)
                synthesis = await asyncio.wait_for(
                    self.synthesizer.compose_direct(text, history, knowledge), timeout=remaining()
                )

            runtime_ms = int((time.perf_counter() - started) * 1000)
            log_event(
                "query",
                "Query complete",
                conversation_id=conversation_id,
                sources=synthesis.sources_used,
                citations=len(synthesis.citations),
                runtime_ms=runtime_ms,
            )
            yield streaming.complete(
                synthesis.content,
                synthesis.citations,
                synthesis.sources_used,
                no_results=synthesis.no_results,
                disambiguation=disambiguation,
                runtime_ms=runtime_ms,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Query for {conversation_id} exceeded {self.request_timeout:g}s")
            yield streaming.error(
                f"Request did not finish within {self.request_timeout:g}s", code="timeout", retryable=True
            )
        except EngineError as exc:
            logger.warning(f"Query for {conversation_id} failed: {exc}")
            yield streaming.error(str(exc), code=exc.code, retryable=exc.retryable)
        except Exception as exc:
            logger.exception(f"Unexpected failure for {conversation_id}")
            yield streaming.error(f"Internal error: {exc}", code="internal", retryable=True)
        finally:
            for task in (knowledge_task, gather_task):
                if task is not None and not task.done():
                    task.cancel()
