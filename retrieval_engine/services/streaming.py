from __future__ import annotations

import time
from typing import Any

from retrieval_engine.models.events import EventType, SSEEvent
from retrieval_engine.models.sources import NumberedCitation, RoutingPlan, SourceResult


def _now_ms() -> int:
    return int(time.time() * 1000)


def _event(event_type: EventType, message: str, **data: Any) -> SSEEvent:
    return SSEEvent(event=event_type, data={"message": message, "timestamp": _now_ms(), **data})


def planning(message: str = "Analyzing query") -> SSEEvent:
    return _event(EventType.PLANNING, message)


def plan_ready(plan: RoutingPlan) -> SSEEvent:
    """Emit the routing decision once the planner has produced it."""
    sources = [kind.value for kind in plan.executable_sources()]
    return _event(
        EventType.PLANNING,
        f"Consulting {', '.join(sources)}" if sources else "No external sources needed",
        sources=sources,
        outcome=plan.outcome.value,
        expected_shape=plan.expected_shape.value,
        reasoning=plan.reasoning,
    )


def gathering(sources: list[str]) -> SSEEvent:
    return _event(EventType.GATHERING, f"Searching {len(sources)} source(s)", sources=sources)


def source_completed(result: SourceResult) -> SSEEvent:
    data: dict[str, Any] = {
        "source": result.source.value,
        "success": result.ok,
        "elapsed_ms": result.elapsed_ms,
    }
    if result.error:
        data["error"] = result.error
    status = "returned data" if result.ok else "failed"
    return _event(EventType.GATHERING, f"{result.source.value} {status}", **data)


def synthesizing(sources_count: int) -> SSEEvent:
    return _event(
        EventType.SYNTHESIZING,
        f"Synthesizing answer from {sources_count} source(s)",
        sources_count=sources_count,
    )


def complete(
    content: str,
    citations: list[NumberedCitation],
    sources: list[str],
    *,
    no_results: bool = False,
    disambiguation: dict[str, Any] | None = None,
    runtime_ms: int | None = None,
) -> SSEEvent:
    data: dict[str, Any] = {
        "content": content,
        "citations": [c.to_dict() for c in citations],
        "sources": sources,
        "no_results": no_results,
    }
    if disambiguation is not None:
        data["disambiguation"] = disambiguation
    if runtime_ms is not None:
        data["runtime_ms"] = runtime_ms
    return _event(EventType.COMPLETE, "Done", **data)


def error(message: str, code: str = "internal", retryable: bool = True, **kwargs: Any) -> SSEEvent:
    return _event(EventType.ERROR, message, code=code, retryable=retryable, **kwargs)
